"""Streaming metering: bytes pass through untouched, one debit per stream."""
import asyncio
import json
import threading
from decimal import Decimal
from unittest.mock import MagicMock

from ledger_service.models.transaction import TransactionType
from ledger_service.services.metering.stream import StreamUsageScanner, metered_stream


async def _aiter(chunks):
    for chunk in chunks:
        yield chunk


def _collect(chunks, dispatcher, account_id="acc", model="openai/gpt-4o"):
    async def _run():
        return [c async for c in metered_stream(_aiter(chunks), account_id, model, dispatcher)]

    return asyncio.run(_run())


def _frame(payload) -> bytes:
    return f"data: {json.dumps(payload)}\n\n".encode()


def test_five_frames_cost_only_in_last():
    frames = [_frame({"choices": [{"delta": {"content": f"tok{i}"}}]}) for i in range(4)]
    frames.append(_frame({"choices": [], "usage": {"cost": 0.02, "total_tokens": 42}}))
    dispatcher = MagicMock()

    out = _collect(frames, dispatcher)

    assert out == frames
    dispatcher.dispatch.assert_called_once()
    request = dispatcher.dispatch.call_args.args[0]
    assert request.account_id == "acc"
    assert request.amount == Decimal("0.02000000")
    assert request.transaction_type == TransactionType.CONSUME_TEXT
    assert "openai/gpt-4o" in request.description
    assert "total_tokens: 42" in request.description


def test_record_split_across_chunks_is_reassembled():
    raw = _frame({"usage": {"cost": 0.5}}) + b"data: [DONE]\n\n"
    chunks = [raw[:7], raw[7:19], raw[19:]]
    dispatcher = MagicMock()

    out = _collect(chunks, dispatcher)

    assert b"".join(out) == raw
    dispatcher.dispatch.assert_called_once()
    assert dispatcher.dispatch.call_args.args[0].amount == Decimal("0.50000000")


def test_only_first_costed_record_is_charged():
    frames = [_frame({"usage": {"cost": 0.01}}), _frame({"usage": {"cost": 0.03}})]
    dispatcher = MagicMock()

    _collect(frames, dispatcher)

    dispatcher.dispatch.assert_called_once()
    assert dispatcher.dispatch.call_args.args[0].amount == Decimal("0.01000000")


def test_no_cost_zero_cost_and_malformed_json_are_free():
    frames = [
        b"data: {not json\n\n",
        _frame({"usage": {"cost": 0}}),
        _frame({"usage": {"total_tokens": 3}}),
        _frame(["not", "an", "object"]),
        b": keep-alive comment\n\n",
        b"data: [DONE]\n\n",
    ]
    dispatcher = MagicMock()

    out = _collect(frames, dispatcher)

    assert out == frames
    dispatcher.dispatch.assert_not_called()


def test_dispatch_failure_never_interrupts_the_stream():
    frames = [_frame({"choices": []}), _frame({"usage": {"cost": 0.02}}), b"data: [DONE]\n\n"]
    dispatcher = MagicMock()
    dispatcher.dispatch.side_effect = RuntimeError("broker down")

    out = _collect(frames, dispatcher)

    assert out == frames


def test_last_record_without_trailing_newline_is_charged_on_flush():
    dispatcher = MagicMock()
    scanner = StreamUsageScanner("acc", "m", dispatcher.dispatch)

    scanner.feed(b'data: {"usage": {"cost": 0.1}}')
    dispatcher.dispatch.assert_not_called()
    scanner.flush()

    dispatcher.dispatch.assert_called_once()


def test_cost_with_excess_precision_is_rounded():
    dispatcher = MagicMock()
    _collect([_frame({"usage": {"cost": 0.0000000149}})], dispatcher)

    assert dispatcher.dispatch.call_args.args[0].amount == Decimal("0.00000001")


def test_cost_rounding_to_zero_is_free():
    dispatcher = MagicMock()
    _collect([_frame({"usage": {"cost": 0.000000001}})], dispatcher)

    dispatcher.dispatch.assert_not_called()


def test_slow_dispatch_does_not_block_the_event_loop():
    frames = [_frame({"choices": []}), _frame({"usage": {"cost": 0.02}}), b"data: [DONE]\n\n"]
    released = threading.Event()
    waited = []

    class _SlowDispatcher:
        def dispatch(self, request):
            # only the event loop can set this; a blocked loop would time out
            waited.append(released.wait(timeout=2))

    async def _run():
        async def _release():
            await asyncio.sleep(0.01)
            released.set()

        releaser = asyncio.create_task(_release())
        out = [c async for c in metered_stream(_aiter(frames), "acc", "m", _SlowDispatcher())]
        await releaser
        return out

    assert asyncio.run(_run()) == frames
    assert waited == [True]


def test_trailing_record_is_dispatched_when_the_stream_ends():
    dispatcher = MagicMock()

    out = _collect([b'data: {"usage": {"cost": 0.1}}'], dispatcher)

    assert out == [b'data: {"usage": {"cost": 0.1}}']
    dispatcher.dispatch.assert_called_once()
