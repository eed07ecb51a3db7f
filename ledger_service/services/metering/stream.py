"""
Metered pass-through for server-sent event streams.

Every upstream chunk is yielded to the client byte-for-byte and in order. A
side scanner reassembles `data: <json>` lines across chunk boundaries and, on
the first record with a positive usage.cost, dispatches exactly one debit. The
dispatch runs in the threadpool so a slow broker never stalls the event loop.
Billing problems never touch the bytes already sent.
"""
import json
import logging
from typing import AsyncIterator, Callable

from fastapi.concurrency import run_in_threadpool

from ledger_service.models.transaction import TransactionType
from ledger_service.services.metering.dispatcher import DebitDispatcher, DebitRequest, report_soft_failure
from ledger_service.services.metering.usage import build_debit_request

logger = logging.getLogger(__name__)

DATA_PREFIX = b"data:"
DONE_MARKER = b"[DONE]"


class StreamUsageScanner:
    """Feed raw chunks in, get called back once with the debit for the stream."""

    def __init__(
        self,
        account_id: str,
        model: str | None,
        on_debit: Callable[[DebitRequest], None],
        transaction_type: TransactionType = TransactionType.CONSUME_TEXT,
    ):
        self.account_id = account_id
        self.model = model
        self.on_debit = on_debit
        self.transaction_type = transaction_type
        self.fired = False
        self._buffer = b""

    def feed(self, chunk: bytes) -> None:
        if self.fired:
            return
        self._buffer += chunk
        *lines, self._buffer = self._buffer.split(b"\n")
        for line in lines:
            self._scan_line(line)
            if self.fired:
                self._buffer = b""
                return

    def flush(self) -> None:
        """End of stream: a last record without a trailing newline still counts."""
        if self._buffer and not self.fired:
            self._scan_line(self._buffer)
        self._buffer = b""

    def _scan_line(self, line: bytes) -> None:
        line = line.strip()
        if not line.startswith(DATA_PREFIX):
            return
        payload = line[len(DATA_PREFIX):].strip()
        if not payload or payload == DONE_MARKER:
            return
        try:
            record = json.loads(payload)
        except ValueError:
            # malformed record: no charge, the client still got the bytes
            return
        if not isinstance(record, dict):
            return
        request = build_debit_request(
            self.account_id,
            record.get("model") or self.model,
            record.get("usage"),
            self.transaction_type,
        )
        if request is None:
            return
        self.fired = True
        self.on_debit(request)


async def metered_stream(
    upstream: AsyncIterator[bytes],
    account_id: str,
    model: str | None,
    dispatcher: DebitDispatcher,
    transaction_type: TransactionType = TransactionType.CONSUME_TEXT,
) -> AsyncIterator[bytes]:
    """Wrap an upstream SSE byte stream with the streaming debit side effect."""
    pending: list[DebitRequest] = []

    async def _dispatch_pending() -> None:
        while pending:
            request = pending.pop()
            try:
                await run_in_threadpool(dispatcher.dispatch, request)
            except Exception as e:
                logger.warning("metering_dispatch_error", extra={"account_id": account_id, "error": str(e)})
                report_soft_failure(account_id, request.amount, "dispatch_failed")

    scanner = StreamUsageScanner(account_id, model, pending.append, transaction_type)
    try:
        async for chunk in upstream:
            # scanned before yield: the last frame is billed even if the client disconnects on it
            try:
                scanner.feed(chunk)
            except Exception:
                logger.exception("metering_scan_error", extra={"account_id": account_id, "model": model})
            if pending:
                await _dispatch_pending()
            yield chunk
    finally:
        try:
            scanner.flush()
        except Exception:
            logger.exception("metering_scan_error", extra={"account_id": account_id, "model": model})
        await _dispatch_pending()
        if not scanner.fired:
            logger.info("metering_stream_no_cost", extra={"account_id": account_id, "model": model})
