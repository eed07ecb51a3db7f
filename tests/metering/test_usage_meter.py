"""Batch metering and usage parsing."""
from decimal import Decimal
from unittest.mock import MagicMock, patch

from ledger_service.models.transaction import Transaction, TransactionType
from ledger_service.services.ledger.errors import LedgerUnavailable
from ledger_service.services.ledger.service import LedgerService
from ledger_service.services.ledger.store import LedgerStore
from ledger_service.services.metering.dispatcher import CeleryDebitDispatcher, DebitRequest
from ledger_service.services.metering.usage import UsageMeter, describe_usage, extract_cost


def test_extract_cost():
    assert extract_cost({"cost": 0.02}) == Decimal("0.02000000")
    assert extract_cost({"cost": "1.5"}) == Decimal("1.50000000")
    assert extract_cost({"cost": 0}) == Decimal("0")
    assert extract_cost({"cost": -1}) == Decimal("0")
    assert extract_cost({"cost": "abc"}) == Decimal("0")
    assert extract_cost({"cost": True}) == Decimal("0")
    assert extract_cost({}) == Decimal("0")
    assert extract_cost(None) == Decimal("0")


def test_describe_usage_embeds_model_and_tokens():
    text = describe_usage("anthropic/claude", {"prompt_tokens": 10, "completion_tokens": 5, "total_tokens": 15})
    assert text == "type: text, model: anthropic/claude, prompt_tokens: 10, completion_tokens: 5, total_tokens: 15"


def test_charge_applies_debit(db):
    ledger = LedgerService(db)
    ledger.apply_ledger_op("acc", "1", TransactionType.RECHARGE, external_reference="seed")

    result = UsageMeter(ledger).charge("acc", "m", {"cost": 0.25, "total_tokens": 100})

    assert result.new_balance == Decimal("0.75000000")
    entry = db.query(Transaction).filter(Transaction.id == result.transaction_id).one()
    assert entry.transaction_type == "CONSUME_TEXT"
    assert entry.description == "type: text, model: m, total_tokens: 100"


def test_charge_without_cost_does_nothing(db):
    assert UsageMeter(LedgerService(db)).charge("acc", "m", {"total_tokens": 5}) is None
    assert db.query(Transaction).count() == 0


def test_charge_insufficient_balance_is_a_soft_failure(db):
    with patch("ledger_service.services.metering.usage.report_soft_failure") as report:
        result = UsageMeter(LedgerService(db)).charge("acc", "m", {"cost": 1})

    assert result is None
    report.assert_called_once_with("acc", Decimal("1.00000000"), "insufficient_balance", mode="batch")
    assert LedgerStore(db).get_balance("acc") == Decimal("0")


def test_charge_ledger_unavailable_is_a_soft_failure():
    ledger = MagicMock()
    ledger.debit.side_effect = LedgerUnavailable("down")

    with patch("ledger_service.services.metering.usage.report_soft_failure") as report:
        assert UsageMeter(ledger).charge("acc", "m", {"cost": 0.1}) is None

    assert report.call_args.args[2] == "ledger_unavailable"


def test_debit_request_task_kwargs_are_json_safe():
    request = DebitRequest("acc", Decimal("0.02000000"), TransactionType.CONSUME_IMAGE, "d")
    assert request.to_task_kwargs() == {
        "account_id": "acc",
        "amount": "0.02000000",
        "transaction_type": "CONSUME_IMAGE",
        "description": "d",
    }


@patch("ledger_service.workers.tasks.metering.record_usage_debit")
def test_celery_dispatcher_queues_task(task):
    request = DebitRequest("acc", Decimal("0.1"), TransactionType.CONSUME_TEXT, "d")

    CeleryDebitDispatcher().dispatch(request)

    task.apply_async.assert_called_once_with(kwargs=request.to_task_kwargs())


@patch("ledger_service.services.metering.dispatcher.report_soft_failure")
@patch("ledger_service.workers.tasks.metering.record_usage_debit")
def test_celery_dispatcher_broker_failure_is_soft(task, report):
    task.apply_async.side_effect = ConnectionError("broker down")
    request = DebitRequest("acc", Decimal("0.1"), TransactionType.CONSUME_TEXT, "d")

    CeleryDebitDispatcher().dispatch(request)

    report.assert_called_once_with("acc", Decimal("0.1"), "dispatch_failed")
