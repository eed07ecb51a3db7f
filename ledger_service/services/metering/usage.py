"""
UsageMeter — turns a provider usage report into a ledger debit.

Batch mode: the caller already has the final usage object (non-streaming
completion) and the debit is applied directly. The stream decorator uses the
same cost extraction and description, but hands the debit to a dispatcher.
"""
import logging
from decimal import Decimal, InvalidOperation
from typing import Any

from ledger_service.models.transaction import TransactionType
from ledger_service.services.ledger.errors import InsufficientBalance, InvalidAmount, LedgerUnavailable
from ledger_service.services.ledger.service import LedgerOpResult, LedgerService
from ledger_service.services.metering.dispatcher import DebitRequest, report_soft_failure
from ledger_service.utils.metrics import metering_debits_total
from ledger_service.utils.precision import ZERO, quantize

logger = logging.getLogger(__name__)


def extract_cost(usage: Any) -> Decimal:
    """
    usage.cost as an 8-digit Decimal; ZERO when missing, non-numeric or not positive.
    Provider costs can carry more than 8 digits, they are rounded half-up.
    """
    if not isinstance(usage, dict):
        return ZERO
    raw = usage.get("cost")
    if raw is None or isinstance(raw, bool):
        return ZERO
    try:
        cost = quantize(Decimal(str(raw)))
    except (InvalidOperation, InvalidAmount, ValueError):
        return ZERO
    return cost if cost > 0 else ZERO


def describe_usage(model: str | None, usage: dict, kind: str = "text") -> str:
    """Human-readable ledger description: kind, model and token counts."""
    parts = [f"type: {kind}", f"model: {model or 'unknown'}"]
    for key in ("prompt_tokens", "completion_tokens", "total_tokens"):
        if usage.get(key) is not None:
            parts.append(f"{key}: {usage[key]}")
    return ", ".join(parts)


def build_debit_request(
    account_id: str,
    model: str | None,
    usage: Any,
    transaction_type: TransactionType = TransactionType.CONSUME_TEXT,
) -> DebitRequest | None:
    """DebitRequest for a usage object, or None when there is nothing to charge."""
    cost = extract_cost(usage)
    if cost <= 0:
        return None
    kind = "image" if transaction_type == TransactionType.CONSUME_IMAGE else "text"
    return DebitRequest(
        account_id=account_id,
        amount=cost,
        transaction_type=transaction_type,
        description=describe_usage(model, usage, kind),
    )


class UsageMeter:
    def __init__(self, ledger: LedgerService):
        self.ledger = ledger

    def charge(
        self,
        account_id: str,
        model: str | None,
        usage: Any,
        transaction_type: TransactionType = TransactionType.CONSUME_TEXT,
    ) -> LedgerOpResult | None:
        """
        Apply the debit for a completed (non-streamed) call.

        The response has already been produced, so ledger failures are reported as
        metering soft failures and None is returned instead of raising.
        """
        request = build_debit_request(account_id, model, usage, transaction_type)
        if request is None:
            metering_debits_total.labels(mode="batch", outcome="no_charge").inc()
            return None
        try:
            result = self.ledger.debit(
                request.account_id,
                request.amount,
                request.transaction_type,
                request.description,
            )
        except InsufficientBalance:
            report_soft_failure(account_id, request.amount, "insufficient_balance", mode="batch")
            return None
        except LedgerUnavailable:
            report_soft_failure(account_id, request.amount, "ledger_unavailable", mode="batch")
            return None
        except InvalidAmount:
            report_soft_failure(account_id, request.amount, "invalid_amount", mode="batch")
            return None

        metering_debits_total.labels(mode="batch", outcome="applied").inc()
        return result
