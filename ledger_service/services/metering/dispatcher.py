"""
Detached debit dispatch for streamed usage.

The response path never waits for the debit: it hands a DebitRequest to a
dispatcher and moves on. Production uses Celery; every failure along the way
is a metering soft failure (logged + counted), never a request error.
"""
import logging
from dataclasses import asdict, dataclass
from decimal import Decimal
from typing import Protocol

from ledger_service.models.transaction import TransactionType
from ledger_service.services.ledger.errors import MeteringSoftFailure
from ledger_service.utils.metrics import metering_debits_total, metering_soft_failures_total

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DebitRequest:
    account_id: str
    amount: Decimal
    transaction_type: TransactionType
    description: str

    def to_task_kwargs(self) -> dict:
        """JSON-safe kwargs for the Celery task (amount travels as a decimal string)."""
        payload = asdict(self)
        payload["amount"] = str(self.amount)
        payload["transaction_type"] = self.transaction_type.value
        return payload


class DebitDispatcher(Protocol):
    def dispatch(self, request: DebitRequest) -> None:
        ...


def report_soft_failure(account_id: str, amount, reason: str, mode: str = "stream") -> MeteringSoftFailure:
    """Log and count a debit that could not be recorded. Returns the error for callers that keep it."""
    failure = MeteringSoftFailure(account_id, amount, reason)
    metering_soft_failures_total.labels(reason=reason).inc()
    metering_debits_total.labels(mode=mode, outcome="soft_failure").inc()
    logger.error(
        "metering_soft_failure",
        extra={"account_id": account_id, "amount": str(amount), "reason": reason, "mode": mode},
    )
    return failure


class CeleryDebitDispatcher:
    """Queue the debit on the metering worker."""

    def dispatch(self, request: DebitRequest) -> None:
        # imported lazily: the task module pulls in the Celery app
        from ledger_service.workers.tasks.metering import record_usage_debit

        try:
            result = record_usage_debit.apply_async(kwargs=request.to_task_kwargs())
        except Exception as e:
            # broker down: the stream already went out, so this is only an accounting gap
            logger.warning("metering_dispatch_failed", extra={"account_id": request.account_id, "error": str(e)})
            report_soft_failure(request.account_id, request.amount, "dispatch_failed")
            return
        metering_debits_total.labels(mode="stream", outcome="dispatched").inc()
        logger.info(
            "metering_debit_dispatched",
            extra={"account_id": request.account_id, "amount": str(request.amount), "task_id": result.id},
        )
