"""
Celery task: record a usage debit for an already-delivered streamed response.

LedgerUnavailable is retried. The debit carries the task id as its external
reference, so a retry after a commit whose outcome was unknown is absorbed by
the ledger's unique index instead of charging twice.
Every terminal failure becomes a metering soft failure: logged and counted,
never surfaced to the user whose stream already completed.
"""
import logging

from ledger_service.core.celery_app import celery_app
from ledger_service.core.config import settings
from ledger_service.models.transaction import TransactionType
from ledger_service.services.ledger.errors import (
    AlreadyProcessed,
    InsufficientBalance,
    InvalidAmount,
    LedgerUnavailable,
)
from ledger_service.services.ledger.service import LedgerService
from ledger_service.services.metering.dispatcher import report_soft_failure
from ledger_service.utils.metrics import metering_debits_total
from ledger_service.workers.context import open_session

logger = logging.getLogger(__name__)

USAGE_REFERENCE_PREFIX = "usage:"


@celery_app.task(
    bind=True,
    name="ledger_service.workers.tasks.metering.record_usage_debit",
    max_retries=settings.celery_task_max_retries,
    default_retry_delay=settings.celery_task_retry_delay,
)
def record_usage_debit(
    self,
    account_id: str,
    amount: str,
    transaction_type: str = TransactionType.CONSUME_TEXT.value,
    description: str | None = None,
) -> dict:
    """Debit `amount` (decimal string) from the account."""
    external_reference = f"{USAGE_REFERENCE_PREFIX}{self.request.id}" if self.request.id else None
    db = open_session()
    try:
        ledger = LedgerService(db)
        try:
            result = ledger.debit(account_id, amount, transaction_type, description, external_reference)
        except AlreadyProcessed:
            logger.info(
                "metering_debit_already_recorded",
                extra={"account_id": account_id, "amount": amount, "external_reference": external_reference},
            )
            return {"ok": True, "already_processed": True}
        except LedgerUnavailable as e:
            if self.request.retries < self.max_retries:
                logger.warning(
                    "metering_debit_retry",
                    extra={"account_id": account_id, "amount": amount, "retries": self.request.retries, "error": str(e)},
                )
                raise self.retry(exc=e)
            report_soft_failure(account_id, amount, "ledger_unavailable")
            return {"ok": False, "error": "ledger_unavailable"}
        except InsufficientBalance:
            report_soft_failure(account_id, amount, "insufficient_balance")
            return {"ok": False, "error": "insufficient_balance"}
        except InvalidAmount as e:
            report_soft_failure(account_id, amount, "invalid_amount")
            return {"ok": False, "error": "invalid_amount", "reason": e.reason}

        metering_debits_total.labels(mode="stream", outcome="applied").inc()
        return {
            "ok": True,
            "transaction_id": result.transaction_id,
            "balance": str(result.new_balance),
        }
    finally:
        db.close()
