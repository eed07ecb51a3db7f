"""
ReconciliationPoller — bounded wait for a credit to land in the ledger.

Covers the gap between "provider says the payment succeeded" and "webhook
processed". It never fails hard: after the last attempt the result is simply
`pending`, and the webhook path completes the credit on its own.
"""
import logging
import time
from dataclasses import dataclass
from decimal import Decimal
from typing import Callable

from sqlalchemy.exc import SQLAlchemyError

from ledger_service.core.config import settings
from ledger_service.services.ledger.store import LedgerStore
from ledger_service.utils.metrics import reconciliation_polls_total

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReconciliationResult:
    status: str  # credited | pending
    attempts: int
    balance: Decimal | None = None
    transaction_id: str | None = None

    @property
    def credited(self) -> bool:
        return self.status == "credited"


class ReconciliationPoller:
    def __init__(
        self,
        store: LedgerStore,
        interval: float | None = None,
        max_attempts: int | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.store = store
        self.interval = settings.reconcile_poll_interval_seconds if interval is None else interval
        self.max_attempts = max(1, settings.reconcile_poll_max_attempts if max_attempts is None else max_attempts)
        self.sleep = sleep

    def poll(
        self,
        account_id: str,
        external_reference: str,
        refresh: Callable[[], None] | None = None,
    ) -> ReconciliationResult:
        """
        Look for the credit up to max_attempts times, interval seconds apart.

        `refresh` runs before each attempt after the first; the status-check
        endpoint uses it to nudge the provider lookup. Its errors are logged only.
        """
        for attempt in range(1, self.max_attempts + 1):
            if attempt > 1:
                self.sleep(self.interval)
                if refresh is not None:
                    try:
                        refresh()
                    except Exception as e:
                        logger.warning(
                            "reconcile_refresh_failed",
                            extra={"account_id": account_id, "external_reference": external_reference, "error": str(e)},
                        )
            try:
                # each attempt must see commits made since the previous one
                self.store.end_snapshot()
                entry = self.store.find_transaction_by_external_ref(account_id, external_reference)
                if entry is not None:
                    balance = self.store.get_balance(account_id)
                    reconciliation_polls_total.labels(outcome="credited").inc()
                    logger.info(
                        "reconcile_credited",
                        extra={
                            "account_id": account_id,
                            "external_reference": external_reference,
                            "attempts": attempt,
                            "balance": str(balance),
                        },
                    )
                    return ReconciliationResult(
                        status="credited",
                        attempts=attempt,
                        balance=balance,
                        transaction_id=entry.id,
                    )
            except SQLAlchemyError as e:
                logger.warning(
                    "reconcile_query_failed",
                    extra={"account_id": account_id, "external_reference": external_reference, "error": str(e)},
                )

        reconciliation_polls_total.labels(outcome="pending").inc()
        logger.info(
            "reconcile_pending",
            extra={"account_id": account_id, "external_reference": external_reference, "attempts": self.max_attempts},
        )
        return ReconciliationResult(status="pending", attempts=self.max_attempts)
