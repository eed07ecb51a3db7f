"""
CreditGuard — apply a credit at most once per (account, external reference).

The pre-check is only an optimisation for the common duplicate (webhook redelivery,
status poll racing the webhook). The partial unique index on transactions is what
makes a concurrent duplicate fail instead of double-crediting.
"""
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any

from ledger_service.models.transaction import TransactionType
from ledger_service.services.ledger.errors import AlreadyProcessed, InvalidAmount
from ledger_service.services.ledger.service import LedgerService
from ledger_service.utils.metrics import credits_deduplicated_total

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CreditResult:
    applied: bool
    new_balance: Decimal | None = None
    transaction_id: str | None = None

    @property
    def status(self) -> str:
        return "applied" if self.applied else "already_processed"


class CreditGuard:
    def __init__(self, ledger: LedgerService):
        self.ledger = ledger
        self.store = ledger.store

    def credit_once(
        self,
        account_id: str,
        amount: Any,
        external_reference: str,
        transaction_type: TransactionType | str = TransactionType.RECHARGE,
        description: str | None = None,
    ) -> CreditResult:
        op_type = TransactionType(transaction_type)
        if not op_type.is_credit:
            raise InvalidAmount(amount, f"{op_type.value} is not a credit type")
        if not external_reference:
            raise ValueError("external_reference is required for idempotent credits")

        existing = self.store.find_transaction_by_external_ref(account_id, external_reference)
        if existing is not None:
            credits_deduplicated_total.labels(source="precheck").inc()
            logger.info(
                "credit_already_processed",
                extra={
                    "account_id": account_id,
                    "external_reference": external_reference,
                    "transaction_id": existing.id,
                },
            )
            return CreditResult(applied=False, transaction_id=existing.id)

        try:
            result = self.ledger.apply_ledger_op(
                account_id,
                amount,
                op_type,
                description=description,
                external_reference=external_reference,
            )
        except AlreadyProcessed:
            # lost the race to a concurrent writer; the constraint caught it
            credits_deduplicated_total.labels(source="constraint").inc()
            logger.warning(
                "credit_duplicate_constraint",
                extra={"account_id": account_id, "external_reference": external_reference},
            )
            return CreditResult(applied=False)

        return CreditResult(applied=True, new_balance=result.new_balance, transaction_id=result.transaction_id)
