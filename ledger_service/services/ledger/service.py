"""
LedgerService — the only code path that changes a balance.

Every mutation is one atomic unit per account:
lock account row -> check sufficiency -> compute new balance -> upsert account
-> append transaction -> commit. Any infrastructure failure rolls the whole
unit back and surfaces as LedgerUnavailable.
"""
import logging
import time
from dataclasses import dataclass
from decimal import Decimal
from typing import Any

from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from ledger_service.models.account import Account
from ledger_service.models.transaction import Transaction, TransactionType
from ledger_service.services.ledger.errors import (
    AlreadyProcessed,
    InsufficientBalance,
    InvalidAmount,
    LedgerUnavailable,
)
from ledger_service.services.ledger.store import LedgerStore
from ledger_service.utils.metrics import (
    balance_rejected_total,
    ledger_operation_duration_seconds,
    ledger_operations_total,
)
from ledger_service.utils.precision import (
    MAX_BALANCE,
    ZERO,
    add,
    quantize,
    subtract,
    to_decimal,
    validate_amount,
)

logger = logging.getLogger(__name__)

_UPSERT_INSERTS = {"postgresql": pg_insert, "sqlite": sqlite_insert}


@dataclass(frozen=True)
class LedgerOpResult:
    transaction_id: str
    previous_balance: Decimal
    new_balance: Decimal


class LedgerService:
    def __init__(self, db: Session, store: LedgerStore | None = None):
        self.db = db
        self.store = store or LedgerStore(db)

    # ------------------------------------------------------------------
    # Balance mutation (atomic)
    # ------------------------------------------------------------------

    def apply_ledger_op(
        self,
        account_id: str,
        amount: Any,
        transaction_type: TransactionType | str,
        description: str | None = None,
        external_reference: str | None = None,
    ) -> LedgerOpResult:
        """
        Credit (RECHARGE, REWARD) or debit (CONSUME_*) an account atomically.

        Raises InvalidAmount before touching the database (or when a credit
        would push the balance past MAX_BALANCE), InsufficientBalance
        when a debit exceeds the balance (nothing written), AlreadyProcessed when
        the (account, external_reference) unique index rejects the insert, and
        LedgerUnavailable for any other database failure.
        """
        value = validate_amount(amount)
        op_type = TransactionType(transaction_type)
        if op_type == TransactionType.RECHARGE_FAILED:
            raise InvalidAmount(amount, "RECHARGE_FAILED entries do not move the balance")

        started = time.perf_counter()
        try:
            self._ensure_account(account_id)
            account = (
                self.db.query(Account)
                .filter(Account.id == account_id)
                .with_for_update()
                .one()
            )
            current = quantize(account.balance)

            if op_type.is_debit and current < value:
                self.db.rollback()  # release the row lock
                ledger_operations_total.labels(transaction_type=op_type.value, outcome="insufficient").inc()
                balance_rejected_total.inc()
                logger.info(
                    "ledger_insufficient_balance",
                    extra={
                        "account_id": account_id,
                        "balance": str(current),
                        "required": str(value),
                        "transaction_type": op_type.value,
                    },
                )
                raise InsufficientBalance(account_id, current, value)

            new_balance = subtract(current, value) if op_type.is_debit else add(current, value)
            if new_balance > MAX_BALANCE:
                self.db.rollback()
                ledger_operations_total.labels(transaction_type=op_type.value, outcome="invalid").inc()
                raise InvalidAmount(amount, f"Balance would exceed {MAX_BALANCE:f}")
            account.balance = new_balance

            entry = Transaction(
                account_id=account_id,
                amount=value,
                previous_balance=current,
                after_balance=new_balance,
                transaction_type=op_type.value,
                external_reference=external_reference,
                description=description if description is not None else op_type.value,
            )
            self.db.add(entry)
            self.db.flush()
            transaction_id = entry.id
            self.db.commit()
        except IntegrityError as exc:
            self.db.rollback()
            if external_reference and self.store.find_transaction_by_external_ref(account_id, external_reference):
                ledger_operations_total.labels(transaction_type=op_type.value, outcome="duplicate").inc()
                raise AlreadyProcessed(account_id, external_reference) from exc
            ledger_operations_total.labels(transaction_type=op_type.value, outcome="unavailable").inc()
            logger.warning("ledger_integrity_conflict", extra={"account_id": account_id, "error": str(exc.orig)})
            raise LedgerUnavailable(f"Conflicting concurrent write for account {account_id}") from exc
        except SQLAlchemyError as exc:
            self.db.rollback()
            ledger_operations_total.labels(transaction_type=op_type.value, outcome="unavailable").inc()
            logger.exception("ledger_unavailable", extra={"account_id": account_id, "transaction_type": op_type.value})
            raise LedgerUnavailable(str(exc)) from exc
        finally:
            ledger_operation_duration_seconds.observe(time.perf_counter() - started)

        ledger_operations_total.labels(transaction_type=op_type.value, outcome="applied").inc()
        logger.info(
            "ledger_op_applied",
            extra={
                "account_id": account_id,
                "transaction_id": transaction_id,
                "transaction_type": op_type.value,
                "amount": str(value),
                "previous_balance": str(current),
                "balance": str(new_balance),
                "external_reference": external_reference,
            },
        )
        return LedgerOpResult(transaction_id=transaction_id, previous_balance=current, new_balance=new_balance)

    def _ensure_account(self, account_id: str) -> None:
        """Create the zero-balance account row unless it exists. Concurrent first writers then queue on its lock."""
        dialect = self.db.get_bind().dialect.name
        insert = _UPSERT_INSERTS.get(dialect)
        if insert is None:
            raise RuntimeError(f"Unsupported database dialect for the ledger: {dialect}")
        self.db.execute(
            insert(Account)
            .values(id=account_id, balance=ZERO)
            .on_conflict_do_nothing(index_elements=[Account.id])
        )

    def debit(
        self,
        account_id: str,
        amount: Any,
        transaction_type: TransactionType | str = TransactionType.CONSUME_OTHER,
        description: str | None = None,
        external_reference: str | None = None,
    ) -> LedgerOpResult:
        op_type = TransactionType(transaction_type)
        if not op_type.is_debit:
            raise InvalidAmount(amount, f"{op_type.value} is not a consumption type")
        return self.apply_ledger_op(account_id, amount, op_type, description, external_reference)

    # ------------------------------------------------------------------
    # Audit-only entries
    # ------------------------------------------------------------------

    def record_failed_recharge(
        self,
        account_id: str,
        amount: Any,
        external_reference: str | None,
        reason: str,
    ) -> Transaction:
        """
        Append a RECHARGE_FAILED row for a payment that did not (or must not) credit.
        Balance is unchanged: previous_balance == after_balance == current balance.
        """
        try:
            logged_amount = quantize(to_decimal(amount))
        except (InvalidAmount, ArithmeticError, ValueError):
            logged_amount = ZERO
        try:
            current = self.store.get_balance(account_id)
            entry = Transaction(
                account_id=account_id,
                amount=logged_amount,
                previous_balance=current,
                after_balance=current,
                transaction_type=TransactionType.RECHARGE_FAILED.value,
                external_reference=external_reference,
                description=f"Failed/Expired payment: {reason}",
            )
            self.db.add(entry)
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.exception("failed_recharge_not_logged", extra={"account_id": account_id})
            raise LedgerUnavailable(str(exc)) from exc

        ledger_operations_total.labels(transaction_type=TransactionType.RECHARGE_FAILED.value, outcome="applied").inc()
        logger.info(
            "recharge_failed_logged",
            extra={
                "account_id": account_id,
                "amount": str(logged_amount),
                "external_reference": external_reference,
                "reason": reason,
            },
        )
        return entry
