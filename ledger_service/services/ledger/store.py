"""
LedgerStore — plain (non-locking) reads over accounts and transactions.
Only LedgerService takes row locks.
"""
from dataclasses import dataclass
from decimal import Decimal

from sqlalchemy.orm import Session

from ledger_service.models.account import Account
from ledger_service.models.transaction import Transaction, TransactionType
from ledger_service.utils.precision import ZERO, add, quantize


@dataclass(frozen=True)
class TransactionFilter:
    external_reference: str | None = None
    transaction_type: TransactionType | None = None


@dataclass(frozen=True)
class Page:
    number: int = 1
    size: int = 10

    @property
    def offset(self) -> int:
        return (max(self.number, 1) - 1) * self.size


class LedgerStore:
    def __init__(self, db: Session):
        self.db = db

    def get_balance(self, account_id: str) -> Decimal:
        """Current balance; 0 for accounts that were never credited or debited."""
        balance = (
            self.db.query(Account.balance)
            .filter(Account.id == account_id)
            .scalar()
        )
        return quantize(balance) if balance is not None else ZERO

    def list_transactions(
        self,
        account_id: str,
        filters: TransactionFilter | None = None,
        page: Page | None = None,
    ) -> list[Transaction]:
        """Newest first."""
        filters = filters or TransactionFilter()
        page = page or Page()
        query = self.db.query(Transaction).filter(Transaction.account_id == account_id)
        if filters.external_reference:
            query = query.filter(Transaction.external_reference == filters.external_reference)
        if filters.transaction_type is not None:
            query = query.filter(Transaction.transaction_type == TransactionType(filters.transaction_type).value)
        return (
            query.order_by(Transaction.created_at.desc(), Transaction.id.desc())
            .offset(page.offset)
            .limit(page.size)
            .all()
        )

    def find_transaction_by_external_ref(self, account_id: str, external_reference: str) -> Transaction | None:
        """The applied (non-failed) transaction for this reference, if any."""
        return (
            self.db.query(Transaction)
            .filter(
                Transaction.account_id == account_id,
                Transaction.external_reference == external_reference,
                Transaction.transaction_type != TransactionType.RECHARGE_FAILED.value,
            )
            .first()
        )

    def replay_balance(self, account_id: str) -> Decimal:
        """Recompute the balance from the transaction log alone, oldest first."""
        rows = (
            self.db.query(Transaction)
            .filter(Transaction.account_id == account_id)
            .order_by(Transaction.created_at.asc())
            .all()
        )
        balance = ZERO
        for tx in rows:
            balance = add(balance, tx.signed_amount)
        return balance

    def end_snapshot(self) -> None:
        """Close the current read transaction so the next query sees newer commits."""
        self.db.rollback()
