"""
Transaction — immutable ledger entry.
Written once, in the same DB transaction as the balance update; never updated or deleted.
"""
import enum
from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import Column, DateTime, Index, Numeric, String, Text, text

from ledger_service.db.base import Base


class TransactionType(str, enum.Enum):
    RECHARGE = "RECHARGE"
    RECHARGE_FAILED = "RECHARGE_FAILED"
    CONSUME_TEXT = "CONSUME_TEXT"
    CONSUME_IMAGE = "CONSUME_IMAGE"
    CONSUME_OTHER = "CONSUME_OTHER"
    REWARD = "REWARD"

    @property
    def is_debit(self) -> bool:
        return self in DEBIT_TYPES

    @property
    def is_credit(self) -> bool:
        return self in CREDIT_TYPES

    @property
    def sign(self) -> int:
        """+1 for credits, -1 for debits, 0 for audit-only entries."""
        if self.is_credit:
            return 1
        if self.is_debit:
            return -1
        return 0


DEBIT_TYPES = frozenset({
    TransactionType.CONSUME_TEXT,
    TransactionType.CONSUME_IMAGE,
    TransactionType.CONSUME_OTHER,
})
CREDIT_TYPES = frozenset({TransactionType.RECHARGE, TransactionType.REWARD})


class Transaction(Base):
    __tablename__ = "transactions"
    __table_args__ = (
        # Dedup key for credits. Failed-recharge audit rows are excluded so that a
        # payment intent that failed once can still be credited when it succeeds.
        Index(
            "uq_transactions_account_external_ref",
            "account_id",
            "external_reference",
            unique=True,
            postgresql_where=text("transaction_type <> 'RECHARGE_FAILED'"),
            sqlite_where=text("transaction_type <> 'RECHARGE_FAILED'"),
        ),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid4()))
    account_id = Column(String, nullable=False, index=True)
    amount = Column(Numeric(38, 8), nullable=False)
    previous_balance = Column(Numeric(38, 8), nullable=False)
    after_balance = Column(Numeric(38, 8), nullable=False)
    transaction_type = Column(String, nullable=False, index=True)
    external_reference = Column(String, nullable=True, index=True)  # payment intent / checkout session id
    description = Column(Text, nullable=True)
    created_at = Column(
        DateTime(timezone=True),
        nullable=False,
        index=True,
        default=lambda: datetime.now(timezone.utc),
    )

    @property
    def type(self) -> TransactionType:
        return TransactionType(self.transaction_type)

    @property
    def signed_amount(self):
        """Balance effect of this entry: negative for debits, zero for audit rows."""
        return self.amount * self.type.sign
