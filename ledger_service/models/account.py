from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import Column, DateTime, Numeric, String

from ledger_service.db.base import Base


class Account(Base):
    """Balance holder, one per user. Mutated only under a row lock (LedgerService)."""

    __tablename__ = "accounts"

    id = Column(String, primary_key=True)
    balance = Column(Numeric(38, 8), nullable=False, default=Decimal("0"))
    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))
    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )
