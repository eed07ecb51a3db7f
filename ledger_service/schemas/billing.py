"""Request/response models for the billing API. Amounts travel as decimal strings."""
from datetime import datetime
from decimal import Decimal
from typing import Literal

from pydantic import BaseModel, Field, field_validator

from ledger_service.services.ledger.errors import InvalidAmount
from ledger_service.utils.precision import validate_amount


ConsumeType = Literal["CONSUME_TEXT", "CONSUME_IMAGE", "CONSUME_OTHER"]


class _AmountIn(BaseModel):
    amount: Decimal

    @field_validator("amount", mode="before")
    @classmethod
    def _validate_amount(cls, v):
        try:
            return validate_amount(v)
        except InvalidAmount as e:
            raise ValueError(e.reason) from None


class BalanceOut(BaseModel):
    balance: str


class TransactionOut(BaseModel):
    id: str
    amount: str
    previous_balance: str
    after_balance: str
    transaction_type: str
    external_reference: str | None
    description: str | None
    created_at: datetime


class TransactionListOut(BaseModel):
    transactions: list[TransactionOut]
    page: int
    page_size: int


class ConsumeIn(_AmountIn):
    transaction_type: ConsumeType = "CONSUME_OTHER"
    description: str | None = Field(default=None, max_length=500)


class ConsumeOut(BaseModel):
    success: bool
    transaction_id: str
    balance: str


class RechargeIn(_AmountIn):
    pass


class CheckoutSessionIn(_AmountIn):
    success_url: str | None = None
    cancel_url: str | None = None


class PaymentIntentOut(BaseModel):
    payment_intent_id: str
    client_secret: str | None
    amount: str
    currency: str


class CheckoutSessionOut(BaseModel):
    session_id: str
    url: str | None


class PaymentStatusIn(BaseModel):
    payment_intent_id: str = Field(min_length=1, max_length=255)


class PaymentStatusOut(BaseModel):
    status: str
    message: str
    balance: str | None = None


class ReconcileOut(BaseModel):
    status: Literal["credited", "pending"]
    attempts: int
    balance: str | None = None
    transaction_id: str | None = None


class WebhookAck(BaseModel):
    received: bool = True
