"""
Ledger error taxonomy.

InvalidAmount and InsufficientBalance are definitive rejections raised before any
durable write. LedgerUnavailable means the atomic unit was rolled back and the
call may be retried. AlreadyProcessed is a no-op signal, not a failure.
"""
from decimal import Decimal
from typing import Any


class LedgerError(Exception):
    code = "LEDGER_ERROR"
    retryable = False


class InvalidAmount(LedgerError):
    code = "INVALID_AMOUNT"

    def __init__(self, value: Any, reason: str = "Invalid amount") -> None:
        super().__init__(reason)
        self.value = value
        self.reason = reason


class InsufficientBalance(LedgerError):
    code = "INSUFFICIENT_BALANCE"

    def __init__(self, account_id: str, balance: Decimal, required: Decimal) -> None:
        super().__init__("Insufficient balance, please recharge and try again")
        self.account_id = account_id
        self.balance = balance
        self.required = required


class AlreadyProcessed(LedgerError):
    code = "ALREADY_PROCESSED"

    def __init__(self, account_id: str, external_reference: str) -> None:
        super().__init__(f"External reference {external_reference} already applied")
        self.account_id = account_id
        self.external_reference = external_reference


class LedgerUnavailable(LedgerError):
    code = "LEDGER_UNAVAILABLE"
    retryable = True


class MeteringSoftFailure(LedgerError):
    """A usage debit that could not be recorded after the response was delivered."""

    code = "METERING_SOFT_FAILURE"

    def __init__(self, account_id: str, amount: Any, reason: str) -> None:
        super().__init__(f"Usage debit of {amount} for account {account_id} not recorded: {reason}")
        self.account_id = account_id
        self.amount = amount
        self.reason = reason
