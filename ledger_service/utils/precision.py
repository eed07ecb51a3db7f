"""
Fixed-point money arithmetic at 8 fractional digits.

Values are scaled by 10^8 into integers, added/subtracted there, and scaled back,
so no binary floating point ever touches a balance.
"""
from __future__ import annotations

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any

from ledger_service.services.ledger.errors import InvalidAmount


PRECISION_DIGITS = 8
SCALE = 10 ** PRECISION_DIGITS
QUANTUM = Decimal(1).scaleb(-PRECISION_DIGITS)  # 0.00000001
ZERO = Decimal(0).quantize(QUANTUM)

# Largest single amount accepted, and the ceiling a balance may reach. Both stay
# well inside the Numeric(38, 8) columns and the default 28-digit decimal context.
MAX_AMOUNT = Decimal(10) ** 12
MAX_BALANCE = Decimal(10) ** 18


def to_decimal(value: Any) -> Decimal:
    """Parse int/float/str/Decimal into a Decimal without float artefacts.

    Floats go through str() so 0.1 becomes Decimal("0.1"), not 0.1000000000000000055...
    Raises InvalidAmount for anything that is not a number.
    """
    if isinstance(value, bool) or value is None:
        raise InvalidAmount(value, "Amount must be a number")
    if isinstance(value, Decimal):
        return value
    if isinstance(value, (int, float)):
        return Decimal(str(value))
    if isinstance(value, str):
        raw = value.strip()
        try:
            return Decimal(raw)
        except InvalidOperation:
            raise InvalidAmount(value, "Amount must be a number") from None
    raise InvalidAmount(value, "Amount must be a number")


def to_units(value: Any) -> int:
    """Decimal value -> integer count of 10^-8 units, rounded half-up."""
    return int((to_decimal(value) * SCALE).to_integral_value(rounding=ROUND_HALF_UP))


def from_units(units: int) -> Decimal:
    return (Decimal(units) / SCALE).quantize(QUANTUM)


def quantize(value: Any) -> Decimal:
    return from_units(to_units(value))


def add(a: Any, b: Any) -> Decimal:
    return from_units(to_units(a) + to_units(b))


def subtract(a: Any, b: Any) -> Decimal:
    return from_units(to_units(a) - to_units(b))


def validate_amount(value: Any) -> Decimal:
    """
    Return the amount as a quantized Decimal or raise InvalidAmount.

    Rejects non-numbers, NaN/Infinity, zero and negatives, amounts above
    MAX_AMOUNT, and anything with more than 8 fractional digits.
    """
    amount = to_decimal(value)
    if not amount.is_finite():
        raise InvalidAmount(value, "Amount must be a finite number")
    if amount <= 0:
        raise InvalidAmount(value, "Amount must be a positive number")
    if amount > MAX_AMOUNT:
        raise InvalidAmount(value, f"Amount must not exceed {MAX_AMOUNT:f}")
    scaled = amount * SCALE
    if scaled != scaled.to_integral_value():
        raise InvalidAmount(value, f"Amount must have at most {PRECISION_DIGITS} decimal places")
    try:
        return amount.quantize(QUANTUM)
    except InvalidOperation:
        raise InvalidAmount(value, "Amount is out of range") from None


def format_amount(value: Any) -> str:
    """Canonical string form used on the wire: always 8 fractional digits."""
    return format(quantize(value), "f")
