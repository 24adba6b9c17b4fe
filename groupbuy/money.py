"""
Amount arithmetic for checkout totals and payment intents.

Every conversion between decimal amounts and the processor's minor units goes
through this module so session totals and intent amounts round identically
(half-up, to the cent).
"""
from __future__ import annotations

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Union

from groupbuy.errors import ValidationError

Amount = Union[Decimal, int, float, str]

CENT = Decimal("0.01")
HUNDRED = Decimal("100")


def to_decimal(value: Amount) -> Decimal:
    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool):
        raise ValidationError("Amount must be numeric")
    try:
        # str() keeps floats like 0.1 from dragging binary noise along
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValidationError(f"Invalid amount: {value!r}")


def quantize_amount(value: Amount) -> Decimal:
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def apply_discount(price: Amount, discount_percentage: Amount) -> Decimal:
    """Unit price after a percentage discount, rounded to the cent."""
    pct = to_decimal(discount_percentage)
    if pct < 0 or pct > HUNDRED:
        raise ValidationError("Discount percentage must be between 0 and 100")
    return quantize_amount(to_decimal(price) * (HUNDRED - pct) / HUNDRED)


def line_total(unit_price: Amount, quantity: int) -> Decimal:
    return quantize_amount(to_decimal(unit_price) * quantity)


def to_minor_units(amount: Amount) -> int:
    """Convert a positive amount to integer cents."""
    value = quantize_amount(amount)
    if value <= 0:
        raise ValidationError("Amount must be positive")
    return int(value * HUNDRED)


def from_minor_units(cents: int) -> Decimal:
    return (Decimal(cents) / HUNDRED).quantize(CENT)
