"""
Money helpers.

Amounts are stored and sent to the payment gateway as integer minor units
(cents). Decimal is used for parsing, percentage math and presentation.
"""
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Union

CENT = Decimal("0.01")

Amount = Union[Decimal, int, float, str]


def to_cents(amount: Amount) -> int:
    """Convert a decimal amount (e.g. "19.99") to integer cents."""
    try:
        value = Decimal(str(amount))
    except InvalidOperation:
        raise ValueError(f"Invalid amount: {amount!r}")
    return int((value.quantize(CENT, rounding=ROUND_HALF_UP) * 100).to_integral_value())


def from_cents(cents: int) -> Decimal:
    return (Decimal(int(cents)) / 100).quantize(CENT)


def percent_of(cents: int, rate: Decimal) -> int:
    """Apply a rate to a cent amount, rounding half-up to the nearest cent."""
    return int((Decimal(int(cents)) * rate).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
