from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Union

CENT = Decimal("0.01")


def to_cents(amount: Union[Decimal, int, str]) -> int:
    """Convert a two-place decimal amount into integer cents.

    Amounts with more than two fraction digits are rejected instead of being
    rounded, so a stored ledger row always equals what the caller sent.
    """
    try:
        value = Decimal(str(amount))
    except InvalidOperation as exc:
        raise ValueError("Invalid amount") from exc
    if not value.is_finite():
        raise ValueError("Invalid amount")
    scaled = value * 100
    if scaled != scaled.to_integral_value():
        raise ValueError("Amount must have at most 2 decimal places")
    return int(scaled)


def from_cents(cents: int) -> Decimal:
    return (Decimal(cents) / 100).quantize(CENT, rounding=ROUND_HALF_UP)
