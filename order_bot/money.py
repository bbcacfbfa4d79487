"""
Money utilities.

All amounts in the order core are integers in minor units (cents). Decimal
is used at the edges when parsing human or provider amounts; floats never
touch currency.
"""

from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Union

from .errors import ValidationError

Number = Union[int, str, Decimal]

_CENT = Decimal("1")
_HUNDRED = Decimal("100")


def to_cents(amount: Number) -> int:
    """
    Convert a major-unit amount ("20.00", Decimal("20")) to minor units.

    Ints are treated as major units too, so ``to_cents(20) == 2000``.
    """
    if isinstance(amount, float):
        raise TypeError("Use Decimal or str for money, not float")
    value = Decimal(str(amount)) * _HUNDRED
    cents = value.quantize(_CENT, rounding=ROUND_HALF_UP)
    if cents < 0:
        raise ValidationError(f"Amount cannot be negative: {amount}")
    return int(cents)


def from_cents(cents: int) -> Decimal:
    return (Decimal(cents) / _HUNDRED).quantize(Decimal("0.01"))


def format_money(cents: int, symbol: str = "R$") -> str:
    """Format minor units for display, e.g. 4500 -> 'R$45.00'."""
    return f"{symbol}{from_cents(cents)}"


@dataclass(frozen=True)
class PaymentSplit:
    """Division of one payment between the platform and the restaurant."""

    total_cents: int
    platform_fee_cents: int
    restaurant_amount_cents: int


def compute_split(total_cents: int, fee_percent: Decimal) -> PaymentSplit:
    """
    Split a total into platform fee and restaurant amount.

    The fee is ``total * fee_percent / 100`` rounded half-up to whole minor
    units; the restaurant receives the remainder, so the two parts always sum
    to the total.

    Args:
        total_cents: Order total in minor units
        fee_percent: Platform fee percentage, e.g. Decimal("5") for 5%

    Returns:
        PaymentSplit with both parts

    Raises:
        ValidationError: If the total is negative or the percentage is
            outside 0..100
    """
    fee_percent = Decimal(str(fee_percent))
    if total_cents < 0:
        raise ValidationError(f"Total cannot be negative: {total_cents}")
    if fee_percent < 0 or fee_percent > _HUNDRED:
        raise ValidationError(f"Fee percentage must be between 0 and 100: {fee_percent}")

    fee = (Decimal(total_cents) * fee_percent / _HUNDRED).quantize(_CENT, rounding=ROUND_HALF_UP)
    platform_fee_cents = int(fee)
    return PaymentSplit(
        total_cents=total_cents,
        platform_fee_cents=platform_fee_cents,
        restaurant_amount_cents=total_cents - platform_fee_cents,
    )
