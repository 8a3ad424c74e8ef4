"""
Unit conversion between human amounts and smallest-unit integers.

Decimal only: a float never touches an on-chain amount. Every call names its
decimal scale explicitly, because native currency (8, tinybar) and payment
tokens (USDC: 6) differ and mixing them silently is the classic bug here.
"""

from decimal import Decimal, InvalidOperation
from typing import Union

NATIVE_DECIMALS = 8     # HBAR -> tinybar
TOKEN_DECIMALS = 6      # USDC

Amount = Union[str, int, Decimal]


class UnitError(ValueError):
    pass


def to_smallest_unit(amount: Amount, decimals: int) -> int:
    """'1.5', 8 -> 150000000. Rejects negatives, NaN and excess precision."""
    if isinstance(amount, float):
        # repr() keeps what the user typed (1.1 -> '1.1'), not the binary expansion
        amount = repr(amount)
    try:
        value = Decimal(str(amount).strip())
    except (InvalidOperation, ValueError):
        raise UnitError(f"not a number: {amount!r}") from None
    if not value.is_finite():
        raise UnitError(f"not a finite amount: {amount!r}")
    if value < 0:
        raise UnitError(f"negative amount: {amount!r}")

    scaled = value.scaleb(decimals)
    if scaled != scaled.to_integral_value():
        raise UnitError(f"{amount} has more than {decimals} decimal places")
    return int(scaled)


def from_smallest_unit(raw: int, decimals: int) -> Decimal:
    return Decimal(int(raw)).scaleb(-decimals)


def format_units(raw: int, decimals: int) -> str:
    """150000000, 8 -> '1.5'. Always at least one decimal place, like ethers."""
    value = from_smallest_unit(raw, decimals)
    text = format(value, "f")
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    if "." not in text:
        text += ".0"
    return text
