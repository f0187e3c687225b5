"""
Rounding for reported figures.

Every count ratio, average and amount in a response rounds exact halves up
(6.25 -> "6.3", 12.5 -> 13). Builtin round() and format() round halves to
even, so they are not used for reported values.
"""

from decimal import ROUND_HALF_UP, Decimal
from typing import Union

Number = Union[int, float, str, Decimal]

_ONE = Decimal("1")
_TENTH = Decimal("0.1")


def to_decimal(value: Number) -> Decimal:
    if isinstance(value, Decimal):
        return value
    # str() keeps floats at their shortest repr (1000.5, not its binary expansion)
    return Decimal(str(value))


def ratio(numerator: Number, denominator: Number) -> Decimal:
    return to_decimal(numerator) / to_decimal(denominator)


def round_half_up(value: Number) -> int:
    """Nearest integer, halves rounded up."""
    return int(to_decimal(value).quantize(_ONE, rounding=ROUND_HALF_UP))


def one_decimal(value: Number) -> str:
    """String with exactly one decimal place, halves rounded up."""
    return str(to_decimal(value).quantize(_TENTH, rounding=ROUND_HALF_UP))
