"""
Monetary unit handling.

All amounts inside the settlement engine are ``Decimal`` values in major
currency units (dollars), quantized to cents. Payment provider payloads carry
integer minor units (cents); conversion happens only through the helpers here.
"""

from decimal import Decimal, ROUND_HALF_UP
from typing import Union

CENT = Decimal("0.01")
TOLERANCE = Decimal("0.01")
ZERO = Decimal("0.00")

Number = Union[Decimal, int, float, str]


def to_decimal(value: Number) -> Decimal:
    if isinstance(value, Decimal):
        return value
    # str() keeps 33.33 as 33.33 instead of its binary float expansion
    return Decimal(str(value))


def round_money(value: Number) -> Decimal:
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def from_minor_units(amount: int) -> Decimal:
    return round_money(Decimal(int(amount)) / 100)


def to_minor_units(amount: Number) -> int:
    return int((round_money(amount) * 100).to_integral_value(rounding=ROUND_HALF_UP))


def within_tolerance(a: Number, b: Number, tolerance: Decimal = TOLERANCE) -> bool:
    return abs(to_decimal(a) - to_decimal(b)) <= tolerance
