"""Money / rounding helpers.

Centralized so conversion results and any future endpoints use identical
rounding semantics.
"""

from __future__ import annotations
from decimal import Decimal, ROUND_HALF_UP
from typing import Union

from fxrates.models.currency import decimal_places_of

Number = Union[Decimal, float, int, str]


def to_decimal(value: Number) -> Decimal:
    if isinstance(value, Decimal):
        return value
    # str() first so 1.1 stays 1.1 rather than its binary expansion
    return Decimal(str(value))


def round_money(value: Number, places: int) -> Decimal:
    quantum = Decimal(1).scaleb(-places)
    return to_decimal(value).quantize(quantum, rounding=ROUND_HALF_UP)


def round_for_currency(value: Number, code: str) -> Decimal:
    return round_money(value, decimal_places_of(code))
