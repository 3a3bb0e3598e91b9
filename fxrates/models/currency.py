"""Currency catalogue and code constants.

The catalogue only drives display metadata and rounding precision; any
well-formed, non-excluded ISO code may still be quoted by a provider.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Dict, FrozenSet

CURRENCY_CODE_RE = re.compile(r"^[A-Z]{3}$")

DEFAULT_EXCLUDED_CURRENCIES: FrozenSet[str] = frozenset({"TRY", "PLN", "THB", "MXN"})

DEFAULT_DECIMAL_PLACES = 2

# Result source for same-currency conversions; never fetched.
DIRECT_SOURCE = "Direct"
CACHE_SOURCE = "Cache"


@dataclass(frozen=True)
class Currency:
    code: str
    name: str
    symbol: str
    decimal_places: int = DEFAULT_DECIMAL_PLACES


COMMON_CURRENCIES: Dict[str, Currency] = {
    c.code: c
    for c in (
        Currency("USD", "US Dollar", "$"),
        Currency("EUR", "Euro", "€"),
        Currency("GBP", "British Pound", "£"),
        Currency("JPY", "Japanese Yen", "¥", 0),
        Currency("CAD", "Canadian Dollar", "C$"),
        Currency("AUD", "Australian Dollar", "A$"),
        Currency("CHF", "Swiss Franc", "Fr"),
        Currency("CNY", "Chinese Yuan", "¥"),
        Currency("INR", "Indian Rupee", "₹"),
        Currency("KRW", "South Korean Won", "₩", 0),
        Currency("BRL", "Brazilian Real", "R$"),
        Currency("RUB", "Russian Ruble", "₽"),
        Currency("SGD", "Singapore Dollar", "S$"),
        Currency("HKD", "Hong Kong Dollar", "HK$"),
    )
}


def decimal_places_of(code: str) -> int:
    currency = COMMON_CURRENCIES.get(code.upper())
    return currency.decimal_places if currency else DEFAULT_DECIMAL_PLACES
