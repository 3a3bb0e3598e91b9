"""Domain models for the rates service."""

from .currency import (
    COMMON_CURRENCIES,
    DEFAULT_EXCLUDED_CURRENCIES,
    Currency,
    decimal_places_of,
)  # re-export
from .rates import ConversionResult, Rate, RateTable

__all__ = [
    "COMMON_CURRENCIES",
    "DEFAULT_EXCLUDED_CURRENCIES",
    "Currency",
    "decimal_places_of",
    "ConversionResult",
    "Rate",
    "RateTable",
]
