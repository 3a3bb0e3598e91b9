"""Rate providers, resilience, smart cache and the conversion engine."""

from .base import RateProvider, TimeSeries
from .cache_service import SmartRateCache, TtlPolicy
from .conversion import CurrencyConversionService
from .providers import (
    CurrencyApiProvider,
    ExchangeRateApiProvider,
    FrankfurterProvider,
    make_rate_provider,
)
from .resilience import CircuitBreaker, CircuitState, ResiliencePolicy, RetryPolicy
from .selector import ProviderSelector

__all__ = [
    "RateProvider",
    "TimeSeries",
    "SmartRateCache",
    "TtlPolicy",
    "CurrencyConversionService",
    "CurrencyApiProvider",
    "ExchangeRateApiProvider",
    "FrankfurterProvider",
    "make_rate_provider",
    "CircuitBreaker",
    "CircuitState",
    "ResiliencePolicy",
    "RetryPolicy",
    "ProviderSelector",
]
