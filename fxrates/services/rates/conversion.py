from __future__ import annotations

import logging
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, Iterable, List, Optional

from fxrates.core.config import Settings
from fxrates.core.errors import ErrorKind, RateError
from fxrates.models.currency import DIRECT_SOURCE, Currency
from fxrates.models.rates import ConversionResult, Rate, RateTable
from fxrates.services.currency_validation import CurrencyRules
from fxrates.services.money import round_for_currency, to_decimal
from .base import RateProvider
from .cache_service import SmartRateCache
from .selector import ProviderSelector

"""Currency conversion engine.

Centralizes the cache-first lookup and the conversion arithmetic:
    - Validate and normalize codes / amounts before any I/O.
    - Same-currency conversions short-circuit to a 1:1 "Direct" result.
    - Pair rates come from the smart cache (triangulated through the reference
      currency); on a miss the active provider is asked for the pair. Pair
      fetches never warm the cache.
    - Latest tables are always fetched and cached whole; symbol filters only
      narrow what is returned.
    - Historical and time-series data is passed through uncached.

Provider failures are folded into RATE_UNAVAILABLE with ``reason`` set to the
underlying kind, so an open circuit stays visible to operators.
"""

logger = logging.getLogger("fxrates.conversion")


def _today() -> date:
    return datetime.now(timezone.utc).date()


class CurrencyConversionService:
    def __init__(
        self,
        selector: ProviderSelector,
        cache: SmartRateCache,
        settings: Settings,
        rules: Optional[CurrencyRules] = None,
        *,
        today: Callable[[], date] = _today,
    ):
        self._selector = selector
        self._cache = cache
        self._settings = settings
        self._rules = rules or CurrencyRules(settings.excluded_currencies)
        self._today = today
        self._max_amount = to_decimal(settings.max_conversion_amount)

    @property
    def default_base_currency(self) -> str:
        return self._settings.default_base_currency

    # Internal --------------------------------------------------
    def _currency(self, code: Optional[str], field: str) -> str:
        return self._rules.normalize(code, field, ErrorKind.INVALID_CURRENCY)

    def _base(self, base: Optional[str]) -> str:
        return self._currency(base or self._settings.default_base_currency, "base")

    def _amount(self, amount: Any) -> Decimal:
        try:
            value = to_decimal(amount)
        except (InvalidOperation, ValueError, TypeError) as e:
            raise RateError(ErrorKind.INVALID_AMOUNT, f"amount is not a number: {amount!r}") from e
        if not value.is_finite() or value <= 0:
            raise RateError(ErrorKind.INVALID_AMOUNT, "Amount must be greater than zero")
        if value > self._max_amount:
            raise RateError(
                ErrorKind.INVALID_AMOUNT, f"Amount cannot exceed {self._max_amount:,}"
            )
        return value

    def _not_future(self, d: date, field: str) -> None:
        if d > self._today():
            raise RateError(ErrorKind.INVALID_DATE, f"{field} cannot be in the future")

    @staticmethod
    def _unavailable(message: str, cause: Optional[RateError] = None) -> RateError:
        return RateError(
            ErrorKind.RATE_UNAVAILABLE,
            message,
            reason=cause.kind.value if cause is not None else None,
        )

    # Public API -----------------------------------------------
    async def convert(self, amount: Any, from_currency: str, to_currency: str) -> ConversionResult:
        from_currency = self._currency(from_currency, "from")
        to_currency = self._currency(to_currency, "to")
        value = self._amount(amount)

        logger.info("converting %s %s -> %s", value, from_currency, to_currency)
        if from_currency == to_currency:
            identity = Rate.identity(from_currency)
            return ConversionResult(
                amount=value,
                from_currency=from_currency,
                to_currency=to_currency,
                converted_amount=value,
                rate=identity.value,
                rate_timestamp=identity.observed_at,
                rate_source=DIRECT_SOURCE,
            )

        rate = await self.get_exchange_rate(from_currency, to_currency)
        return ConversionResult(
            amount=value,
            from_currency=from_currency,
            to_currency=to_currency,
            converted_amount=round_for_currency(value * rate.value, to_currency),
            rate=rate.value,
            rate_timestamp=rate.observed_at,
            rate_source=rate.source,
        )

    async def get_exchange_rate(self, from_currency: str, to_currency: str) -> Rate:
        from_currency = self._currency(from_currency, "from")
        to_currency = self._currency(to_currency, "to")
        if from_currency == to_currency:
            return Rate.identity(from_currency)

        cached = self._cache.get_pair_rate(from_currency, to_currency)
        if cached is not None:
            logger.debug("using cached exchange rate for %s -> %s", from_currency, to_currency)
            return cached

        provider = self._selector.get_active_provider()
        try:
            rate = await provider.fetch_pair(from_currency, to_currency)
        except RateError as e:
            logger.error(
                "error getting rate %s -> %s from provider %s: %s",
                from_currency,
                to_currency,
                provider.name,
                e.message,
                extra={"provider": provider.name},
            )
            raise self._unavailable(
                f"Unable to get exchange rate from {from_currency} to {to_currency}", e
            ) from e
        if rate is None:
            raise self._unavailable(
                f"Unable to get exchange rate from {from_currency} to {to_currency}"
            )
        logger.info("got exchange rate from provider %s", provider.name, extra={"provider": provider.name})
        return rate

    async def get_latest_rates(
        self, base: Optional[str] = None, symbols: Optional[Iterable[str]] = None
    ) -> RateTable:
        base_code = self._base(base)
        wanted = self._rules.normalize_many(symbols, "symbols", ErrorKind.INVALID_CURRENCY)

        cached = self._cache.get_latest_table(base_code)
        if cached is not None:
            return cached.filter(wanted)

        provider = self._selector.get_active_provider()
        try:
            # always the complete table so one cache entry serves every filter
            table = await provider.fetch_latest(base_code, None)
        except RateError as e:
            logger.error(
                "error getting latest rates for %s from provider %s: %s",
                base_code,
                provider.name,
                e.message,
                extra={"provider": provider.name, "base_currency": base_code},
            )
            raise self._unavailable(f"No rates available for base currency {base_code}", e) from e
        if not table:
            raise self._unavailable(f"No rates available for base currency {base_code}")

        logger.info(
            "got %d latest rates from provider %s",
            len(table),
            provider.name,
            extra={"provider": provider.name, "base_currency": base_code},
        )
        self._cache.set_latest_table(base_code, table)
        return table.filter(wanted)

    async def get_historical_rates(
        self, on: date, base: Optional[str] = None, symbols: Optional[Iterable[str]] = None
    ) -> RateTable:
        base_code = self._base(base)
        wanted = self._rules.normalize_many(symbols, "symbols", ErrorKind.INVALID_CURRENCY)
        self._not_future(on, "Historical date")

        provider = self._selector.get_active_provider()
        try:
            table = await provider.fetch_historical(on, base_code, wanted)
        except RateError as e:
            logger.error(
                "error getting historical rates for %s on %s from %s: %s",
                base_code,
                on.isoformat(),
                provider.name,
                e.message,
                extra={"provider": provider.name, "base_currency": base_code},
            )
            raise self._unavailable(
                f"No rates available for {on.isoformat()} with base currency {base_code}", e
            ) from e
        if not table:
            raise self._unavailable(
                f"No rates available for {on.isoformat()} with base currency {base_code}"
            )
        return table

    async def get_time_series(
        self,
        start: date,
        end: date,
        base: Optional[str] = None,
        symbols: Optional[Iterable[str]] = None,
    ) -> Dict[str, Dict[str, Decimal]]:
        base_code = self._base(base)
        wanted = self._rules.normalize_many(symbols, "symbols", ErrorKind.INVALID_CURRENCY)
        self._not_future(start, "Start date")
        self._not_future(end, "End date")
        if start > end:
            raise RateError(ErrorKind.INVALID_DATE, "Start date cannot be after end date")

        provider = self._selector.get_active_provider()
        try:
            series = await provider.fetch_range(start, end, base_code, wanted)
        except RateError as e:
            logger.error(
                "error getting time series for %s %s..%s from %s: %s",
                base_code,
                start.isoformat(),
                end.isoformat(),
                provider.name,
                e.message,
                extra={"provider": provider.name, "base_currency": base_code},
            )
            raise self._unavailable(
                f"No time series data available for {start.isoformat()} to {end.isoformat()} "
                f"with base currency {base_code}",
                e,
            ) from e
        if not series:
            raise self._unavailable(
                f"No time series data available for {start.isoformat()} to {end.isoformat()} "
                f"with base currency {base_code}"
            )
        return {day.isoformat(): table.values() for day, table in sorted(series.items())}

    def get_supported_currencies(self) -> List[Currency]:
        return self._rules.supported_currencies()

    def is_currency_supported(self, code: str) -> bool:
        # validation errors (malformed / excluded) surface to the caller
        return self._rules.is_supported(self._currency(code, "currency"))

    def provider_status(self) -> List[Dict[str, Any]]:
        active = self._selector.get_active_provider()
        out: List[Dict[str, Any]] = []
        for provider in self._selector.get_all_providers():
            out.append(_status_row(provider, provider is active))
        if active not in self._selector.get_all_providers():
            out.insert(0, _status_row(active, True))
        return out


def _status_row(provider: RateProvider, active: bool) -> Dict[str, Any]:
    return {
        "name": provider.name,
        "active": active,
        "priority": provider.config.priority,
        "native_range": provider.supports_native_range,
        "circuit": provider.policy.breaker.snapshot(),
    }
