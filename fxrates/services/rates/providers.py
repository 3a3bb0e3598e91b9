from __future__ import annotations

"""Concrete rate providers and the provider registry.

Three upstream wire formats are supported:

    frankfurter      {base, date, rates: {code: number}}; native date ranges
    exchangerateapi  {base, date, rates: {code: number}}; path-style base
    currencyapi      {meta: {last_updated_at}, data: {code: {code, value}}}; API key

Providers without native range support inherit the per-day synthesis from
``RateProvider.fetch_range``.
"""
from datetime import date
from typing import Any, Dict, Iterable, Mapping, Optional, Type

import httpx

from fxrates.core.config import ProviderSettings
from fxrates.core.errors import ErrorKind, RateError
from fxrates.models.rates import RateTable, utcnow
from fxrates.services.currency_validation import CurrencyRules
from .base import RateProvider, TimeSeries, day_start, parse_upstream_date
from .resilience import ResiliencePolicy


class FrankfurterProvider(RateProvider):
    name = "Frankfurter"
    supports_native_range = True

    @staticmethod
    def _params(base: str, symbols: Optional[list]) -> Dict[str, str]:
        params = {"from": base}
        if symbols:
            params["to"] = ",".join(symbols)
        return params

    def _parse(self, data: Mapping[str, Any], base: str, symbols: Optional[list]) -> RateTable:
        observed_at = parse_upstream_date(data.get("date")) or utcnow()
        return self._build_table(base, self._mapping_field(data, "rates"), observed_at, symbols)

    async def fetch_latest(self, base: str, symbols: Optional[Iterable[str]] = None) -> RateTable:
        base = self._check_base(base)
        wanted = self._check_symbols(symbols)
        data = await self._get("latest", self._params(base, wanted))
        return self._parse(data, base, wanted)

    async def fetch_historical(
        self, on: date, base: str, symbols: Optional[Iterable[str]] = None
    ) -> RateTable:
        base = self._check_base(base)
        wanted = self._check_symbols(symbols)
        data = await self._get(on.isoformat(), self._params(base, wanted))
        return self._parse(data, base, wanted)

    async def fetch_range(
        self,
        start: date,
        end: date,
        base: str,
        symbols: Optional[Iterable[str]] = None,
    ) -> TimeSeries:
        base = self._check_base(base)
        wanted = self._check_symbols(symbols)
        if start > end:
            return {}
        data = await self._get(
            f"{start.isoformat()}..{end.isoformat()}", self._params(base, wanted)
        )
        result: TimeSeries = {}
        for raw_day, raw_rates in self._mapping_field(data, "rates").items():
            try:
                day = date.fromisoformat(raw_day)
            except (TypeError, ValueError):
                continue
            if not isinstance(raw_rates, Mapping):
                continue
            table = self._build_table(base, raw_rates, day_start(day), wanted)
            if table:
                result[day] = table
        return dict(sorted(result.items()))


class ExchangeRateApiProvider(RateProvider):
    name = "ExchangeRateAPI"

    def _parse(
        self,
        data: Mapping[str, Any],
        base: str,
        symbols: Optional[list],
        fallback_observed: Optional[Any] = None,
    ) -> RateTable:
        observed_at = parse_upstream_date(data.get("date")) or fallback_observed or utcnow()
        # upstream has no symbol filter; narrow client-side
        return self._build_table(base, self._mapping_field(data, "rates"), observed_at, symbols)

    async def fetch_latest(self, base: str, symbols: Optional[Iterable[str]] = None) -> RateTable:
        base = self._check_base(base)
        wanted = self._check_symbols(symbols)
        data = await self._get(f"latest/{base}")
        return self._parse(data, base, wanted)

    async def fetch_historical(
        self, on: date, base: str, symbols: Optional[Iterable[str]] = None
    ) -> RateTable:
        base = self._check_base(base)
        wanted = self._check_symbols(symbols)
        data = await self._get(f"{on.isoformat()}/{base}")
        return self._parse(data, base, wanted, fallback_observed=day_start(on))


class CurrencyApiProvider(RateProvider):
    name = "CurrencyAPI"

    def _api_key(self) -> str:
        if not self.config.api_key:
            raise RateError(
                ErrorKind.UPSTREAM_REJECTED,
                "CurrencyAPI requires an API key (FXRATES_PROVIDERS__CURRENCYAPI__API_KEY)",
            )
        return self.config.api_key

    def _params(self, base: str, symbols: Optional[list], **extra: str) -> Dict[str, str]:
        params = {"apikey": self._api_key(), "base_currency": base, **extra}
        if symbols:
            params["currencies"] = ",".join(symbols)
        return params

    def _parse(
        self,
        data: Mapping[str, Any],
        base: str,
        symbols: Optional[list],
        fallback_observed: Optional[Any] = None,
    ) -> RateTable:
        meta = data.get("meta") or {}
        observed_at = (
            parse_upstream_date(meta.get("last_updated_at") if isinstance(meta, Mapping) else None)
            or fallback_observed
            or utcnow()
        )
        raw: Dict[str, Any] = {}
        for code, info in self._mapping_field(data, "data").items():
            if isinstance(info, Mapping):
                raw[code] = info.get("value")
        return self._build_table(base, raw, observed_at, symbols)

    async def fetch_latest(self, base: str, symbols: Optional[Iterable[str]] = None) -> RateTable:
        base = self._check_base(base)
        wanted = self._check_symbols(symbols)
        data = await self._get("latest", self._params(base, wanted))
        return self._parse(data, base, wanted)

    async def fetch_historical(
        self, on: date, base: str, symbols: Optional[Iterable[str]] = None
    ) -> RateTable:
        base = self._check_base(base)
        wanted = self._check_symbols(symbols)
        data = await self._get("historical", self._params(base, wanted, date=on.isoformat()))
        return self._parse(data, base, wanted, fallback_observed=day_start(on))


_PROVIDER_REGISTRY: Dict[str, Type[RateProvider]] = {
    "frankfurter": FrankfurterProvider,
    "exchangerateapi": ExchangeRateApiProvider,
    "currencyapi": CurrencyApiProvider,
}


def known_providers() -> Dict[str, Type[RateProvider]]:
    return dict(_PROVIDER_REGISTRY)


def make_rate_provider(
    kind: str,
    config: ProviderSettings,
    policy: ResiliencePolicy,
    rules: CurrencyRules,
    *,
    client: Optional[httpx.AsyncClient] = None,
) -> RateProvider:
    cls = _PROVIDER_REGISTRY.get(kind.strip().lower())
    if cls is None:
        raise RateError(
            ErrorKind.UNKNOWN_PROVIDER,
            f"Unknown rate provider kind '{kind}'. Known: {sorted(_PROVIDER_REGISTRY)}",
        )
    return cls(config, policy, rules, client=client)
