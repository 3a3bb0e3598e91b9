from __future__ import annotations

"""Rate provider abstraction.

Each concrete provider maps one upstream wire format onto ``Rate`` /
``RateTable``. Every outbound request goes through the provider's own
``ResiliencePolicy``; parsing happens after the policy so a malformed payload
is never retried.
"""
import logging
from abc import ABC, abstractmethod
from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Iterable, List, Mapping, Optional

import httpx

from fxrates.core.config import ProviderSettings
from fxrates.core.errors import ErrorKind, RateError
from fxrates.models.rates import Rate, RateTable
from fxrates.services.currency_validation import CurrencyRules
from fxrates.services.http_client import get_json
from .resilience import ResiliencePolicy

logger = logging.getLogger("fxrates.providers")

TimeSeries = Dict[date, RateTable]


def parse_upstream_date(raw: Any) -> Optional[datetime]:
    """Parse an upstream ``YYYY-MM-DD`` (or ISO timestamp) into aware UTC."""
    if not raw or not isinstance(raw, str):
        return None
    try:
        parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def day_start(d: date) -> datetime:
    return datetime.combine(d, time.min, tzinfo=timezone.utc)


class RateProvider(ABC):
    """Common capability set implemented by every upstream provider."""

    name: str = "provider"
    supports_native_range: bool = False

    def __init__(
        self,
        config: ProviderSettings,
        policy: ResiliencePolicy,
        rules: CurrencyRules,
        *,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.config = config
        self.policy = policy
        self.rules = rules
        self._client = client

    # Internal --------------------------------------------------
    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=str(self.config.base_url),
                timeout=self.config.timeout_seconds,
            )
        return self._client

    async def _get(self, path: str, params: Optional[Mapping[str, Any]] = None) -> Dict[str, Any]:
        logger.debug("GET %s%s params=%s", self.config.base_url, path, _redact(params))
        return await self.policy.execute(
            lambda: get_json(self.client, path, params=params)
        )

    def _check_base(self, base: str) -> str:
        return self.rules.normalize(base, "base", ErrorKind.UNSUPPORTED_CURRENCY)

    def _check_symbols(self, symbols: Optional[Iterable[str]]) -> Optional[List[str]]:
        return self.rules.normalize_many(symbols, "symbols", ErrorKind.UNSUPPORTED_CURRENCY)

    def _mapping_field(self, data: Mapping[str, Any], key: str) -> Mapping[str, Any]:
        """Return ``data[key]`` as a mapping; absent or null reads as empty."""
        value = data.get(key)
        if value is None:
            return {}
        if not isinstance(value, Mapping):
            raise RateError(
                ErrorKind.UPSTREAM_REJECTED,
                f"{self.name}: expected an object for '{key}', got {type(value).__name__}",
            )
        return value

    def _build_table(
        self,
        base: str,
        raw_rates: Mapping[str, Any],
        observed_at: datetime,
        symbols: Optional[List[str]] = None,
    ) -> RateTable:
        """Keep well-formed, non-excluded codes with positive numeric values."""
        values: Dict[str, Decimal] = {}
        for code, raw in raw_rates.items():
            if not isinstance(code, str) or not self.rules.is_valid(code):
                continue
            value = _to_positive_decimal(raw)
            if value is None:
                continue
            values[code.upper()] = value
        values.pop(base, None)
        table = RateTable.from_values(base, values, observed_at=observed_at, source=self.name)
        return table.filter(symbols)

    # Public API -----------------------------------------------
    @abstractmethod
    async def fetch_latest(
        self, base: str, symbols: Optional[Iterable[str]] = None
    ) -> RateTable:
        raise NotImplementedError

    @abstractmethod
    async def fetch_historical(
        self, on: date, base: str, symbols: Optional[Iterable[str]] = None
    ) -> RateTable:
        raise NotImplementedError

    async def fetch_range(
        self,
        start: date,
        end: date,
        base: str,
        symbols: Optional[Iterable[str]] = None,
    ) -> TimeSeries:
        """Synthesize a range from one historical call per day.

        A day that fails is logged and left out; the rest of the range is
        still returned.
        """
        base = self._check_base(base)
        wanted = self._check_symbols(symbols)
        result: TimeSeries = {}
        current = start
        while current <= end:
            try:
                table = await self.fetch_historical(current, base, wanted)
            except RateError as e:
                logger.warning(
                    "%s: failed to get rates for %s: %s",
                    self.name,
                    current.isoformat(),
                    e.message,
                    extra={"provider": self.name, "base_currency": base},
                )
            else:
                if table:
                    result[current] = table
            current += timedelta(days=1)
        return result

    async def fetch_pair(self, from_currency: str, to_currency: str) -> Optional[Rate]:
        """Fetch ``from -> to`` by narrowing a latest table to one symbol."""
        from_currency = self._check_base(from_currency)
        to_currency = self.rules.normalize(to_currency, "to", ErrorKind.UNSUPPORTED_CURRENCY)
        if from_currency == to_currency:
            return Rate.identity(from_currency)
        table = await self.fetch_latest(from_currency, [to_currency])
        return table.get(to_currency)

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def __repr__(self) -> str:
        return f"<{type(self).__name__} name={self.name!r}>"


def _to_positive_decimal(raw: Any) -> Optional[Decimal]:
    if isinstance(raw, bool) or not isinstance(raw, (int, float, str, Decimal)):
        return None
    try:
        value = Decimal(str(raw))
    except InvalidOperation:
        return None
    if not value.is_finite() or value <= 0:
        return None
    return value


def _redact(params: Optional[Mapping[str, Any]]) -> Optional[Dict[str, Any]]:
    if not params:
        return None
    return {k: ("***" if k.lower() in ("apikey", "api_key") else v) for k, v in params.items()}


__all__ = ["RateProvider", "TimeSeries", "parse_upstream_date", "day_start"]
