"""Shared fixtures: settings, fake clocks, an in-memory provider and mock HTTP."""

from __future__ import annotations

import json
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import Callable, Dict, Iterable, List, Optional

import httpx
import pytest

from fxrates.core.config import ProviderSettings, Settings
from fxrates.core.errors import ErrorKind, RateError
from fxrates.models.rates import RateTable
from fxrates.services.currency_validation import CurrencyRules
from fxrates.services.rates.base import RateProvider
from fxrates.services.rates.resilience import ResiliencePolicy


class FakeClock:
    """Monotonic clock the tests advance by hand."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class WallClock:
    """Fixed wall clock for the cache TTL."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta) -> None:
        self.now += timedelta(**delta)


class SleepRecorder:
    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def make_settings(**overrides) -> Settings:
    base = dict(
        active_provider="fake",
        providers={"fake": ProviderSettings(base_url="https://fake.example/")},
        max_retry_attempts=0,
        circuit_failure_threshold=3,
        circuit_break_seconds=30,
    )
    base.update(overrides)
    return Settings(_env_file=None, **base).init_post_load()


def table(base: str, values: Dict[str, str], source: str = "Fake", day: Optional[date] = None) -> RateTable:
    observed = datetime.combine(day or date(2024, 3, 1), datetime.min.time(), tzinfo=timezone.utc)
    return RateTable.from_values(
        base, {k: Decimal(v) for k, v in values.items()}, observed_at=observed, source=source
    )


class FakeProvider(RateProvider):
    """In-memory provider; counts calls and can be told to fail."""

    name = "Fake"

    def __init__(
        self,
        settings: Settings,
        latest: Optional[Dict[str, RateTable]] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        super().__init__(
            ProviderSettings(base_url="https://fake.example/"),
            ResiliencePolicy.from_settings("fake", settings, clock=clock, sleep=SleepRecorder()),
            CurrencyRules(settings.excluded_currencies),
        )
        self.latest = dict(latest or {})
        self.historical: Dict[date, RateTable] = {}
        self.calls: List[tuple] = []
        self.fail_with: Optional[ErrorKind] = None
        self.attempts = 0

    async def _fetch(self, key, fn: Callable[[], RateTable]) -> RateTable:
        self.calls.append(key)

        async def attempt():
            self.attempts += 1
            if self.fail_with is not None:
                raise RateError(self.fail_with, "fake failure")
            return fn()

        return await self.policy.execute(attempt)

    async def fetch_latest(self, base: str, symbols: Optional[Iterable[str]] = None) -> RateTable:
        base = self._check_base(base)
        wanted = self._check_symbols(symbols)
        found = await self._fetch(("latest", base, tuple(wanted or ())), lambda: self.latest.get(base, RateTable(base)))
        return found.filter(wanted)

    async def fetch_historical(self, on: date, base: str, symbols: Optional[Iterable[str]] = None) -> RateTable:
        base = self._check_base(base)
        wanted = self._check_symbols(symbols)
        found = await self._fetch(("historical", on, base), lambda: self.historical.get(on, RateTable(base)))
        return found.filter(wanted)


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def fake_provider(settings) -> FakeProvider:
    return FakeProvider(settings)


def json_client(handler: Callable[[httpx.Request], httpx.Response], base_url: str) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url=base_url)


def json_response(payload, status_code: int = 200) -> httpx.Response:
    return httpx.Response(status_code, content=json.dumps(payload), headers={"content-type": "application/json"})
