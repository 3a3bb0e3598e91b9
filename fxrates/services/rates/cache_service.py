from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Callable, Dict, Optional
from zoneinfo import ZoneInfo

from fxrates.core.config import SmartCacheSettings
from fxrates.models.currency import CACHE_SOURCE
from fxrates.models.rates import Rate, RateTable
from fxrates.services.currency_validation import CurrencyRules

"""Smart latest-rates cache.

Purpose:
    Keep, per base currency, the complete most recently fetched rate table and
    derive any cross rate from the reference currency's table.

Design:
    - One entry per base currency; the table is stored whole and overwritten
      (never merged) on refresh. Symbol filters are applied by callers on the
      way out, never on the way in.
    - TTL follows the upstream publication schedule: short during business
      hours, longer off-hours, and never past the next publication (+ buffer).
    - Expiry is evaluated lazily on read; there is no sweeper task.
    - Historical and time-series data is never cached here.
"""

logger = logging.getLogger("fxrates.cache")

Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TtlPolicy:
    """Business-hours aware TTL calculation (pure given ``now``)."""

    def __init__(self, config: SmartCacheSettings):
        self.config = config
        self.zone = ZoneInfo(config.timezone)

    def is_business_hours(self, local: datetime) -> bool:
        return self.config.business_hours_start <= local.hour < self.config.business_hours_end

    def next_publication(self, local: datetime) -> datetime:
        """Next upstream publication (with buffer) strictly after ``local``."""
        today = local.replace(
            hour=self.config.publication_hour, minute=0, second=0, microsecond=0
        ) + timedelta(minutes=self.config.publication_buffer_minutes)
        if local >= today:
            # re-anchor on tomorrow's wall clock so DST days stay correct
            tomorrow = (local + timedelta(days=1)).replace(
                hour=self.config.publication_hour, minute=0, second=0, microsecond=0
            )
            return tomorrow + timedelta(minutes=self.config.publication_buffer_minutes)
        return today

    def ttl(self, now: datetime) -> timedelta:
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        local = now.astimezone(self.zone)
        # compare in UTC so a DST shift between now and publication is honoured
        remaining = self.next_publication(local).astimezone(timezone.utc) - now.astimezone(
            timezone.utc
        )
        if self.is_business_hours(local):
            ceiling = timedelta(seconds=self.config.business_hours_ttl_seconds)
        else:
            ceiling = timedelta(seconds=self.config.off_hours_ttl_seconds)
        return min(remaining, ceiling)


@dataclass
class _CacheEntry:
    base_currency: str
    table: RateTable
    expires_at: datetime


class SmartRateCache:
    """Process-local latest-rates cache, safe for concurrent readers/writers."""

    def __init__(
        self,
        config: Optional[SmartCacheSettings] = None,
        *,
        reference_currency: str = "EUR",
        rules: Optional[CurrencyRules] = None,
        clock: Clock = _utcnow,
    ):
        self.ttl_policy = TtlPolicy(config or SmartCacheSettings())
        self.reference_currency = reference_currency.upper()
        self._rules = rules or CurrencyRules()
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: Dict[str, _CacheEntry] = {}

    # Internal --------------------------------------------------
    def _now(self) -> datetime:
        return self._clock()

    # Public API -----------------------------------------------
    def compute_ttl(self) -> timedelta:
        return self.ttl_policy.ttl(self._now())

    def get_latest_table(self, base: str) -> Optional[RateTable]:
        base = base.upper()
        now = self._now()
        with self._lock:
            entry = self._entries.get(base)
            if entry is not None and entry.expires_at <= now:
                del self._entries[base]
                entry = None
        if entry is None:
            logger.debug("cache miss for latest rates: %s", base, extra={"base_currency": base})
            return None
        logger.debug("cache hit for latest rates: %s", base, extra={"base_currency": base})
        return entry.table

    def set_latest_table(
        self, base: str, table: RateTable, ttl: Optional[timedelta] = None
    ) -> None:
        base = base.upper()
        if self._rules.is_excluded(base):
            logger.warning("refusing to cache excluded base currency %s", base)
            return
        # strip excluded codes even if a provider slipped one in
        clean = RateTable(
            base=base,
            rates={c: r for c, r in table.rates.items() if not self._rules.is_excluded(c)},
        )
        ttl = ttl if ttl is not None else self.compute_ttl()
        if ttl <= timedelta(0):
            return
        entry = _CacheEntry(base_currency=base, table=clean, expires_at=self._now() + ttl)
        with self._lock:
            self._entries[base] = entry
        logger.info(
            "cached latest rates for %s (%d rates, ttl %.0fs)",
            base,
            len(clean),
            ttl.total_seconds(),
            extra={"base_currency": base, "ttl": ttl.total_seconds()},
        )

    def invalidate(self, base: Optional[str] = None) -> None:
        with self._lock:
            if base is None:
                self._entries.clear()
            else:
                self._entries.pop(base.upper(), None)

    def get_pair_rate(self, from_currency: str, to_currency: str) -> Optional[Rate]:
        """Derive ``from -> to`` from the reference table; never fetches."""
        from_currency = from_currency.upper()
        to_currency = to_currency.upper()
        if from_currency == to_currency:
            return Rate.identity(from_currency, self._now())

        ref = self.reference_currency
        table = self.get_latest_table(ref)
        if table is None:
            return None

        value: Optional[Decimal] = None
        used = []
        if from_currency == ref:
            direct = table.get(to_currency)
            if direct is not None:
                value, used = direct.value, [direct]
        elif to_currency == ref:
            inverse = table.get(from_currency)
            if inverse is not None:
                value, used = Decimal(1) / inverse.value, [inverse]
        else:
            from_rate = table.get(from_currency)
            to_rate = table.get(to_currency)
            if from_rate is not None and to_rate is not None:
                value, used = to_rate.value / from_rate.value, [from_rate, to_rate]

        if value is None:
            logger.debug("no cached conversion rate for %s -> %s", from_currency, to_currency)
            return None
        return Rate(
            from_currency=from_currency,
            to_currency=to_currency,
            value=value,
            observed_at=min(r.observed_at for r in used),
            source=CACHE_SOURCE,
        )
