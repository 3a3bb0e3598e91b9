from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, Iterable, Iterator, Mapping, Optional

from .currency import DIRECT_SOURCE

"""Core rate data model.

``Rate`` is a single quoted pair; ``RateTable`` is every rate quoted from one
base currency at one point in time, which is also the unit of caching.
"""


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Rate:
    from_currency: str
    to_currency: str
    value: Decimal
    observed_at: datetime
    source: str

    @property
    def pair(self) -> str:
        return f"{self.from_currency}-{self.to_currency}"

    @classmethod
    def identity(cls, code: str, observed_at: Optional[datetime] = None) -> "Rate":
        return cls(
            from_currency=code,
            to_currency=code,
            value=Decimal(1),
            observed_at=observed_at or utcnow(),
            source=DIRECT_SOURCE,
        )


@dataclass(frozen=True)
class RateTable:
    base: str
    rates: Dict[str, Rate] = field(default_factory=dict)

    @classmethod
    def from_values(
        cls,
        base: str,
        values: Mapping[str, Decimal],
        *,
        observed_at: datetime,
        source: str,
    ) -> "RateTable":
        return cls(
            base=base,
            rates={
                code: Rate(base, code, value, observed_at, source)
                for code, value in values.items()
            },
        )

    def get(self, code: str) -> Optional[Rate]:
        return self.rates.get(code)

    def __contains__(self, code: object) -> bool:
        return code in self.rates

    def __iter__(self) -> Iterator[str]:
        return iter(self.rates)

    def __len__(self) -> int:
        return len(self.rates)

    def __bool__(self) -> bool:
        return bool(self.rates)

    def filter(self, symbols: Optional[Iterable[str]]) -> "RateTable":
        """Return a copy narrowed to ``symbols``; ``None`` or empty keeps all."""
        if not symbols:
            return self
        wanted = {s.upper() for s in symbols}
        return RateTable(
            base=self.base,
            rates={c: r for c, r in self.rates.items() if c in wanted},
        )

    def values(self) -> Dict[str, Decimal]:
        return {code: rate.value for code, rate in self.rates.items()}

    @property
    def observed_at(self) -> Optional[datetime]:
        if not self.rates:
            return None
        return max(r.observed_at for r in self.rates.values())

    @property
    def source(self) -> Optional[str]:
        for rate in self.rates.values():
            return rate.source
        return None


@dataclass(frozen=True)
class ConversionResult:
    amount: Decimal
    from_currency: str
    to_currency: str
    converted_amount: Decimal
    rate: Decimal
    rate_timestamp: datetime
    rate_source: str
