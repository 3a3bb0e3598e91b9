"""Currency code validation and the excluded-currency rule.

Every entry point (engine, cache, providers) runs codes through one
``CurrencyRules`` instance before any I/O happens.
"""

from __future__ import annotations

from typing import FrozenSet, Iterable, List, Optional

from fxrates.core.errors import ErrorKind, RateError
from fxrates.models.currency import (
    COMMON_CURRENCIES,
    CURRENCY_CODE_RE,
    DEFAULT_EXCLUDED_CURRENCIES,
    Currency,
)


class CurrencyRules:
    def __init__(self, excluded: Optional[Iterable[str]] = None):
        source = DEFAULT_EXCLUDED_CURRENCIES if excluded is None else excluded
        self._excluded: FrozenSet[str] = frozenset(c.strip().upper() for c in source)

    @property
    def excluded(self) -> FrozenSet[str]:
        return self._excluded

    def is_excluded(self, code: Optional[str]) -> bool:
        return bool(code) and code.strip().upper() in self._excluded  # type: ignore[union-attr]

    def is_valid(self, code: Optional[str]) -> bool:
        if not code or not code.strip():
            return False
        upper = code.strip().upper()
        return bool(CURRENCY_CODE_RE.match(upper)) and upper not in self._excluded

    def exclusion_message(self, code: str) -> str:
        return (
            f"Currency '{code.upper()}' is not supported. The following currencies "
            f"are excluded: {', '.join(sorted(self._excluded))}."
        )

    def normalize(
        self,
        code: Optional[str],
        field: str = "currency",
        kind: ErrorKind = ErrorKind.INVALID_CURRENCY,
    ) -> str:
        """Return the upper-cased code or raise ``RateError(kind)``."""
        if code is None or not code.strip():
            raise RateError(kind, f"{field}: currency code cannot be empty")
        upper = code.strip().upper()
        if len(upper) != 3:
            raise RateError(kind, f"{field}: currency code must be exactly 3 characters")
        if not CURRENCY_CODE_RE.match(upper):
            raise RateError(kind, f"{field}: currency code must contain only letters")
        if upper in self._excluded:
            raise RateError(kind, f"{field}: {self.exclusion_message(upper)}")
        return upper

    def normalize_many(
        self,
        codes: Optional[Iterable[str]],
        field: str = "symbols",
        kind: ErrorKind = ErrorKind.INVALID_CURRENCY,
    ) -> Optional[List[str]]:
        if codes is None:
            return None
        out: List[str] = []
        for code in codes:
            norm = self.normalize(code, f"{field}[{code}]", kind)
            if norm not in out:
                out.append(norm)
        return out or None

    def supported_currencies(self) -> List[Currency]:
        return [c for code, c in COMMON_CURRENCIES.items() if code not in self._excluded]

    def is_supported(self, code: Optional[str]) -> bool:
        if not self.is_valid(code):
            return False
        return code.strip().upper() in COMMON_CURRENCIES  # type: ignore[union-attr]
