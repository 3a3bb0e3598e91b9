from __future__ import annotations

"""Provider selection.

Builds one provider instance per configured provider at startup (each with its
own resilience policy) and answers two questions: which provider is active,
and which providers are enabled. It never fetches, caches or retries.
"""
import logging
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional

import httpx

from fxrates.core.config import Settings
from fxrates.core.errors import ErrorKind, RateError
from fxrates.services.currency_validation import CurrencyRules
from .base import RateProvider
from .providers import make_rate_provider
from .resilience import ResiliencePolicy, StateListener

logger = logging.getLogger("fxrates.selector")


class ProviderSelector:
    def __init__(
        self,
        settings: Settings,
        rules: Optional[CurrencyRules] = None,
        *,
        providers: Optional[Mapping[str, RateProvider]] = None,
        clients: Optional[Mapping[str, httpx.AsyncClient]] = None,
        clock: Optional[Callable[[], float]] = None,
        sleep: Optional[Callable[[float], Awaitable[Any]]] = None,
        listeners: Optional[List[StateListener]] = None,
    ):
        self._settings = settings
        self._rules = rules or CurrencyRules(settings.excluded_currencies)
        self._providers: Dict[str, RateProvider] = {
            k.strip().lower(): p for k, p in (providers or {}).items()
        }
        clients = clients or {}
        for key, config in settings.providers.items():
            if key in self._providers:
                continue
            policy = ResiliencePolicy.from_settings(
                key, settings, clock=clock, sleep=sleep, listeners=listeners
            )
            self._providers[key] = make_rate_provider(
                key, config, policy, self._rules, client=clients.get(key)
            )
        # fail at construction, not on the first request
        self._active_key = self._resolve(settings.active_provider)
        logger.info(
            "rate providers ready: active=%s enabled=%s",
            self._active_key,
            [p.name for p in self.get_all_providers()],
        )

    def _resolve(self, name: str) -> str:
        key = (name or "").strip().lower()
        if key not in self._providers:
            raise RateError(
                ErrorKind.UNKNOWN_PROVIDER,
                f"Unknown provider: {name!r}. Configured: {sorted(self._providers)}",
            )
        return key

    def _is_enabled(self, key: str) -> bool:
        config = self._settings.providers.get(key)
        return bool(config and config.enabled)

    def get_active_provider(self) -> RateProvider:
        return self._providers[self._active_key]

    def get_all_providers(self) -> List[RateProvider]:
        """Enabled providers in configuration order."""
        return [p for key, p in self._providers.items() if self._is_enabled(key)]

    def provider_key(self, provider: RateProvider) -> Optional[str]:
        for key, p in self._providers.items():
            if p is provider:
                return key
        return None

    async def aclose(self) -> None:
        for provider in self._providers.values():
            await provider.aclose()
