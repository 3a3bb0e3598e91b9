from functools import lru_cache
from typing import Any, Dict, Optional, Set, Tuple

from pydantic import AnyHttpUrl, BaseModel, Field
from pydantic.fields import FieldInfo
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
)


class ProviderSettings(BaseModel):
    """Per-provider upstream configuration."""

    base_url: AnyHttpUrl
    api_key: Optional[str] = None
    enabled: bool = True
    # lower is preferred; reported in provider status listings
    priority: int = 1
    timeout_seconds: float = 10.0


class SmartCacheSettings(BaseModel):
    """Business-hours aware TTL knobs for the latest-rates cache.

    Upstream (ECB via Frankfurter) publishes around 16:00 CET; the buffer
    gives it time to propagate before we consider the new table available.
    """

    timezone: str = "Europe/Berlin"
    publication_hour: int = Field(16, ge=0, le=23)
    publication_buffer_minutes: int = Field(5, ge=0)
    business_hours_start: int = Field(8, ge=0, le=23)
    business_hours_end: int = Field(20, ge=1, le=24)
    business_hours_ttl_seconds: int = Field(900, gt=0)  # 15 minutes
    off_hours_ttl_seconds: int = Field(7200, gt=0)  # 2 hours


def _default_providers() -> Dict[str, ProviderSettings]:
    return {
        "frankfurter": ProviderSettings(
            base_url="https://api.frankfurter.app/", priority=1
        ),
        "exchangerateapi": ProviderSettings(
            base_url="https://api.exchangerate-api.com/v4/", priority=2
        ),
        # requires an API key, so off by default
        "currencyapi": ProviderSettings(
            base_url="https://api.currencyapi.com/v3/", enabled=False, priority=3
        ),
    }


class _DefaultProvidersSource(PydanticBaseSettingsSource):
    """Lowest-priority source holding the built-in provider table.

    Env and .env entries such as FXRATES_PROVIDERS__CURRENCYAPI__API_KEY are
    deep-merged over it, so one field can be set without restating the rest.
    """

    def get_field_value(self, field: FieldInfo, field_name: str) -> Tuple[Any, str, bool]:
        return None, field_name, False

    def __call__(self) -> Dict[str, Any]:
        return {
            "providers": {
                key: config.model_dump(mode="json")
                for key, config in _default_providers().items()
            }
        }


class Settings(BaseSettings):
    """Service settings loaded from environment with defaults.

    Environment variables use the FXRATES_ prefix and ``__`` for nesting, e.g.
    FXRATES_ACTIVE_PROVIDER, FXRATES_CACHE__OFF_HOURS_TTL_SECONDS,
    FXRATES_PROVIDERS__CURRENCYAPI__API_KEY.
    """

    model_config = SettingsConfigDict(
        env_prefix="FXRATES_",
        env_nested_delimiter="__",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    # Basic app metadata
    app_name: str = "FX Rates Service"
    debug: bool = False
    version: str = "0.1.0"

    # Providers
    active_provider: str = "frankfurter"
    providers: Dict[str, ProviderSettings] = Field(default_factory=_default_providers)

    # Resilience
    max_retry_attempts: int = Field(3, ge=0)
    retry_backoff_base_seconds: float = Field(2.0, ge=0)
    circuit_failure_threshold: int = Field(3, ge=1)
    circuit_break_seconds: float = Field(30.0, gt=0)

    # Caching / triangulation
    cache: SmartCacheSettings = Field(default_factory=SmartCacheSettings)
    reference_currency: str = "EUR"
    default_base_currency: str = "EUR"

    # Currencies never served anywhere in the service
    excluded_currencies: Set[str] = Field(
        default_factory=lambda: {"TRY", "PLN", "THB", "MXN"}
    )
    max_conversion_amount: float = Field(1_000_000, gt=0)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        sources = (init_settings, env_settings, dotenv_settings, file_secret_settings)
        # providers passed in code replace the built-in table outright
        if "providers" in getattr(init_settings, "init_kwargs", {}):
            return sources
        return sources + (_DefaultProvidersSource(settings_cls),)

    def init_post_load(self) -> "Settings":
        """Normalise codes and provider names in place."""
        self.active_provider = self.active_provider.strip().lower()
        self.providers = {k.strip().lower(): v for k, v in self.providers.items()}
        self.reference_currency = self.reference_currency.strip().upper()
        self.default_base_currency = self.default_base_currency.strip().upper()
        self.excluded_currencies = {c.strip().upper() for c in self.excluded_currencies}
        return self


@lru_cache
def get_settings() -> Settings:
    return Settings().init_post_load()
