import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from .core import errors
from .core.config import Settings, get_settings
from .core.errors import RateError
from .core.logging import init_logging, request_context_middleware
from .routers import currency
from .services.currency_validation import CurrencyRules
from .services.rates.cache_service import SmartRateCache
from .services.rates.conversion import CurrencyConversionService
from .services.rates.selector import ProviderSelector


def create_app(
    settings_override: Settings | None = None,
    selector_override: ProviderSelector | None = None,
    cache_override: SmartRateCache | None = None,
) -> FastAPI:
    """Application factory.

    settings_override / selector_override / cache_override let tests inject
    fake providers and fixed clocks. The service graph is built here, before
    the app serves anything, so an unknown active provider stops startup.
    """
    settings = settings_override or get_settings()
    init_logging(debug=settings.debug)

    rules = CurrencyRules(settings.excluded_currencies)
    try:
        selector = selector_override or ProviderSelector(settings, rules)
    except RateError:
        logging.getLogger("fxrates").exception("failed to configure rate providers")
        raise
    cache = cache_override or SmartRateCache(
        settings.cache,
        reference_currency=settings.reference_currency,
        rules=rules,
    )
    service = CurrencyConversionService(selector, cache, settings, rules)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        await selector.aclose()

    app = FastAPI(
        title=settings.app_name,
        debug=settings.debug,
        version=settings.version,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.selector = selector
    app.state.cache = cache
    app.state.conversion_service = service

    # Middleware (correlation id / structured logging)
    app.middleware("http")(request_context_middleware)

    # Error handlers
    app.add_exception_handler(RateError, errors.rate_error_handler)
    app.add_exception_handler(StarletteHTTPException, errors.not_found_handler)
    app.add_exception_handler(RequestValidationError, errors.validation_error_handler)
    app.add_exception_handler(Exception, errors.server_error_handler)

    app.include_router(currency.router)

    @app.get("/health")
    async def health():
        return {"status": "ok", "active_provider": selector.get_active_provider().name}

    @app.get("/")
    async def root():
        return {"message": settings.app_name, "version": settings.version}

    return app
