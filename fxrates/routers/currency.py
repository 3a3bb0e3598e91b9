from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field

from fxrates.core.logging import request_id_ctx
from fxrates.models.rates import RateTable
from fxrates.services.rates.conversion import CurrencyConversionService

"""Currency router: thin pass-through to the conversion engine.

Endpoints:
    - POST /currency/convert                       -> convert an amount
    - GET  /currency/latest?base=&symbols=         -> latest table (cached)
    - GET  /currency/historical/{date}             -> one day's table
    - GET  /currency/timeseries?start=&end=        -> per-day tables
    - GET  /currency/currencies                    -> supported currency codes
    - GET  /currency/currencies/{code}/supported   -> support check
    - GET  /currency/providers                     -> enabled providers + circuits

Failures are ``RateError`` and are rendered by the handler in core.errors.
"""

router = APIRouter(prefix="/currency", tags=["currency"])


def get_conversion_service(request: Request) -> CurrencyConversionService:
    return request.app.state.conversion_service


def _split_symbols(symbols: Optional[str]) -> Optional[List[str]]:
    if not symbols or not symbols.strip():
        return None
    return [s.strip() for s in symbols.split(",") if s.strip()]


class ConversionRequest(BaseModel):
    amount: Decimal = Field(..., description="Amount in the source currency")
    from_currency: str = Field(..., min_length=1, description="Source currency (e.g. USD)")
    to_currency: str = Field(..., min_length=1, description="Target currency (e.g. GBP)")


class ConversionResponse(BaseModel):
    amount: float
    from_currency: str
    to_currency: str
    converted_amount: float
    exchange_rate: float
    rate_last_updated: datetime
    rate_source: str
    request_id: Optional[str] = None


class RatesResponse(BaseModel):
    base: str
    date: Optional[datetime]
    rates: Dict[str, float]
    source: Optional[str]
    request_id: Optional[str] = None


class TimeSeriesResponse(BaseModel):
    base: str
    start_date: date
    end_date: date
    rates: Dict[str, Dict[str, float]]
    count: int
    request_id: Optional[str] = None


def _rates_response(table: RateTable) -> RatesResponse:
    return RatesResponse(
        base=table.base,
        date=table.observed_at,
        rates={code: float(value) for code, value in table.values().items()},
        source=table.source,
        request_id=request_id_ctx.get(),
    )


@router.post("/convert", summary="Convert an amount between currencies")
async def convert(
    payload: ConversionRequest,
    svc: CurrencyConversionService = Depends(get_conversion_service),
) -> ConversionResponse:
    result = await svc.convert(payload.amount, payload.from_currency, payload.to_currency)
    return ConversionResponse(
        amount=float(result.amount),
        from_currency=result.from_currency,
        to_currency=result.to_currency,
        converted_amount=float(result.converted_amount),
        exchange_rate=float(result.rate),
        rate_last_updated=result.rate_timestamp,
        rate_source=result.rate_source,
        request_id=request_id_ctx.get(),
    )


@router.get("/latest", summary="Latest rates for a base currency")
async def latest(
    base: Optional[str] = Query(None, description="Base currency (default from settings)"),
    symbols: Optional[str] = Query(None, description="Comma-separated targets, e.g. CHF,GBP"),
    svc: CurrencyConversionService = Depends(get_conversion_service),
) -> RatesResponse:
    table = await svc.get_latest_rates(base, _split_symbols(symbols))
    return _rates_response(table)


@router.get("/historical/{on}", summary="Rates for a past date")
async def historical(
    on: date,
    base: Optional[str] = Query(None),
    symbols: Optional[str] = Query(None),
    svc: CurrencyConversionService = Depends(get_conversion_service),
) -> RatesResponse:
    table = await svc.get_historical_rates(on, base, _split_symbols(symbols))
    return _rates_response(table)


@router.get("/timeseries", summary="Rates for each day in a date range")
async def timeseries(
    start: date = Query(..., description="First day (YYYY-MM-DD)"),
    end: date = Query(..., description="Last day (YYYY-MM-DD)"),
    base: Optional[str] = Query(None),
    symbols: Optional[str] = Query(None),
    svc: CurrencyConversionService = Depends(get_conversion_service),
) -> TimeSeriesResponse:
    series = await svc.get_time_series(start, end, base, _split_symbols(symbols))
    rates = {day: {c: float(v) for c, v in values.items()} for day, values in series.items()}
    return TimeSeriesResponse(
        base=(base or svc.default_base_currency).upper(),
        start_date=start,
        end_date=end,
        rates=rates,
        count=len(rates),
        request_id=request_id_ctx.get(),
    )


@router.get("/currencies", summary="Supported currency codes")
async def currencies(
    svc: CurrencyConversionService = Depends(get_conversion_service),
) -> List[str]:
    return [c.code for c in svc.get_supported_currencies()]


@router.get("/currencies/{code}/supported", summary="Check whether a currency is supported")
async def currency_supported(
    code: str,
    svc: CurrencyConversionService = Depends(get_conversion_service),
) -> Dict[str, Any]:
    return {"currency": code.strip().upper(), "supported": svc.is_currency_supported(code)}


@router.get("/providers", summary="Enabled providers and their circuit state")
async def providers(
    svc: CurrencyConversionService = Depends(get_conversion_service),
) -> List[Dict[str, Any]]:
    return svc.provider_status()
