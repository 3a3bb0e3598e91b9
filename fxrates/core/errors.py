from __future__ import annotations

import enum
import logging
from typing import Optional

from fastapi import Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette import status

logger = logging.getLogger("fxrates.errors")


class ErrorKind(str, enum.Enum):
    """Failure categories shared by providers, cache and the conversion engine.

    Callers branch on the kind (``retryable``, ``is_client_error``) instead of
    on exception subclasses.
    """

    INVALID_CURRENCY = "invalid_currency"
    UNSUPPORTED_CURRENCY = "unsupported_currency"
    INVALID_AMOUNT = "invalid_amount"
    INVALID_DATE = "invalid_date"
    RATE_UNAVAILABLE = "rate_unavailable"
    TRANSIENT_UPSTREAM = "transient_upstream"
    UPSTREAM_REJECTED = "upstream_rejected"
    CIRCUIT_OPEN = "circuit_open"
    UNKNOWN_PROVIDER = "unknown_provider"

    @property
    def retryable(self) -> bool:
        return self is ErrorKind.TRANSIENT_UPSTREAM

    @property
    def is_client_error(self) -> bool:
        return self in _CLIENT_KINDS


_CLIENT_KINDS = frozenset(
    {
        ErrorKind.INVALID_CURRENCY,
        ErrorKind.UNSUPPORTED_CURRENCY,
        ErrorKind.INVALID_AMOUNT,
        ErrorKind.INVALID_DATE,
    }
)


class RateError(Exception):
    """The one failure type raised by the rates core.

    ``reason`` keeps the underlying kind code when a lower-level failure is
    folded into ``RATE_UNAVAILABLE`` so operators can still tell an open
    circuit from a live upstream failure.
    """

    def __init__(
        self, kind: ErrorKind, message: str, *, reason: Optional[str] = None
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.reason = reason

    @property
    def retryable(self) -> bool:
        return self.kind.retryable

    def __repr__(self) -> str:
        return f"RateError({self.kind.value!r}, {self.message!r}, reason={self.reason!r})"


def _status_for(exc: RateError) -> int:
    if exc.kind.is_client_error:
        return status.HTTP_400_BAD_REQUEST
    if exc.kind is ErrorKind.RATE_UNAVAILABLE:
        # no reason: upstream answered but had nothing for us
        if exc.reason is None:
            return status.HTTP_404_NOT_FOUND
        return status.HTTP_503_SERVICE_UNAVAILABLE
    if exc.kind in (ErrorKind.TRANSIENT_UPSTREAM, ErrorKind.CIRCUIT_OPEN):
        return status.HTTP_503_SERVICE_UNAVAILABLE
    if exc.kind is ErrorKind.UPSTREAM_REJECTED:
        return status.HTTP_502_BAD_GATEWAY
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def rate_error_handler(request: Request, exc: RateError):  # type: ignore
    code = _status_for(exc)
    if code >= 500:
        logger.warning("rate failure %s (%s): %s", exc.kind.value, exc.reason, exc.message)
    return JSONResponse(
        status_code=code,
        content={"error": exc.kind.value, "detail": exc.message, "reason": exc.reason},
    )


def not_found_handler(request: Request, exc):  # type: ignore
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": "not_found" if exc.status_code == 404 else "http_error",
            "detail": exc.detail
            if exc.status_code != 404
            else f"No route for {request.method} {request.url.path}",
        },
    )


def validation_error_handler(request: Request, exc: RequestValidationError):  # type: ignore
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "error": "validation_error",
            "detail": jsonable_encoder(exc.errors()),
        },
    )


def server_error_handler(request: Request, exc: Exception):  # type: ignore
    logger.exception("unhandled exception")
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": "internal_error",
            "detail": "An unexpected error occurred.",
        },
    )
