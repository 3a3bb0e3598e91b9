from __future__ import annotations

"""Async HTTP GET-JSON helper for upstream rate APIs.

One attempt per call; retries and circuit breaking live in
``fxrates.services.rates.resilience`` so every provider shares the policy.
Failures are classified here:

    timeout / connection error / 5xx  -> TRANSIENT_UPSTREAM (retryable)
    4xx / non-JSON / non-object body  -> UPSTREAM_REJECTED (never retried)
"""
from typing import Any, Dict, Mapping, Optional

import httpx

from fxrates.core.errors import ErrorKind, RateError


async def get_json(
    client: httpx.AsyncClient,
    path: str,
    *,
    params: Optional[Mapping[str, Any]] = None,
) -> Dict[str, Any]:
    try:
        resp = await client.get(path, params=params)
    except httpx.TimeoutException as e:
        raise RateError(ErrorKind.TRANSIENT_UPSTREAM, f"timeout calling {path}: {e}") from e
    except httpx.TransportError as e:
        raise RateError(
            ErrorKind.TRANSIENT_UPSTREAM, f"connection failure calling {path}: {e}"
        ) from e

    if resp.status_code >= 500:
        raise RateError(
            ErrorKind.TRANSIENT_UPSTREAM, f"HTTP {resp.status_code} for {resp.url}"
        )
    if resp.status_code >= 400:
        raise RateError(
            ErrorKind.UPSTREAM_REJECTED, f"HTTP {resp.status_code} for {resp.url}"
        )
    try:
        data = resp.json()
    except ValueError as e:  # JSON decode
        raise RateError(
            ErrorKind.UPSTREAM_REJECTED, f"invalid JSON from {resp.url}: {e}"
        ) from e
    if not isinstance(data, dict):
        raise RateError(
            ErrorKind.UPSTREAM_REJECTED, f"unexpected payload type from {resp.url}"
        )
    return data
