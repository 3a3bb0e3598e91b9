from __future__ import annotations

"""Per-provider resilience: bounded retry wrapped by a circuit breaker.

Order of composition matters: the retry loop runs innermost, so the breaker
only ever sees the fully-retried outcome of a call. One ``ResiliencePolicy``
(and therefore one breaker) exists per provider instance; failure domains are
never shared between providers.

Breaker state machine::

    CLOSED --N consecutive transient failures--> OPEN
    OPEN --cool-down elapsed (checked lazily)--> HALF_OPEN
    HALF_OPEN --probe succeeds--> CLOSED
    HALF_OPEN --probe fails--> OPEN (cool-down restarts)

Only one probe is admitted while HALF_OPEN; concurrent callers fail fast.
"""
import asyncio
import enum
import logging
import threading
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar

from fxrates.core.errors import ErrorKind, RateError

logger = logging.getLogger("fxrates.resilience")

T = TypeVar("T")

StateListener = Callable[[str, "CircuitState", "CircuitState"], None]


class CircuitState(str, enum.Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    def __init__(
        self,
        name: str,
        *,
        failure_threshold: int = 3,
        break_seconds: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
        listeners: Optional[List[StateListener]] = None,
    ):
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be >= 1")
        self.name = name
        self.failure_threshold = failure_threshold
        self.break_seconds = break_seconds
        self._clock = clock
        self._listeners: List[StateListener] = list(listeners or [])
        self._lock = threading.Lock()
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._opened_at: Optional[float] = None
        self._probe_in_flight = False

    # Internal (call with lock held) ----------------------------
    def _transition(self, new: CircuitState, pending: list) -> None:
        old = self._state
        if old is new:
            return
        self._state = new
        if new is CircuitState.OPEN:
            self._opened_at = self._clock()
        elif new is CircuitState.CLOSED:
            self._opened_at = None
            self._failures = 0
        pending.append((old, new))

    def _refresh(self, pending: list) -> None:
        if (
            self._state is CircuitState.OPEN
            and self._opened_at is not None
            and self._clock() - self._opened_at >= self.break_seconds
        ):
            self._transition(CircuitState.HALF_OPEN, pending)

    def _emit(self, pending: list) -> None:
        for old, new in pending:
            if new is CircuitState.OPEN:
                logger.error(
                    "circuit opened for %s after %d failures; breaking for %ss",
                    self.name,
                    self._failures,
                    self.break_seconds,
                    extra={"provider": self.name, "state": new.value},
                )
            elif new is CircuitState.HALF_OPEN:
                logger.warning(
                    "circuit half-open for %s; admitting one probe",
                    self.name,
                    extra={"provider": self.name, "state": new.value},
                )
            else:
                logger.info(
                    "circuit closed for %s; upstream recovered",
                    self.name,
                    extra={"provider": self.name, "state": new.value},
                )
            for listener in self._listeners:
                listener(self.name, old, new)

    # Public API ------------------------------------------------
    def add_listener(self, listener: StateListener) -> None:
        self._listeners.append(listener)

    @property
    def state(self) -> CircuitState:
        pending: list = []
        with self._lock:
            self._refresh(pending)
            state = self._state
        self._emit(pending)
        return state

    @property
    def consecutive_failures(self) -> int:
        with self._lock:
            return self._failures

    def acquire(self) -> bool:
        """Admit a call or raise CIRCUIT_OPEN. Returns True when admitted as the probe."""
        pending: list = []
        try:
            with self._lock:
                self._refresh(pending)
                if self._state is CircuitState.OPEN:
                    remaining = self.break_seconds - (self._clock() - (self._opened_at or 0.0))
                    raise RateError(
                        ErrorKind.CIRCUIT_OPEN,
                        f"circuit open for provider {self.name}; "
                        f"retry in {max(remaining, 0.0):.1f}s",
                        reason=ErrorKind.CIRCUIT_OPEN.value,
                    )
                if self._state is CircuitState.HALF_OPEN:
                    if self._probe_in_flight:
                        raise RateError(
                            ErrorKind.CIRCUIT_OPEN,
                            f"circuit half-open for provider {self.name}; probe in flight",
                            reason=ErrorKind.CIRCUIT_OPEN.value,
                        )
                    self._probe_in_flight = True
                    return True
                return False
        finally:
            self._emit(pending)

    def record_success(self, probe: bool = False) -> None:
        pending: list = []
        with self._lock:
            if self._state is CircuitState.CLOSED:
                self._failures = 0
            elif self._state is CircuitState.HALF_OPEN and probe:
                self._probe_in_flight = False
                self._transition(CircuitState.CLOSED, pending)
            # stale outcomes of calls admitted before the circuit opened are ignored
        self._emit(pending)

    def record_failure(self, probe: bool = False) -> None:
        pending: list = []
        with self._lock:
            if self._state is CircuitState.CLOSED:
                self._failures += 1
                if self._failures >= self.failure_threshold:
                    self._transition(CircuitState.OPEN, pending)
            elif self._state is CircuitState.HALF_OPEN and probe:
                self._probe_in_flight = False
                self._transition(CircuitState.OPEN, pending)
        self._emit(pending)

    def release(self, probe: bool = False) -> None:
        """Forget an admitted call that ended without an outcome (e.g. cancelled)."""
        if not probe:
            return
        with self._lock:
            self._probe_in_flight = False

    def snapshot(self) -> Dict[str, Any]:
        pending: list = []
        with self._lock:
            self._refresh(pending)
            snap = {
                "state": self._state.value,
                "consecutive_failures": self._failures,
                "opened_at": self._opened_at,
            }
        self._emit(pending)
        return snap


class RetryPolicy:
    """Retry transient failures with ``backoff_base ** attempt`` second delays."""

    def __init__(
        self,
        max_attempts: int = 3,
        backoff_base: float = 2.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.max_attempts = max_attempts
        self.backoff_base = backoff_base
        self._sleep = sleep

    def delay_for(self, attempt: int) -> float:
        return self.backoff_base**attempt

    async def run(self, fn: Callable[[], Awaitable[T]], *, name: str = "-") -> T:
        attempt = 0
        while True:
            try:
                return await fn()
            except RateError as e:
                if not e.retryable or attempt >= self.max_attempts:
                    raise
                attempt += 1
                delay = self.delay_for(attempt)
                logger.warning(
                    "retry %d/%d for %s in %.1fs: %s",
                    attempt,
                    self.max_attempts,
                    name,
                    delay,
                    e.message,
                    extra={"provider": name, "attempt": attempt, "delay": delay},
                )
                # CancelledError raised here aborts the remaining attempts
                await self._sleep(delay)


class ResiliencePolicy:
    def __init__(self, name: str, retry: RetryPolicy, breaker: CircuitBreaker):
        self.name = name
        self.retry = retry
        self.breaker = breaker

    @classmethod
    def from_settings(
        cls,
        name: str,
        settings,
        *,
        clock: Optional[Callable[[], float]] = None,
        sleep: Optional[Callable[[float], Awaitable[Any]]] = None,
        listeners: Optional[List[StateListener]] = None,
    ) -> "ResiliencePolicy":
        retry = RetryPolicy(
            max_attempts=settings.max_retry_attempts,
            backoff_base=settings.retry_backoff_base_seconds,
            sleep=sleep or asyncio.sleep,
        )
        breaker = CircuitBreaker(
            name,
            failure_threshold=settings.circuit_failure_threshold,
            break_seconds=settings.circuit_break_seconds,
            clock=clock or time.monotonic,
            listeners=listeners,
        )
        return cls(name, retry, breaker)

    async def execute(self, fn: Callable[[], Awaitable[T]]) -> T:
        probe = self.breaker.acquire()
        recorded = False
        try:
            result = await self.retry.run(fn, name=self.name)
            self.breaker.record_success(probe)
            recorded = True
            return result
        except RateError as e:
            if e.retryable:
                self.breaker.record_failure(probe)
            else:
                # upstream answered (4xx / bad payload): it is reachable
                self.breaker.record_success(probe)
            recorded = True
            raise
        finally:
            if not recorded:
                self.breaker.release(probe)
