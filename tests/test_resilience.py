import asyncio
import threading

import pytest

from fxrates.core.errors import ErrorKind, RateError
from fxrates.services.rates.resilience import (
    CircuitBreaker,
    CircuitState,
    ResiliencePolicy,
    RetryPolicy,
)

from conftest import FakeClock, SleepRecorder


class Upstream:
    """Scripted upstream: each call pops the next outcome."""

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        outcome = self.outcomes.pop(0) if self.outcomes else "ok"
        if isinstance(outcome, ErrorKind):
            raise RateError(outcome, f"scripted {outcome.value}")
        return outcome


def make_policy(threshold=3, break_seconds=30.0, retries=0, clock=None, sleep=None, listeners=None):
    clock = clock or FakeClock()
    sleep = sleep or SleepRecorder()
    breaker = CircuitBreaker(
        "test",
        failure_threshold=threshold,
        break_seconds=break_seconds,
        clock=clock,
        listeners=listeners,
    )
    return ResiliencePolicy("test", RetryPolicy(retries, 2.0, sleep), breaker), clock, sleep


T = ErrorKind.TRANSIENT_UPSTREAM


def test_retry_backoff_doubles():
    policy, _, sleep = make_policy(retries=3)
    upstream = Upstream(T, T, T, "ok")
    assert asyncio.run(policy.execute(upstream)) == "ok"
    assert upstream.calls == 4
    assert sleep.delays == [2.0, 4.0, 8.0]
    assert policy.breaker.consecutive_failures == 0


def test_retry_gives_up_after_max_attempts():
    policy, _, sleep = make_policy(retries=2)
    upstream = Upstream(T, T, T, "ok")
    with pytest.raises(RateError) as exc:
        asyncio.run(policy.execute(upstream))
    assert exc.value.kind is T
    assert upstream.calls == 3
    assert sleep.delays == [2.0, 4.0]
    # one fully-retried failure counts once
    assert policy.breaker.consecutive_failures == 1


@pytest.mark.parametrize("kind", [ErrorKind.UPSTREAM_REJECTED, ErrorKind.UNSUPPORTED_CURRENCY])
def test_non_transient_is_never_retried(kind):
    policy, _, sleep = make_policy(retries=3)
    upstream = Upstream(kind)
    with pytest.raises(RateError) as exc:
        asyncio.run(policy.execute(upstream))
    assert exc.value.kind is kind
    assert upstream.calls == 1
    assert sleep.delays == []


def test_breaker_opens_after_threshold_and_fails_fast():
    policy, _, _ = make_policy(threshold=3)
    upstream = Upstream(T, T, T)
    for _ in range(3):
        with pytest.raises(RateError):
            asyncio.run(policy.execute(upstream))
    assert policy.breaker.state is CircuitState.OPEN

    with pytest.raises(RateError) as exc:
        asyncio.run(policy.execute(upstream))
    assert exc.value.kind is ErrorKind.CIRCUIT_OPEN
    assert exc.value.reason == "circuit_open"
    assert upstream.calls == 3  # no network attempt while open


def test_success_between_failures_resets_count():
    policy, _, _ = make_policy(threshold=3)
    upstream = Upstream(T, T, "ok", T, T)
    for _ in range(5):
        try:
            asyncio.run(policy.execute(upstream))
        except RateError:
            pass
    assert policy.breaker.state is CircuitState.CLOSED
    assert policy.breaker.consecutive_failures == 2


def test_non_transient_outcome_breaks_the_failure_streak():
    policy, _, _ = make_policy(threshold=2)
    upstream = Upstream(T, ErrorKind.UPSTREAM_REJECTED, T)
    for _ in range(3):
        with pytest.raises(RateError):
            asyncio.run(policy.execute(upstream))
    assert policy.breaker.state is CircuitState.CLOSED


def test_half_open_probe_success_closes():
    policy, clock, _ = make_policy(threshold=3, break_seconds=30)
    upstream = Upstream(T, T, T, "probe-ok")
    for _ in range(3):
        with pytest.raises(RateError):
            asyncio.run(policy.execute(upstream))

    clock.advance(29.9)
    assert policy.breaker.state is CircuitState.OPEN
    clock.advance(0.1)
    assert policy.breaker.state is CircuitState.HALF_OPEN

    assert asyncio.run(policy.execute(upstream)) == "probe-ok"
    assert upstream.calls == 4
    assert policy.breaker.state is CircuitState.CLOSED
    assert policy.breaker.consecutive_failures == 0


def test_half_open_probe_failure_reopens_and_restarts_cooldown():
    policy, clock, _ = make_policy(threshold=1, break_seconds=10)
    upstream = Upstream(T, T, "ok")
    with pytest.raises(RateError):
        asyncio.run(policy.execute(upstream))
    clock.advance(10)
    with pytest.raises(RateError) as exc:
        asyncio.run(policy.execute(upstream))
    assert exc.value.kind is T  # the probe really went out
    assert policy.breaker.state is CircuitState.OPEN

    clock.advance(9)
    with pytest.raises(RateError) as exc:
        asyncio.run(policy.execute(upstream))
    assert exc.value.kind is ErrorKind.CIRCUIT_OPEN
    clock.advance(1)
    assert asyncio.run(policy.execute(upstream)) == "ok"


def test_half_open_admits_a_single_probe():
    breaker = CircuitBreaker("solo", failure_threshold=1, break_seconds=5, clock=FakeClock())
    breaker.record_failure()
    breaker._clock.advance(5)
    assert breaker.acquire() is True
    with pytest.raises(RateError) as exc:
        breaker.acquire()
    assert exc.value.kind is ErrorKind.CIRCUIT_OPEN
    breaker.record_success(probe=True)
    assert breaker.state is CircuitState.CLOSED
    assert breaker.acquire() is False


def test_stale_success_cannot_skip_half_open():
    clock = FakeClock()
    breaker = CircuitBreaker("stale", failure_threshold=1, break_seconds=5, clock=clock)
    admitted = breaker.acquire()
    breaker.record_failure()  # another call trips the breaker
    breaker.record_success(admitted)  # late success of the earlier call
    assert breaker.state is CircuitState.OPEN


def test_transitions_are_reported_in_order():
    seen = []
    policy, clock, _ = make_policy(
        threshold=1, break_seconds=1, listeners=[lambda name, old, new: seen.append((old, new))]
    )
    upstream = Upstream(T, "ok")
    with pytest.raises(RateError):
        asyncio.run(policy.execute(upstream))
    clock.advance(1)
    asyncio.run(policy.execute(upstream))
    assert seen == [
        (CircuitState.CLOSED, CircuitState.OPEN),
        (CircuitState.OPEN, CircuitState.HALF_OPEN),
        (CircuitState.HALF_OPEN, CircuitState.CLOSED),
    ]


def test_cancellation_during_retry_is_not_a_failure():
    async def scenario():
        started = asyncio.Event()

        async def slow_sleep(delay):
            started.set()
            await asyncio.sleep(3600)

        breaker = CircuitBreaker("cancel", failure_threshold=1, break_seconds=30, clock=FakeClock())
        policy = ResiliencePolicy("cancel", RetryPolicy(3, 2.0, slow_sleep), breaker)
        upstream = Upstream(T, T, T)
        task = asyncio.ensure_future(policy.execute(upstream))
        await started.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        return policy, upstream

    policy, upstream = asyncio.run(scenario())
    assert upstream.calls == 1
    assert policy.breaker.state is CircuitState.CLOSED
    assert policy.breaker.consecutive_failures == 0


def test_cancelled_probe_frees_the_probe_slot():
    clock = FakeClock()
    breaker = CircuitBreaker("probe", failure_threshold=1, break_seconds=5, clock=clock)
    breaker.record_failure()
    clock.advance(5)
    probe = breaker.acquire()
    breaker.release(probe)
    assert breaker.acquire() is True


def test_concurrent_failures_count_exactly():
    async def scenario():
        policy, _, _ = make_policy(threshold=50)
        upstream = Upstream(*([T] * 20))
        results = await asyncio.gather(
            *(policy.execute(upstream) for _ in range(20)), return_exceptions=True
        )
        return policy, results

    policy, results = asyncio.run(scenario())
    assert all(isinstance(r, RateError) for r in results)
    assert policy.breaker.consecutive_failures == 20


def test_snapshot_shape():
    breaker = CircuitBreaker("snap", clock=FakeClock())
    snap = breaker.snapshot()
    assert snap == {"state": "closed", "consecutive_failures": 0, "opened_at": None}


def test_invalid_threshold():
    with pytest.raises(ValueError):
        CircuitBreaker("bad", failure_threshold=0)


def test_snapshot_is_consistent_under_concurrent_transitions():
    breaker = CircuitBreaker("race", failure_threshold=3, break_seconds=0, clock=FakeClock())
    stop = threading.Event()
    bad = []

    def flap():
        while not stop.is_set():
            for _ in range(3):
                breaker.record_failure()
            probe = breaker.acquire()
            breaker.record_success(probe)

    def watch():
        for _ in range(5000):
            snap = breaker.snapshot()
            if snap["state"] == "closed" and (
                snap["consecutive_failures"] >= 3 or snap["opened_at"] is not None
            ):
                bad.append(snap)
            if snap["state"] != "closed" and snap["opened_at"] is None:
                bad.append(snap)

    writer = threading.Thread(target=flap)
    writer.start()
    try:
        watch()
    finally:
        stop.set()
        writer.join()
    assert bad == []
