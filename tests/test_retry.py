from __future__ import annotations

import random

import pytest

from icefloe.config import RetryConfig
from icefloe.errors import (
    ProgressTimeoutError,
    RequestCancelledError,
    TransportError,
)
from icefloe.ratelimit import BackoffKey, BackoffSource, RateLimiter
from icefloe.retry import RetryPolicy, next_delay
from icefloe.telemetry import RecordingTelemetrySink
from icefloe.testkit import ManualClock, RecordingSleep


def test_next_delay_doubles_up_to_cap() -> None:
    delays = [next_delay(attempt, 0.1, 1.0) for attempt in range(6)]

    assert delays == pytest.approx([0.1, 0.2, 0.4, 0.8, 1.0, 1.0])


def test_next_delay_override_wins() -> None:
    assert next_delay(5, 0.1, 1.0, 1.0, override_s=3.0) == 3.0


def test_next_delay_jitter_is_symmetric_and_clamped() -> None:
    rng = random.Random(7)
    samples = [next_delay(2, 0.1, 1.0, 0.5, rng=rng) for _ in range(200)]

    assert all(0.2 <= sample <= 0.6 for sample in samples)
    assert min(samples) < 0.4 < max(samples)

    full = [next_delay(4, 0.1, 1.0, 1.0, rng=rng) for _ in range(200)]
    assert all(0.0 <= sample <= 1.0 for sample in full)


def test_next_delay_rejects_negative_attempt() -> None:
    with pytest.raises(ValueError):
        next_delay(-1, 0.1, 1.0)


def _policy(clock: ManualClock, sleep: RecordingSleep, **overrides: object) -> RetryPolicy:
    config = RetryConfig(base_delay_s=0.1, max_delay_s=1.0, jitter_pct=0.0, **overrides)  # type: ignore[arg-type]
    return RetryPolicy(config, clock=clock, sleep=sleep)


@pytest.mark.asyncio
async def test_call_retries_server_errors_with_backoff(clock: ManualClock, sleep: RecordingSleep) -> None:
    attempts: list[int] = []

    async def flaky() -> str:
        attempts.append(len(attempts))
        if len(attempts) < 3:
            raise TransportError("boom", status=503)
        return "ok"

    result = await _policy(clock, sleep).call(flaky)

    assert result == "ok"
    assert attempts == [0, 1, 2]
    assert sleep.delays == pytest.approx([0.1, 0.2])


@pytest.mark.asyncio
async def test_call_raises_user_errors_immediately(clock: ManualClock, sleep: RecordingSleep) -> None:
    calls = 0

    async def bad_request() -> None:
        nonlocal calls
        calls += 1
        raise TransportError("bad field", status=400)

    with pytest.raises(TransportError) as excinfo:
        await _policy(clock, sleep).call(bad_request)

    assert calls == 1
    assert excinfo.value.status == 400
    assert sleep.delays == []


@pytest.mark.asyncio
async def test_exhaustion_raises_last_observed_error(clock: ManualClock, sleep: RecordingSleep) -> None:
    errors = [TransportError(f"boom-{i}", status=500) for i in range(5)]
    sink = RecordingTelemetrySink()
    policy = RetryPolicy(
        RetryConfig(base_delay_s=0.1, max_delay_s=1.0, jitter_pct=0.0, max_retries=2),
        clock=clock,
        sleep=sleep,
        telemetry=sink,
    )

    async def always_failing() -> None:
        raise errors.pop(0)

    with pytest.raises(TransportError) as excinfo:
        await policy.call(always_failing)

    assert excinfo.value.message == "boom-2"
    assert len(sleep.delays) == 2


@pytest.mark.asyncio
async def test_progress_timeout_is_distinct_from_exhaustion(clock: ManualClock) -> None:
    async def slow_sleep(delay: float) -> None:
        clock.advance(delay + 10.0)

    policy = RetryPolicy(
        RetryConfig(base_delay_s=0.1, max_delay_s=1.0, jitter_pct=0.0, progress_timeout_s=15.0),
        clock=clock,
        sleep=slow_sleep,
    )
    last = TransportError("still down", status=502)

    async def down() -> None:
        raise last

    with pytest.raises(ProgressTimeoutError) as excinfo:
        await policy.call(down)

    assert excinfo.value.last_error is last


@pytest.mark.asyncio
async def test_recorded_progress_resets_the_ceiling(clock: ManualClock, sleep: RecordingSleep) -> None:
    policy = _policy(clock, sleep, progress_timeout_s=5.0)
    state = policy.new_state()
    error = TransportError("blip", status=503)

    await policy.backoff(state, error)
    clock.advance(4.0)
    state.record_progress()
    clock.advance(4.0)
    await policy.backoff(state, error)

    assert state.attempt == 2
    assert not state.progress_timed_out(5.0)


@pytest.mark.asyncio
async def test_backoff_sleep_is_capped_but_window_keeps_full_delay(
    clock: ManualClock, sleep: RecordingSleep
) -> None:
    limiter = RateLimiter(BackoffKey.build("https://api.test", "tk"), clock=clock, sleep=sleep)
    policy = _policy(clock, sleep)
    state = policy.new_state()

    await policy.backoff(
        state,
        TransportError("slow down", status=429, retry_after_ms=5_000),
        rate_limiter=limiter,
        max_sleep_s=0.5,
    )

    assert sleep.delays == [pytest.approx(0.5)]
    assert limiter.remaining() == pytest.approx(4.5)


@pytest.mark.asyncio
async def test_cancellation_is_never_retried(clock: ManualClock, sleep: RecordingSleep) -> None:
    calls = 0

    async def cancelled() -> None:
        nonlocal calls
        calls += 1
        raise RequestCancelledError("stop")

    with pytest.raises(RequestCancelledError):
        await _policy(clock, sleep).call(cancelled)
    assert calls == 1


@pytest.mark.asyncio
async def test_retry_after_overrides_computed_delay(clock: ManualClock, sleep: RecordingSleep) -> None:
    outcomes = [TransportError("later", status=503, retry_after_ms=750)]

    async def once() -> str:
        if outcomes:
            raise outcomes.pop()
        return "done"

    assert await _policy(clock, sleep).call(once) == "done"
    assert sleep.delays == [pytest.approx(0.75)]


@pytest.mark.asyncio
async def test_rate_limit_is_published_to_the_shared_window(
    clock: ManualClock, sleep: RecordingSleep
) -> None:
    limiter = RateLimiter(BackoffKey.build("https://api.test", "tk"), clock=clock, sleep=sleep)
    outcomes = [TransportError("slow down", status=429, retry_after_ms=500)]
    seen_blocked: list[bool] = []

    async def once() -> str:
        if outcomes:
            raise outcomes.pop()
        seen_blocked.append(limiter.should_backoff())
        return "done"

    assert await _policy(clock, sleep).call(once, rate_limiter=limiter) == "done"
    assert limiter.window is not None
    assert limiter.window.source is BackoffSource.SERVER
    assert seen_blocked == [False]


@pytest.mark.asyncio
async def test_retry_disabled_raises_first_error(clock: ManualClock, sleep: RecordingSleep) -> None:
    async def boom() -> None:
        raise TransportError("boom", status=500)

    with pytest.raises(TransportError):
        await _policy(clock, sleep, enable_retry_logic=False).call(boom)
    assert sleep.delays == []


@pytest.mark.asyncio
async def test_foreign_errors_are_wrapped(clock: ManualClock, sleep: RecordingSleep) -> None:
    outcomes: list[Exception] = [ConnectionResetError("reset")]

    async def once() -> int:
        if outcomes:
            raise outcomes.pop()
        return 1

    assert await _policy(clock, sleep).call(once) == 1
    assert sleep.delays == pytest.approx([0.1])
