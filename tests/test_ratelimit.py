from __future__ import annotations

import pytest

from icefloe.errors import BackoffTimeoutError
from icefloe.ratelimit import (
    BackoffKey,
    BackoffSource,
    RateLimiter,
    RateLimiterRegistry,
    normalize_base_url,
)
from icefloe.testkit import ManualClock, RecordingSleep


def _limiter(clock: ManualClock, sleep: RecordingSleep | None = None) -> RateLimiter:
    return RateLimiter(BackoffKey.build("https://api.test", "tk"), clock=clock, sleep=sleep)


def test_normalize_base_url() -> None:
    assert normalize_base_url("https://API.test:443/v1/") == "https://api.test"
    assert normalize_base_url("http://api.test:80") == "http://api.test"
    assert normalize_base_url("http://localhost:8000/x") == "http://localhost:8000"
    with pytest.raises(ValueError):
        normalize_base_url("api.test")


def test_should_backoff_until_window_passes(clock: ManualClock) -> None:
    limiter = _limiter(clock)
    limiter.set_backoff(until=clock() + 1.0)

    assert limiter.should_backoff()
    clock.advance(0.999)
    assert limiter.should_backoff()
    clock.advance(0.002)
    assert not limiter.should_backoff()


def test_windows_only_extend(clock: ManualClock) -> None:
    limiter = _limiter(clock)
    limiter.set_backoff(duration_s=2.0)
    window = limiter.set_backoff(duration_s=0.5, source=BackoffSource.COMPUTED)

    assert window.blocked_until == pytest.approx(clock() + 2.0)
    assert window.source is BackoffSource.SERVER
    assert limiter.remaining() == pytest.approx(2.0)


def test_set_backoff_requires_a_bound(clock: ManualClock) -> None:
    with pytest.raises(ValueError):
        _limiter(clock).set_backoff()


def test_clear_backoff_keeps_a_newer_window(clock: ManualClock) -> None:
    limiter = _limiter(clock)
    limiter.set_backoff(duration_s=1.0)
    observed = limiter.observed_until()

    limiter.set_backoff(duration_s=5.0)

    assert limiter.clear_backoff(observed) is False
    assert limiter.should_backoff()


def test_clear_backoff_drops_observed_or_expired_window(clock: ManualClock) -> None:
    limiter = _limiter(clock)
    limiter.set_backoff(duration_s=1.0)

    assert limiter.clear_backoff(limiter.observed_until()) is True
    assert not limiter.should_backoff()

    limiter.set_backoff(duration_s=1.0)
    assert limiter.clear_backoff() is False
    clock.advance(1.5)
    assert limiter.clear_backoff() is True
    assert limiter.window is None


@pytest.mark.asyncio
async def test_wait_for_backoff_sleeps_remaining(clock: ManualClock, sleep: RecordingSleep) -> None:
    limiter = _limiter(clock, sleep)
    limiter.set_backoff(duration_s=0.5)
    clock.advance(0.1)

    waited = await limiter.wait_for_backoff()

    assert sleep.delays == [pytest.approx(0.4)]
    assert waited == pytest.approx(0.4)
    assert not limiter.should_backoff()


@pytest.mark.asyncio
async def test_wait_for_backoff_rechecks_extensions(clock: ManualClock) -> None:
    delays: list[float] = []
    limiter: RateLimiter

    async def extending_sleep(delay: float) -> None:
        delays.append(delay)
        clock.advance(delay)
        if len(delays) == 1:
            limiter.set_backoff(duration_s=0.3)

    limiter = RateLimiter(BackoffKey.build("https://api.test", "tk"), clock=clock, sleep=extending_sleep)
    limiter.set_backoff(duration_s=0.2)

    await limiter.wait_for_backoff()

    assert delays == [pytest.approx(0.2), pytest.approx(0.3)]


@pytest.mark.asyncio
async def test_wait_for_backoff_respects_timeout(clock: ManualClock, sleep: RecordingSleep) -> None:
    limiter = _limiter(clock, sleep)
    limiter.set_backoff(duration_s=5.0)

    with pytest.raises(BackoffTimeoutError):
        await limiter.wait_for_backoff(timeout_s=1.0)
    assert sleep.delays == []


def test_registry_shares_limiters_per_key(clock: ManualClock) -> None:
    registry = RateLimiterRegistry(clock=clock)

    first = registry.for_key("https://api.test/v1", "tk")
    second = registry.for_key("https://API.test:443", "tk")
    other_key = registry.for_key("https://api.test", "tk-2")

    assert first is second
    assert first is not other_key
    assert len(registry) == 2

    first.set_backoff(duration_s=1.0)
    assert second.should_backoff()
    assert not other_key.should_backoff()
