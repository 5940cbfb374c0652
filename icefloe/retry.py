"""Retry policy: exponential backoff, jitter and a progress-timeout ceiling."""

from __future__ import annotations

import asyncio
import logging
import random
import time
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from typing import Any, TypeVar

from .config import RetryConfig
from .errors import (
    IcefloeError,
    IcefloeTimeoutError,
    ProgressTimeoutError,
    RequestCancelledError,
    as_icefloe_error,
    classify,
)
from .ratelimit import BackoffSource, Clock, RateLimiter, Sleep
from .telemetry import NoOpTelemetrySink, TelemetryEvent, TelemetrySink, emit_best_effort

logger = logging.getLogger("icefloe.retry")

T = TypeVar("T")


def next_delay(
    attempt: int,
    base_s: float,
    cap_s: float,
    jitter_pct: float = 0.0,
    *,
    override_s: float | None = None,
    rng: random.Random | None = None,
) -> float:
    """Delay before retry ``attempt`` (0-based).

    ``min(base * 2**attempt, cap)`` with symmetric ``+/- jitter_pct`` applied
    and the result clamped to ``[0, cap]``. A server override wins outright.
    """

    if override_s is not None:
        return max(override_s, 0.0)
    if attempt < 0:
        raise ValueError("attempt must be non-negative")
    delay = min(base_s * (2 ** min(attempt, 62)), cap_s)
    if jitter_pct > 0:
        source = rng or random
        delay *= source.uniform(1.0 - jitter_pct, 1.0 + jitter_pct)
    return min(max(delay, 0.0), cap_s)


@dataclass(slots=True)
class RetryState:
    """Progress of one retry loop. Never shared across calls."""

    clock: Clock = field(default=time.monotonic, repr=False)
    attempt: int = 0
    started_at: float = 0.0
    last_progress_at: float = 0.0
    next_delay_s: float | None = None
    last_error: IcefloeError | None = None

    def __post_init__(self) -> None:
        now = self.clock()
        self.started_at = self.started_at or now
        self.last_progress_at = self.last_progress_at or now

    def record_progress(self) -> None:
        self.last_progress_at = self.clock()

    def record_success(self) -> None:
        """The remote answered: progress is made and the failure streak ends."""

        self.record_progress()
        self.attempt = 0

    def record_failure(self, error: IcefloeError) -> None:
        self.last_error = error
        self.attempt += 1

    def progress_timed_out(self, progress_timeout_s: float) -> bool:
        if self.attempt == 0:
            return False
        return self.clock() - self.last_progress_at > progress_timeout_s

    def elapsed(self) -> float:
        return self.clock() - self.started_at


class RetryPolicy:
    """Decides retry vs. give-up and runs retry loops."""

    def __init__(
        self,
        config: RetryConfig | None = None,
        *,
        clock: Clock | None = None,
        sleep: Sleep | None = None,
        rng: random.Random | None = None,
        telemetry: TelemetrySink | None = None,
    ) -> None:
        self.config = config or RetryConfig()
        self._clock = clock or time.monotonic
        self._sleep = sleep or asyncio.sleep
        self._rng = rng
        self._telemetry = telemetry or NoOpTelemetrySink()

    def with_config(self, config: RetryConfig | None) -> RetryPolicy:
        if config is None or config is self.config:
            return self
        return RetryPolicy(
            config,
            clock=self._clock,
            sleep=self._sleep,
            rng=self._rng,
            telemetry=self._telemetry,
        )

    def new_state(self) -> RetryState:
        return RetryState(clock=self._clock)

    def should_retry(self, error: IcefloeError, state: RetryState) -> bool:
        if not self.config.enable_retry_logic:
            return False
        if isinstance(error, (RequestCancelledError, IcefloeTimeoutError)):
            return False
        if not classify(error).retryable:
            return False
        max_retries = self.config.max_retries
        return max_retries is None or state.attempt < max_retries

    def delay_for(self, state: RetryState, error: IcefloeError | None = None) -> float:
        override = None
        if error is not None and error.retry_after_ms is not None:
            override = error.retry_after_ms / 1000.0
        delay = next_delay(
            state.attempt,
            self.config.base_delay_s,
            self.config.max_delay_s,
            self.config.jitter_pct,
            override_s=override,
            rng=self._rng,
        )
        state.next_delay_s = delay
        return delay

    def check_progress(self, state: RetryState, *, metadata: Mapping[str, Any] | None = None) -> None:
        if state.progress_timed_out(self.config.progress_timeout_s):
            raise ProgressTimeoutError(
                f"Progress timeout exceeded ({self.config.progress_timeout_s}s without progress)",
                last_error=state.last_error,
                data={"attempt": state.attempt, **dict(metadata or {})},
            )

    async def backoff(
        self,
        state: RetryState,
        error: IcefloeError,
        *,
        rate_limiter: RateLimiter | None = None,
        metadata: Mapping[str, Any] | None = None,
        max_sleep_s: float | None = None,
    ) -> None:
        """Record ``error`` and sleep before the next attempt, or raise.

        Raises ``error`` itself when it is not retryable or the attempt
        ceiling is reached, and :class:`ProgressTimeoutError` when the
        progress ceiling is exceeded. A 429 is published to ``rate_limiter``
        before any of that, so siblings back off even when this loop gives up.
        The sleep itself never exceeds ``max_sleep_s``; the shared window still
        records the full delay.
        """

        delay = self.delay_for(state, error)
        if rate_limiter is not None and classify(error).rate_limited:
            apply_rate_limit(rate_limiter, error, delay)

        if not self.should_retry(error, state):
            if classify(error).retryable and state.attempt > 0:
                logger.warning(
                    "retry_exhausted",
                    extra={"attempt": state.attempt, "error": error.format(), **dict(metadata or {})},
                )
                emit_best_effort(
                    self._telemetry,
                    TelemetryEvent(
                        event_type="retry_exhausted",
                        attempt=state.attempt,
                        error=error.format(),
                        extra=dict(metadata or {}),
                    ),
                )
            raise error
        state.record_failure(error)
        self.check_progress(state, metadata=metadata)
        logger.debug(
            "retry_scheduled",
            extra={
                "attempt": state.attempt,
                "delay_s": round(delay, 3),
                "error": error.format(),
                **dict(metadata or {}),
            },
        )
        emit_best_effort(
            self._telemetry,
            TelemetryEvent(
                event_type="retry_attempt",
                attempt=state.attempt,
                delay_s=delay,
                error=error.format(),
                extra=dict(metadata or {}),
            ),
        )
        await self._sleep(delay if max_sleep_s is None else min(delay, max(max_sleep_s, 0.0)))

    async def call(
        self,
        fn: Callable[[], Awaitable[T]],
        *,
        rate_limiter: RateLimiter | None = None,
        backoff_timeout_s: float | None = None,
        metadata: Mapping[str, Any] | None = None,
    ) -> T:
        """Run ``fn`` until it succeeds, fails terminally, or a ceiling is hit."""

        state = self.new_state()
        while True:
            self.check_progress(state, metadata=metadata)
            if rate_limiter is not None:
                await rate_limiter.wait_for_backoff(backoff_timeout_s)
            try:
                return await fn()
            except asyncio.CancelledError:
                raise
            except RequestCancelledError:
                raise
            except Exception as exc:
                error = as_icefloe_error(exc)
                await self.backoff(state, error, rate_limiter=rate_limiter, metadata=metadata)


def apply_rate_limit(limiter: RateLimiter, error: IcefloeError, fallback_s: float) -> None:
    """Publish a 429 to the shared window so siblings stop firing too."""

    if error.retry_after_ms is not None:
        limiter.set_backoff(duration_s=error.retry_after_ms / 1000.0, source=BackoffSource.SERVER)
    else:
        limiter.set_backoff(duration_s=fallback_s, source=BackoffSource.COMPUTED)


__all__ = ["RetryPolicy", "RetryState", "apply_rate_limit", "next_delay"]
