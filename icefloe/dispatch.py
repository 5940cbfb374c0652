"""Layered admission for concurrent submissions.

Every submission holds a slot in the global concurrency limit. While the
shared backoff window is open, or closed less than ``throttle_window_s`` ago,
it also holds one of a handful of throttled slots and pays a multiplied share
of the byte budget. A burst that just hit a rate limit therefore drains out
slowly instead of re-flooding the server.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import AsyncIterator
from contextlib import AsyncExitStack, asynccontextmanager

from .config import DispatchConfig
from .ratelimit import RateLimiter

logger = logging.getLogger("icefloe.dispatch")


class ByteBudget:
    """Semaphore over a byte budget.

    An acquisition is granted whenever the budget is non-negative, even if it
    drives the budget below zero, so a single oversized payload still runs.
    Later callers queue in FIFO order until releases bring it back to zero.
    """

    def __init__(self, max_bytes: int) -> None:
        if max_bytes <= 0:
            raise ValueError("max_bytes must be positive")
        self.max_bytes = max_bytes
        self._available = max_bytes
        self._waiters: deque[tuple[asyncio.Future[None], int]] = deque()

    @property
    def available(self) -> int:
        return self._available

    @property
    def waiting(self) -> int:
        return sum(1 for future, _ in self._waiters if not future.done())

    async def acquire(self, nbytes: int) -> None:
        if nbytes < 0:
            raise ValueError("nbytes must be non-negative")
        if self._available >= 0 and not self.waiting:
            self._available -= nbytes
            return
        future: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._waiters.append((future, nbytes))
        try:
            await future
        except asyncio.CancelledError:
            if future.done() and not future.cancelled():
                self.release(nbytes)
            raise

    def release(self, nbytes: int) -> None:
        self._available += nbytes
        while self._waiters and self._available >= 0:
            future, wanted = self._waiters.popleft()
            if future.done():
                continue
            self._available -= wanted
            future.set_result(None)

    @asynccontextmanager
    async def hold(self, nbytes: int) -> AsyncIterator[None]:
        await self.acquire(nbytes)
        try:
            yield
        finally:
            self.release(nbytes)


class SamplingDispatch:
    """Concurrency, throttled-concurrency and byte-budget gates for one key."""

    def __init__(self, rate_limiter: RateLimiter | None, config: DispatchConfig | None = None) -> None:
        self.config = config or DispatchConfig()
        self._rate_limiter = rate_limiter
        self._concurrency = asyncio.Semaphore(self.config.concurrency)
        self._throttled = asyncio.Semaphore(self.config.throttled_concurrency)
        self.bytes = ByteBudget(self.config.byte_budget)

    def throttled(self) -> bool:
        """Whether a backoff is active or ended within ``throttle_window_s``."""

        limiter = self._rate_limiter
        if limiter is None or limiter.last_backoff_until is None:
            return False
        return limiter.now() - limiter.last_backoff_until < self.config.throttle_window_s

    def cost(self, estimated_bytes: int, *, throttled: bool) -> int:
        cost = max(estimated_bytes, 0)
        return cost * self.config.byte_penalty if throttled else cost

    @asynccontextmanager
    async def slot(self, estimated_bytes: int) -> AsyncIterator[None]:
        throttled = self.throttled()
        cost = self.cost(estimated_bytes, throttled=throttled)
        async with AsyncExitStack() as stack:
            await stack.enter_async_context(self._concurrency)
            if throttled:
                logger.debug(
                    "dispatch_throttled",
                    extra={"estimated_bytes": estimated_bytes, "cost": cost},
                )
                await stack.enter_async_context(self._throttled)
            await stack.enter_async_context(self.bytes.hold(cost))
            yield


__all__ = ["ByteBudget", "SamplingDispatch"]
