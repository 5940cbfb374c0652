"""Shared backoff windows keyed by (endpoint, credential).

A :class:`RateLimiter` is the single owner of one key's "do not retry before"
timestamp. Every mutation is synchronous on the event loop, so concurrent
callers never interleave inside a read-modify-write.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from urllib.parse import urlsplit

from .errors import BackoffTimeoutError

logger = logging.getLogger("icefloe.ratelimit")

Clock = Callable[[], float]
Sleep = Callable[[float], Awaitable[None]]

_DEFAULT_PORTS = {"http": 80, "https": 443}


def normalize_base_url(url: str) -> str:
    """Lowercase the host, drop default ports and any path.

    >>> normalize_base_url("https://Example.com:443/v1")
    'https://example.com'
    """

    parts = urlsplit(url)
    if not parts.scheme or not parts.hostname:
        raise ValueError(
            f"invalid base_url {url!r}: must include scheme and host, e.g. 'https://api.example.com'"
        )
    scheme = parts.scheme.lower()
    host = parts.hostname.lower()
    port = parts.port
    if port is None or _DEFAULT_PORTS.get(scheme) == port:
        return f"{scheme}://{host}"
    return f"{scheme}://{host}:{port}"


@dataclass(frozen=True, slots=True)
class BackoffKey:
    base_url: str
    api_key: str | None = None

    @classmethod
    def build(cls, base_url: str, api_key: str | None) -> BackoffKey:
        return cls(normalize_base_url(base_url), api_key)


class BackoffSource(str, Enum):
    SERVER = "server"
    COMPUTED = "computed"


@dataclass(frozen=True, slots=True)
class BackoffWindow:
    key: BackoffKey
    blocked_until: float
    source: BackoffSource


class RateLimiter:
    """Owns the backoff window for one key."""

    __slots__ = ("key", "_window", "_last_until", "_clock", "_sleep")

    def __init__(
        self,
        key: BackoffKey,
        *,
        clock: Clock | None = None,
        sleep: Sleep | None = None,
    ) -> None:
        self.key = key
        self._window: BackoffWindow | None = None
        self._last_until: float | None = None
        self._clock = clock or time.monotonic
        self._sleep = sleep or asyncio.sleep

    @property
    def window(self) -> BackoffWindow | None:
        return self._window

    def now(self) -> float:
        return self._clock()

    def set_backoff(
        self,
        *,
        until: float | None = None,
        duration_s: float | None = None,
        source: BackoffSource = BackoffSource.SERVER,
    ) -> BackoffWindow:
        """Block the key until ``until`` (or ``now + duration_s``).

        Windows only ever extend: a shorter request leaves the current window
        in place so no caller is released before a block it was promised.
        """

        if until is None:
            if duration_s is None:
                raise ValueError("set_backoff requires until= or duration_s=")
            until = self._clock() + max(duration_s, 0.0)
        current = self._window
        if current is not None and current.blocked_until >= until:
            return current
        window = BackoffWindow(key=self.key, blocked_until=until, source=source)
        self._window = window
        self._last_until = until
        logger.debug(
            "backoff_set",
            extra={
                "base_url": self.key.base_url,
                "blocked_for_s": round(until - self._clock(), 3),
                "source": source.value,
            },
        )
        return window

    def remaining(self) -> float:
        window = self._window
        if window is None:
            return 0.0
        return max(window.blocked_until - self._clock(), 0.0)

    def should_backoff(self) -> bool:
        window = self._window
        return window is not None and self._clock() < window.blocked_until

    @property
    def last_backoff_until(self) -> float | None:
        """End of the latest window ever set; survives ``clear_backoff``."""

        return self._last_until

    def observed_until(self) -> float | None:
        window = self._window
        return window.blocked_until if window is not None else None

    def clear_backoff(self, observed_until: float | None = None) -> bool:
        """Drop the window if it has expired or is the one the caller saw.

        A still-valid window set by a different call (a later timestamp than
        ``observed_until``) survives.
        """

        window = self._window
        if window is None:
            return False
        if self._clock() >= window.blocked_until or (
            observed_until is not None and window.blocked_until <= observed_until
        ):
            self._window = None
            return True
        return False

    async def wait_for_backoff(self, timeout_s: float | None = None) -> float:
        """Sleep until the window passes; returns the total time waited.

        Re-checks after every sleep because siblings may extend the window.
        """

        waited = 0.0
        started = self._clock()
        while True:
            remaining = self.remaining()
            if remaining <= 0:
                return waited
            if timeout_s is not None and (self._clock() - started) + remaining > timeout_s:
                raise BackoffTimeoutError(
                    f"Backoff window for {self.key.base_url} outlasts wait bound of {timeout_s}s",
                    data={"remaining_s": remaining, "timeout_s": timeout_s},
                )
            await self._sleep(remaining)
            waited = self._clock() - started


class RateLimiterRegistry:
    """Get-or-create limiters; share one registry to share backoff state."""

    __slots__ = ("_limiters", "_clock", "_sleep")

    def __init__(self, *, clock: Clock | None = None, sleep: Sleep | None = None) -> None:
        self._limiters: dict[BackoffKey, RateLimiter] = {}
        self._clock = clock
        self._sleep = sleep

    def for_key(self, base_url: str, api_key: str | None = None) -> RateLimiter:
        key = BackoffKey.build(base_url, api_key)
        limiter = self._limiters.get(key)
        if limiter is None:
            limiter = RateLimiter(key, clock=self._clock, sleep=self._sleep)
            self._limiters[key] = limiter
        return limiter

    def __len__(self) -> int:
        return len(self._limiters)


__all__ = [
    "BackoffKey",
    "BackoffSource",
    "BackoffWindow",
    "RateLimiter",
    "RateLimiterRegistry",
    "normalize_base_url",
]
