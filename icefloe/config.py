"""Configuration objects for icefloe sessions, retries and polling."""

from __future__ import annotations

import os
from dataclasses import dataclass, field, fields, replace
from enum import Enum
from typing import Any

DEFAULT_BASE_URL = "https://api.icefloe.dev"
DEFAULT_TIMEOUT_S = 120.0


class BackoffScope(str, Enum):
    """When a rate-limit signal on one entity reaches its siblings.

    ``immediate``: in-flight pollers wait on the shared window before their
    next retrieve. ``next_call``: only fresh submissions wait.
    """

    IMMEDIATE = "immediate"
    NEXT_CALL = "next_call"


@dataclass(slots=True)
class RetryConfig:
    base_delay_s: float = 0.5
    max_delay_s: float = 10.0
    jitter_pct: float = 1.0
    progress_timeout_s: float = 7200.0
    max_retries: int | None = None
    enable_retry_logic: bool = True

    def __post_init__(self) -> None:
        if self.base_delay_s <= 0:
            raise ValueError(f"base_delay_s must be positive, got {self.base_delay_s!r}")
        if self.max_delay_s < self.base_delay_s:
            raise ValueError("max_delay_s must be >= base_delay_s")
        if not 0.0 <= self.jitter_pct <= 1.0:
            raise ValueError(f"jitter_pct must be within [0, 1], got {self.jitter_pct!r}")
        if self.progress_timeout_s <= 0:
            raise ValueError("progress_timeout_s must be positive")
        if self.max_retries is not None and self.max_retries < 0:
            raise ValueError("max_retries must be a non-negative integer or None")

    def with_overrides(self, **overrides: Any) -> RetryConfig:
        return replace(self, **{k: v for k, v in overrides.items() if v is not None})


@dataclass(slots=True)
class PollConfig:
    base_delay_s: float = 1.0
    max_delay_s: float = 30.0
    deadline_s: float | None = None

    def __post_init__(self) -> None:
        if self.base_delay_s < 0:
            raise ValueError("poll base_delay_s must be non-negative")
        if self.max_delay_s < self.base_delay_s:
            raise ValueError("poll max_delay_s must be >= base_delay_s")
        if self.deadline_s is not None and self.deadline_s <= 0:
            raise ValueError("poll deadline_s must be positive when set")


@dataclass(slots=True)
class DispatchConfig:
    """Layered limits for concurrent (sampling) submissions.

    ``throttled_concurrency`` and the ``byte_penalty`` multiplier apply while
    the shared backoff window is open and for ``throttle_window_s`` after it
    ends.
    """

    concurrency: int = 400
    throttled_concurrency: int = 10
    byte_budget: int = 5 * 1024 * 1024
    byte_penalty: int = 20
    throttle_window_s: float = 10.0

    def __post_init__(self) -> None:
        if self.concurrency <= 0 or self.throttled_concurrency <= 0:
            raise ValueError("dispatch concurrency limits must be positive")
        if self.byte_budget <= 0:
            raise ValueError("byte_budget must be positive")
        if self.byte_penalty < 1:
            raise ValueError("byte_penalty must be >= 1")
        if self.throttle_window_s < 0:
            raise ValueError("throttle_window_s must be non-negative")


@dataclass(slots=True)
class ClientConfig:
    base_url: str = DEFAULT_BASE_URL
    api_key: str | None = None
    timeout_s: float = DEFAULT_TIMEOUT_S
    heartbeat_interval_s: float = 10.0
    heartbeat_warning_after_s: float = 120.0
    max_inflight: int = 1000
    max_chunk_len: int = 128
    max_chunk_weight: int = 500_000
    backoff_scope: BackoffScope = BackoffScope.IMMEDIATE
    retry: RetryConfig = field(default_factory=RetryConfig)
    poll: PollConfig = field(default_factory=PollConfig)
    dispatch: DispatchConfig = field(default_factory=DispatchConfig)
    tags: tuple[str, ...] = ("icefloe-python",)
    user_metadata: dict[str, Any] | None = None

    def __post_init__(self) -> None:
        if not self.api_key:
            raise ValueError("api_key is required; pass api_key= or set ICEFLOE_API_KEY")
        if not self.base_url:
            raise ValueError("base_url is required")
        if self.timeout_s <= 0:
            raise ValueError(f"timeout_s must be positive, got {self.timeout_s!r}")
        if self.heartbeat_interval_s <= 0:
            raise ValueError("heartbeat_interval_s must be positive")
        if self.heartbeat_warning_after_s < 0:
            raise ValueError("heartbeat_warning_after_s must be non-negative")
        if self.max_inflight <= 0:
            raise ValueError("max_inflight must be positive")
        if self.max_chunk_len <= 0 or self.max_chunk_weight <= 0:
            raise ValueError("chunk limits must be positive")
        self.backoff_scope = BackoffScope(self.backoff_scope)

    @classmethod
    def from_env(cls, **overrides: Any) -> ClientConfig:
        """Build a config from ``ICEFLOE_*`` environment variables plus overrides."""

        values: dict[str, Any] = {}
        api_key = os.environ.get("ICEFLOE_API_KEY")
        if api_key:
            values["api_key"] = api_key
        base_url = os.environ.get("ICEFLOE_BASE_URL")
        if base_url:
            values["base_url"] = base_url
        timeout = os.environ.get("ICEFLOE_TIMEOUT_S")
        if timeout:
            try:
                values["timeout_s"] = float(timeout)
            except ValueError as exc:
                raise ValueError(f"ICEFLOE_TIMEOUT_S must be a number, got {timeout!r}") from exc
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)

    def __repr__(self) -> str:
        parts = []
        for item in fields(self):
            value = getattr(self, item.name)
            if item.name == "api_key":
                value = mask_api_key(value)
            parts.append(f"{item.name}={value!r}")
        return f"ClientConfig({', '.join(parts)})"


def mask_api_key(api_key: str | None) -> str | None:
    if api_key is None:
        return None
    if len(api_key) <= 4:
        return "*" * len(api_key)
    prefix = api_key[: min(6, len(api_key) - 2)]
    return f"{prefix}...{api_key[-4:]}"


__all__ = [
    "BackoffScope",
    "ClientConfig",
    "DEFAULT_BASE_URL",
    "DEFAULT_TIMEOUT_S",
    "DispatchConfig",
    "PollConfig",
    "RetryConfig",
    "mask_api_key",
]
