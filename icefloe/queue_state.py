"""Human-readable warnings for paused server queues.

Every client registers a :class:`QueueStateLogger` as a default observer so
that a paused queue shows up in the application log without any setup.
Warnings are debounced per entity.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Mapping
from typing import Any, Literal

from .ratelimit import Clock
from .types import QueueState

logger = logging.getLogger("icefloe.queue_state")

ClientKind = Literal["training", "sampling"]

DEFAULT_DEBOUNCE_S = 60.0

_CAPACITY_REASON = "server is running short on capacity, please wait"
_RATE_LIMIT_REASONS: dict[str, str] = {
    "training": "concurrent training clients rate limit hit",
    "sampling": "concurrent sampler weights limit hit",
}


def reason_for_state(queue_state: QueueState, kind: ClientKind) -> str:
    if queue_state is QueueState.PAUSED_RATE_LIMIT:
        return _RATE_LIMIT_REASONS[kind]
    if queue_state is QueueState.PAUSED_CAPACITY:
        return _CAPACITY_REASON
    return "unknown"


def resolve_reason(queue_state: QueueState, kind: ClientKind, server_reason: str | None) -> str:
    if server_reason:
        return server_reason
    return reason_for_state(queue_state, kind)


def format_pause_message(entity_id: str, kind: ClientKind, reason: str) -> str:
    label = "Training" if kind == "training" else "Sampling"
    return f"{label} is paused for {entity_id}. Reason: {reason}"


class QueueStateLogger:
    """Queue-state observer that logs paused queues, at most once per interval."""

    __slots__ = ("kind", "entity_id", "debounce_s", "_clock", "_last_logged")

    def __init__(
        self,
        kind: ClientKind,
        entity_id: str,
        *,
        debounce_s: float = DEFAULT_DEBOUNCE_S,
        clock: Clock | None = None,
    ) -> None:
        if kind not in _RATE_LIMIT_REASONS:
            raise ValueError(f"kind must be 'training' or 'sampling', got {kind!r}")
        self.kind: ClientKind = kind
        self.entity_id = entity_id
        self.debounce_s = debounce_s
        self._clock = clock or time.monotonic
        self._last_logged: float | None = None

    def should_log(self) -> bool:
        if self._last_logged is None:
            return True
        return self._clock() - self._last_logged >= self.debounce_s

    def on_queue_state_change(self, queue_state: QueueState, metadata: Mapping[str, Any]) -> None:
        if queue_state is QueueState.ACTIVE:
            return
        if not self.should_log():
            return
        reason = resolve_reason(queue_state, self.kind, metadata.get("queue_state_reason"))
        self._last_logged = self._clock()
        logger.warning(
            format_pause_message(self.entity_id, self.kind, reason),
            extra={
                "entity_id": self.entity_id,
                "queue_state": queue_state.value,
                "request_id": metadata.get("request_id"),
            },
        )


__all__ = [
    "ClientKind",
    "QueueStateLogger",
    "format_pause_message",
    "reason_for_state",
    "resolve_reason",
]
