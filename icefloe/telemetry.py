"""Telemetry contracts for request/poll/session observability.

This provides a minimal, platform-level schema that downstream teams can map to
their logging/metrics/tracing systems. Emission is best-effort and never blocks
the call path.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Literal, Protocol

from pydantic import BaseModel, Field

logger = logging.getLogger("icefloe.telemetry")

EventType = Literal[
    "session_started",
    "session_stopped",
    "heartbeat_failed",
    "heartbeat_recovered",
    "request_submitted",
    "retry_attempt",
    "retry_exhausted",
    "queue_state_change",
    "poll_resolved",
    "poll_failed",
    "poll_timed_out",
    "poll_cancelled",
]


class TelemetryEvent(BaseModel):
    event_type: EventType
    session_id: str | None = None
    request_id: str | None = None
    attempt: int | None = None
    delay_s: float | None = None
    duration_s: float | None = None
    queue_state: str | None = None
    error: str | None = None
    created_at_s: float = Field(default_factory=time.time)
    extra: dict[str, Any] = Field(default_factory=dict)


class TelemetrySink(Protocol):
    async def emit(self, event: TelemetryEvent) -> None: ...


class NoOpTelemetrySink:
    async def emit(self, event: TelemetryEvent) -> None:
        _ = event
        return None


class RecordingTelemetrySink:
    """Keeps every event in memory; handy for tests and local debugging."""

    def __init__(self) -> None:
        self.events: list[TelemetryEvent] = []

    async def emit(self, event: TelemetryEvent) -> None:
        self.events.append(event)

    def of_type(self, event_type: str) -> list[TelemetryEvent]:
        return [event for event in self.events if event.event_type == event_type]


_pending: set[asyncio.Task[None]] = set()


async def _deliver(sink: TelemetrySink, event: TelemetryEvent) -> None:
    try:
        await sink.emit(event)
    except asyncio.CancelledError:
        raise
    except Exception as exc:  # noqa: BLE001
        logger.warning(
            "telemetry_emit_failed",
            extra={"event_type": event.event_type, "error": repr(exc)},
        )


def emit_best_effort(sink: TelemetrySink | None, event: TelemetryEvent) -> None:
    """Schedule ``event`` on ``sink`` without awaiting it."""

    if sink is None or isinstance(sink, NoOpTelemetrySink):
        return
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        logger.debug("telemetry_dropped_no_loop", extra={"event_type": event.event_type})
        return
    task = loop.create_task(_deliver(sink, event), name=f"icefloe:telemetry:{event.event_type}")
    _pending.add(task)
    task.add_done_callback(_pending.discard)


__all__ = [
    "EventType",
    "NoOpTelemetrySink",
    "RecordingTelemetrySink",
    "TelemetryEvent",
    "TelemetrySink",
    "emit_best_effort",
]
