from __future__ import annotations

import logging

import pytest

from icefloe.queue_state import (
    QueueStateLogger,
    format_pause_message,
    reason_for_state,
    resolve_reason,
)
from icefloe.testkit import ManualClock
from icefloe.types import QueueState


def _messages(caplog: pytest.LogCaptureFixture) -> list[str]:
    return [record.getMessage() for record in caplog.records if record.name == "icefloe.queue_state"]


def test_default_reasons_per_kind() -> None:
    assert reason_for_state(QueueState.PAUSED_RATE_LIMIT, "sampling") == "concurrent sampler weights limit hit"
    assert reason_for_state(QueueState.PAUSED_RATE_LIMIT, "training") == "concurrent training clients rate limit hit"
    assert "capacity" in reason_for_state(QueueState.PAUSED_CAPACITY, "training")
    assert reason_for_state(QueueState.UNKNOWN, "sampling") == "unknown"


def test_server_reason_wins() -> None:
    assert resolve_reason(QueueState.PAUSED_RATE_LIMIT, "sampling", "server says no") == "server says no"
    assert resolve_reason(QueueState.PAUSED_RATE_LIMIT, "sampling", "") == "concurrent sampler weights limit hit"


def test_pause_message_format() -> None:
    assert format_pause_message("model-abc", "training", "x") == "Training is paused for model-abc. Reason: x"
    assert format_pause_message("session-1", "sampling", "y") == "Sampling is paused for session-1. Reason: y"


def test_logs_paused_states_and_ignores_active(caplog: pytest.LogCaptureFixture) -> None:
    observer = QueueStateLogger("sampling", "session-123", clock=ManualClock())

    with caplog.at_level(logging.WARNING, logger="icefloe.queue_state"):
        observer.on_queue_state_change(QueueState.ACTIVE, {})
        observer.on_queue_state_change(QueueState.PAUSED_RATE_LIMIT, {"queue_state_reason": "busy"})

    assert _messages(caplog) == ["Sampling is paused for session-123. Reason: busy"]


def test_warnings_are_debounced_per_entity(caplog: pytest.LogCaptureFixture) -> None:
    clock = ManualClock()
    observer = QueueStateLogger("training", "model-xyz", clock=clock, debounce_s=60.0)

    with caplog.at_level(logging.WARNING, logger="icefloe.queue_state"):
        observer.on_queue_state_change(QueueState.PAUSED_CAPACITY, {})
        clock.advance(30.0)
        observer.on_queue_state_change(QueueState.PAUSED_RATE_LIMIT, {})
        clock.advance(31.0)
        observer.on_queue_state_change(QueueState.UNKNOWN, {})

    messages = _messages(caplog)
    assert len(messages) == 2
    assert messages[0].startswith("Training is paused for model-xyz")
    assert messages[1].endswith("Reason: unknown")


def test_rejects_unknown_kind() -> None:
    with pytest.raises(ValueError):
        QueueStateLogger("inference", "x")  # type: ignore[arg-type]
