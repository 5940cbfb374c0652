"""Typed wire envelope and operation models for icefloe."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .errors import ErrorCategory


class QueueState(str, Enum):
    ACTIVE = "active"
    PAUSED_RATE_LIMIT = "paused_rate_limit"
    PAUSED_CAPACITY = "paused_capacity"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value: Any) -> QueueState:
        """Missing or unrecognised values become ``unknown``, never ``active``."""

        if isinstance(value, QueueState):
            return value
        if isinstance(value, str):
            try:
                return cls(value.strip().lower())
            except ValueError:
                return cls.UNKNOWN
        return cls.UNKNOWN

    @property
    def paused(self) -> bool:
        return self in (QueueState.PAUSED_RATE_LIMIT, QueueState.PAUSED_CAPACITY)


class FuturePending(BaseModel):
    status: Literal["pending"] = "pending"
    retry_after_ms: int | None = Field(default=None, ge=0)


class FutureCompleted(BaseModel):
    status: Literal["completed"] = "completed"
    result: Any = None


class FutureFailed(BaseModel):
    status: Literal["failed"] = "failed"
    error: dict[str, Any] = Field(default_factory=dict)

    @property
    def category(self) -> ErrorCategory:
        return ErrorCategory.parse(self.error.get("category"))

    @property
    def message(self) -> str | None:
        message = self.error.get("message")
        return str(message) if message is not None else None


class TryAgain(BaseModel):
    model_config = ConfigDict(extra="allow")

    type: Literal["try_again"] = "try_again"
    request_id: str | None = None
    queue_state: QueueState = QueueState.UNKNOWN
    retry_after_ms: int | None = Field(default=None, ge=0)
    queue_state_reason: str | None = None

    @field_validator("queue_state", mode="before")
    @classmethod
    def _parse_queue_state(cls, value: Any) -> QueueState:
        return QueueState.parse(value)


RetrieveResponse = FuturePending | FutureCompleted | FutureFailed | TryAgain


def parse_retrieve_response(data: Mapping[str, Any]) -> RetrieveResponse:
    """Decode a ``future/retrieve`` body into the response union.

    Some endpoints return the final result with no status wrapper; anything
    that is neither a known status nor a ``try_again`` envelope is treated as
    the completed payload itself.
    """

    if not isinstance(data, Mapping):
        raise TypeError(f"retrieve response must be a mapping, got {type(data).__name__}")
    kind = data.get("type")
    if isinstance(kind, str) and kind.lower() == "try_again":
        return TryAgain.model_validate(dict(data))
    status = data.get("status")
    if status == "pending":
        return FuturePending.model_validate(dict(data))
    if status == "completed":
        return FutureCompleted(result=data.get("result"))
    if status == "failed":
        error = data.get("error")
        if not isinstance(error, Mapping):
            error = {"message": str(error)} if error is not None else {}
        return FutureFailed(error=dict(error))
    return FutureCompleted(result=dict(data))


@dataclass(slots=True)
class Operation:
    """One unit of work for a client.

    ``batch`` items are placed under ``payload[batch_key]``; sequenced clients
    split oversized batches into ordered chunks.
    """

    endpoint: str
    payload: dict[str, Any] = field(default_factory=dict)
    batch: list[Any] | None = None
    batch_key: str = "data"

    def build_payload(self, items: list[Any] | None = None, **extra: Any) -> dict[str, Any]:
        body = dict(self.payload)
        if items is not None:
            body[self.batch_key] = items
        elif self.batch is not None:
            body[self.batch_key] = list(self.batch)
        body.update(extra)
        return body


__all__ = [
    "FutureCompleted",
    "FutureFailed",
    "FuturePending",
    "Operation",
    "QueueState",
    "RetrieveResponse",
    "TryAgain",
    "parse_retrieve_response",
]
