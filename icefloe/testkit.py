"""In-memory doubles for exercising icefloe without a server.

``ScriptedTransport`` hands out predictable request ids (``req-1``,
``req-2``, ...) and answers ``retrieve`` from per-request scripts.
``ManualClock`` and ``RecordingSleep`` make backoff timing observable without
waiting on the wall clock.

Example::

    clock = ManualClock()
    sleep = RecordingSleep(clock)
    transport = ScriptedTransport(clock=clock)
    transport.script("req-1", FuturePending(), FutureCompleted(result={"x": 1}))
"""

from __future__ import annotations

import asyncio
import itertools
from collections import deque
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from .errors import ErrorCategory, TransportError
from .ratelimit import Clock
from .types import FutureCompleted, FutureFailed, RetrieveResponse, parse_retrieve_response

ScriptItem = RetrieveResponse | BaseException | Mapping[str, Any]


class ManualClock:
    """Monotonic clock that only moves when told to."""

    def __init__(self, start: float = 0.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += max(seconds, 0.0)


class RecordingSleep:
    """Sleep replacement: records delays, advances ``clock``, yields once."""

    def __init__(self, clock: ManualClock | None = None) -> None:
        self.clock = clock
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        if self.clock is not None:
            self.clock.advance(delay)
        await asyncio.sleep(0)

    @property
    def total(self) -> float:
        return sum(self.delays)


@dataclass(slots=True)
class SubmitCall:
    endpoint: str
    payload: dict[str, Any]
    at: float
    request_id: str | None = None

    @property
    def seq_id(self) -> Any:
        return self.payload.get("seq_id")


def server_error(message: str = "boom", *, status: int = 500) -> TransportError:
    return TransportError(message, status=status)


def rate_limited(retry_after_ms: int | None = 1000) -> TransportError:
    return TransportError("rate limited", status=429, retry_after_ms=retry_after_ms)


def failed(category: ErrorCategory | str, message: str) -> FutureFailed:
    category = ErrorCategory.parse(category)
    return FutureFailed(error={"category": category.value, "message": message})


@dataclass
class ScriptedTransport:
    """Transport double driven by scripts instead of a server.

    Each ``retrieve`` pops the next scripted item for that request id; the
    last item repeats forever. Unscripted ids complete immediately with
    ``{"request_id": <id>}``. Scripted exceptions are raised.
    """

    clock: Clock | None = None
    submissions: list[SubmitCall] = field(default_factory=list)
    retrieves: list[str] = field(default_factory=list)
    heartbeats: list[str] = field(default_factory=list)
    closed_sessions: list[str] = field(default_factory=list)
    created_entities: list[tuple[str, str, int]] = field(default_factory=list)
    session_requests: list[dict[str, Any]] = field(default_factory=list)
    heartbeat_error: BaseException | None = None
    heartbeat_hangs: bool = False
    _scripts: dict[str, deque[ScriptItem]] = field(default_factory=dict)
    _submit_failures: deque[BaseException] = field(default_factory=deque)
    _submit_failures_at: dict[int, BaseException] = field(default_factory=dict)
    _ids: itertools.count[int] = field(default_factory=lambda: itertools.count(1))
    _sessions: itertools.count[int] = field(default_factory=lambda: itertools.count(1))

    def _now(self) -> float:
        return self.clock() if self.clock is not None else asyncio.get_running_loop().time()

    def script(self, request_id: str, *items: ScriptItem) -> None:
        if not items:
            raise ValueError("script() needs at least one response")
        self._scripts.setdefault(request_id, deque()).extend(items)

    def fail_submits(self, *errors: BaseException) -> None:
        """Make the next ``len(errors)`` submits raise, in order."""

        self._submit_failures.extend(errors)

    def fail_submit_at(self, call_number: int, error: BaseException) -> None:
        """Make the ``call_number``-th submit (1-based, counting every call) raise."""

        self._submit_failures_at[call_number] = error

    def retrieve_count(self, request_id: str) -> int:
        return self.retrieves.count(request_id)

    @property
    def seq_ids(self) -> list[Any]:
        return [call.seq_id for call in self.submissions]

    async def submit(
        self, endpoint: str, payload: Mapping[str, Any], *, timeout_s: float | None = None
    ) -> str:
        call = SubmitCall(endpoint=endpoint, payload=dict(payload), at=self._now())
        self.submissions.append(call)
        number = len(self.submissions)
        await asyncio.sleep(0)
        scheduled = self._submit_failures_at.pop(number, None)
        if scheduled is not None:
            raise scheduled
        if self._submit_failures:
            raise self._submit_failures.popleft()
        call.request_id = f"req-{next(self._ids)}"
        return call.request_id

    async def retrieve(self, request_id: str, *, timeout_s: float | None = None) -> RetrieveResponse:
        self.retrieves.append(request_id)
        await asyncio.sleep(0)
        script = self._scripts.get(request_id)
        if not script:
            return FutureCompleted(result={"request_id": request_id})
        item = script.popleft() if len(script) > 1 else script[0]
        if isinstance(item, BaseException):
            raise item
        if isinstance(item, Mapping):
            return parse_retrieve_response(item)
        return item

    async def heartbeat(self, session_id: str, *, timeout_s: float | None = None) -> None:
        self.heartbeats.append(session_id)
        if self.heartbeat_hangs:
            await asyncio.Event().wait()
        await asyncio.sleep(0)
        if self.heartbeat_error is not None:
            raise self.heartbeat_error

    async def create_session(self, request: Mapping[str, Any]) -> str:
        self.session_requests.append(dict(request))
        await asyncio.sleep(0)
        return f"session-{next(self._sessions)}"

    async def close_session(self, session_id: str) -> None:
        self.closed_sessions.append(session_id)

    async def create_entity(
        self, session_id: str, kind: str, index: int, payload: Mapping[str, Any]
    ) -> str:
        self.created_entities.append((session_id, kind, index))
        await asyncio.sleep(0)
        return f"{kind}-{index}"


__all__ = [
    "ManualClock",
    "RecordingSleep",
    "ScriptedTransport",
    "SubmitCall",
    "failed",
    "rate_limited",
    "server_error",
]
