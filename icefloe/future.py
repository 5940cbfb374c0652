"""Client-side futures: poll a request id until it reaches a terminal state.

:class:`FuturePoller` starts one independently scheduled task per request id
and hands back a :class:`PollHandle`. Callers await the handle (optionally
with their own timeout), await several handles at once with
:func:`await_many`, or cancel it. Awaiting never disturbs the polling task, so
a caller that gives up early does not prevent a later caller from getting the
result.

Queue state
-----------

``try_again`` responses carry a queue state (``active``,
``paused_rate_limit``, ``paused_capacity``). On every transition the poller
emits a ``queue_state_change`` telemetry event and calls each registered
observer. Observer failures are logged and swallowed; they never affect
polling.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable, Generator, Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol, runtime_checkable

from .config import BackoffScope, PollConfig, RetryConfig
from .errors import (
    AwaitTimeoutError,
    ErrorCategory,
    IcefloeError,
    IcefloeTimeoutError,
    PollTimeoutError,
    RequestCancelledError,
    RequestFailedError,
    as_icefloe_error,
)
from .ratelimit import Clock, RateLimiter, Sleep
from .retry import RetryPolicy, RetryState, next_delay
from .telemetry import NoOpTelemetrySink, TelemetryEvent, TelemetrySink, emit_best_effort
from .transport import Transport
from .types import FutureCompleted, FutureFailed, FuturePending, QueueState, TryAgain

logger = logging.getLogger("icefloe.future")


class PollStatus(str, Enum):
    POLLING = "polling"
    RESOLVED = "resolved"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"


@runtime_checkable
class QueueStateObserver(Protocol):
    def on_queue_state_change(self, queue_state: QueueState, metadata: Mapping[str, Any]) -> Any: ...


ObserverLike = QueueStateObserver | Callable[[QueueState, Mapping[str, Any]], Any]


def notify_observer(
    observer: ObserverLike, queue_state: QueueState, metadata: Mapping[str, Any]
) -> None:
    """Invoke ``observer`` and swallow anything it raises."""

    try:
        if isinstance(observer, QueueStateObserver):
            result = observer.on_queue_state_change(queue_state, metadata)
        else:
            result = observer(queue_state, metadata)
        if asyncio.iscoroutine(result):
            task = asyncio.ensure_future(result)
            task.add_done_callback(_log_observer_task)
    except Exception as exc:  # noqa: BLE001
        logger.warning(
            "queue_state_observer_error",
            extra={
                "observer": repr(observer),
                "queue_state": queue_state.value,
                "error": repr(exc),
            },
        )


def _log_observer_task(task: asyncio.Future[Any]) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.warning("queue_state_observer_error", extra={"error": repr(exc)})


@dataclass(slots=True)
class PollResult:
    """``ok`` result or error for one handle, as returned by :func:`await_many`."""

    value: Any = None
    error: IcefloeError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap(self) -> Any:
        if self.error is not None:
            raise self.error
        return self.value


class PollHandle:
    """Caller-facing token for one in-flight (or finished) future."""

    __slots__ = ("request_id", "submitted_at", "metadata", "_task", "_children")

    def __init__(
        self,
        request_id: str,
        task: asyncio.Task[Any],
        *,
        submitted_at: float | None = None,
        metadata: Mapping[str, Any] | None = None,
        children: Sequence[PollHandle] = (),
    ) -> None:
        self.request_id = request_id
        self.submitted_at = submitted_at if submitted_at is not None else time.time()
        self.metadata = dict(metadata or {})
        self._task = task
        self._children = tuple(children)
        task.add_done_callback(_mark_retrieved)

    @classmethod
    def combine(
        cls,
        handles: Sequence[PollHandle],
        combine: Callable[[list[Any]], Any] | None = None,
        *,
        request_id: str | None = None,
    ) -> PollHandle:
        """One handle that resolves after every child, combining in child order."""

        children = tuple(handles)

        async def _gather() -> Any:
            try:
                results = [await child.result() for child in children]
            except BaseException:
                for child in children:
                    child.cancel()
                raise
            return combine(results) if combine is not None else results

        task = asyncio.get_running_loop().create_task(
            _gather(), name=f"icefloe:combine:{request_id or len(children)}"
        )
        combined_id = request_id or "+".join(child.request_id for child in children)
        return cls(
            combined_id,
            task,
            metadata={"request_ids": [child.request_id for child in children]},
            children=children,
        )

    @property
    def children(self) -> tuple[PollHandle, ...]:
        return self._children

    @property
    def status(self) -> PollStatus:
        task = self._task
        if not task.done():
            return PollStatus.POLLING
        if task.cancelled():
            return PollStatus.CANCELLED
        exc = task.exception()
        if exc is None:
            return PollStatus.RESOLVED
        if isinstance(exc, RequestCancelledError):
            return PollStatus.CANCELLED
        if isinstance(exc, IcefloeTimeoutError):
            return PollStatus.TIMED_OUT
        return PollStatus.FAILED

    def done(self) -> bool:
        return self._task.done()

    def cancel(self) -> bool:
        """Stop polling now. Returns ``False`` if the handle already finished."""

        for child in self._children:
            child.cancel()
        if self._task.done():
            return False
        self._task.cancel()
        return True

    def add_done_callback(self, callback: Callable[[PollHandle], None]) -> None:
        self._task.add_done_callback(lambda _task: callback(self))

    async def result(
        self, timeout_s: float | None = None, *, cancel_on_timeout: bool = False
    ) -> Any:
        """Wait for the outcome; raise the terminal error if there is one."""

        task = self._task
        if not task.done():
            done, _ = await asyncio.wait({task}, timeout=timeout_s)
            if not done:
                if cancel_on_timeout:
                    self.cancel()
                    await asyncio.wait({task})
                raise AwaitTimeoutError(
                    f"Future {self.request_id} did not complete within {timeout_s}s",
                    data={"request_id": self.request_id, "timeout_s": timeout_s},
                )
        return self._unwrap()

    async def outcome(
        self, timeout_s: float | None = None, *, cancel_on_timeout: bool = False
    ) -> PollResult:
        try:
            value = await self.result(timeout_s, cancel_on_timeout=cancel_on_timeout)
        except IcefloeError as exc:
            return PollResult(error=exc)
        return PollResult(value=value)

    def _unwrap(self) -> Any:
        task = self._task
        if task.cancelled():
            raise RequestCancelledError(
                f"Future {self.request_id} was cancelled",
                data={"request_id": self.request_id},
            )
        exc = task.exception()
        if exc is None:
            return task.result()
        if isinstance(exc, IcefloeError):
            raise exc
        raise AwaitTimeoutError(
            f"Future task exited while awaiting result: {exc!r}",
            data={"request_id": self.request_id, "exit_reason": repr(exc)},
        ) from exc

    def __await__(self) -> Generator[Any, None, Any]:
        return self.result().__await__()

    def __repr__(self) -> str:  # pragma: no cover - debug helper
        return f"PollHandle(request_id={self.request_id!r}, status={self.status.value})"


def _mark_retrieved(task: asyncio.Task[Any]) -> None:
    # Results are read through the handle; consuming the exception here keeps
    # asyncio from reporting handles nobody awaited.
    if not task.cancelled():
        task.exception()


class HandleRegistry:
    """Tracks every live handle of a session so shutdown can cancel them."""

    __slots__ = ("_handles",)

    def __init__(self) -> None:
        self._handles: set[PollHandle] = set()

    def register(self, handle: PollHandle) -> PollHandle:
        if handle.done():
            return handle
        self._handles.add(handle)
        handle.add_done_callback(self._handles.discard)
        return handle

    def cancel_all(self) -> int:
        cancelled = 0
        for handle in list(self._handles):
            if handle.cancel():
                cancelled += 1
        return cancelled

    async def drain(self, timeout_s: float | None = None) -> bool:
        """Wait until every registered handle finished; ``False`` on timeout."""

        tasks = {handle._task for handle in self._handles}
        if not tasks:
            return True
        _, pending = await asyncio.wait(tasks, timeout=timeout_s)
        return not pending

    def __contains__(self, handle: object) -> bool:
        return handle in self._handles

    def __len__(self) -> int:
        return len(self._handles)


@dataclass(slots=True)
class _PollRun:
    request_id: str
    policy: RetryPolicy
    retry_state: RetryState
    deadline_at: float | None
    http_timeout_s: float | None
    metadata: dict[str, Any] = field(default_factory=dict)
    queue_state: QueueState | None = None
    iteration: int = 0


class FuturePoller:
    """Resolves request ids into terminal outcomes by repeated retrieval."""

    def __init__(
        self,
        transport: Transport,
        *,
        config: PollConfig | None = None,
        retry_policy: RetryPolicy | None = None,
        rate_limiter: RateLimiter | None = None,
        backoff_scope: BackoffScope = BackoffScope.IMMEDIATE,
        observers: Iterable[ObserverLike] = (),
        telemetry: TelemetrySink | None = None,
        registry: HandleRegistry | None = None,
        http_timeout_s: float | None = None,
        session_id: str | None = None,
        clock: Clock | None = None,
        sleep: Sleep | None = None,
    ) -> None:
        self._transport = transport
        self._config = config or PollConfig()
        self._policy = retry_policy or RetryPolicy(clock=clock, sleep=sleep, telemetry=telemetry)
        self._rate_limiter = rate_limiter
        self._backoff_scope = BackoffScope(backoff_scope)
        self._observers: list[ObserverLike] = list(observers)
        self._telemetry = telemetry or NoOpTelemetrySink()
        self._registry = registry
        self._http_timeout_s = http_timeout_s
        self._session_id = session_id
        self._clock = clock or time.monotonic
        self._sleep = sleep or asyncio.sleep

    @property
    def config(self) -> PollConfig:
        return self._config

    def add_observer(self, observer: ObserverLike) -> None:
        self._observers.append(observer)

    def start(
        self,
        request_id: str,
        *,
        deadline_s: float | None = None,
        http_timeout_s: float | None = None,
        retry: RetryConfig | None = None,
        metadata: Mapping[str, Any] | None = None,
        initial_queue_state: QueueState | None = None,
    ) -> PollHandle:
        """Begin polling ``request_id``; returns immediately."""

        if not isinstance(request_id, str) or not request_id:
            raise ValueError(f"expected a non-empty request id, got {request_id!r}")
        policy = self._policy.with_config(retry)
        deadline = deadline_s if deadline_s is not None else self._config.deadline_s
        run = _PollRun(
            request_id=request_id,
            policy=policy,
            retry_state=policy.new_state(),
            deadline_at=self._clock() + deadline if deadline is not None else None,
            http_timeout_s=http_timeout_s if http_timeout_s is not None else self._http_timeout_s,
            metadata={"request_id": request_id, **dict(metadata or {})},
            queue_state=initial_queue_state,
        )
        task = asyncio.get_running_loop().create_task(
            self._run(run), name=f"icefloe:poll:{request_id}"
        )
        handle = PollHandle(request_id, task, metadata=run.metadata)
        if self._registry is not None:
            self._registry.register(handle)
        return handle

    async def _run(self, run: _PollRun) -> Any:
        started = self._clock()
        try:
            result = await self._poll_loop(run)
        except asyncio.CancelledError:
            logger.debug("poll_cancelled", extra=run.metadata)
            self._emit("poll_cancelled", run, duration_s=self._clock() - started)
            raise
        except IcefloeTimeoutError as exc:
            logger.info("poll_timed_out", extra={**run.metadata, "error": exc.format()})
            self._emit("poll_timed_out", run, duration_s=self._clock() - started, error=exc.format())
            raise
        except IcefloeError as exc:
            logger.info("poll_failed", extra={**run.metadata, "error": exc.format()})
            self._emit("poll_failed", run, duration_s=self._clock() - started, error=exc.format())
            raise
        except Exception as exc:
            logger.error("poll_crashed", extra={**run.metadata, "error": repr(exc)})
            raise
        self._emit("poll_resolved", run, duration_s=self._clock() - started)
        return result

    async def _poll_loop(self, run: _PollRun) -> Any:
        while True:
            self._ensure_within_deadline(run)
            if self._rate_limiter is not None and self._backoff_scope is BackoffScope.IMMEDIATE:
                await self._rate_limiter.wait_for_backoff(self._remaining(run))
            try:
                response = await self._transport.retrieve(run.request_id, timeout_s=run.http_timeout_s)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                error = as_icefloe_error(exc)
                await self._retry_after_failure(run, error)
                continue

            if isinstance(response, FutureCompleted):
                return response.result

            if isinstance(response, FutureFailed):
                error = self._failed_error(run, response)
                if response.category is ErrorCategory.USER:
                    raise error
                await self._retry_after_failure(run, error)
                continue

            run.retry_state.record_success()
            if isinstance(response, TryAgain):
                self._maybe_emit_queue_state(run, response)
                delay = self._pending_delay(run, response.retry_after_ms)
            elif isinstance(response, FuturePending):
                delay = self._pending_delay(run, response.retry_after_ms)
            else:
                raise TypeError(f"unexpected retrieve response {type(response).__name__}")
            run.iteration += 1
            await self._sleep(self._bounded(run, delay))

    async def _retry_after_failure(self, run: _PollRun, error: IcefloeError) -> None:
        await run.policy.backoff(
            run.retry_state,
            error,
            rate_limiter=self._rate_limiter,
            metadata=run.metadata,
            max_sleep_s=self._remaining(run),
        )

    def _pending_delay(self, run: _PollRun, retry_after_ms: int | None) -> float:
        override = retry_after_ms / 1000.0 if retry_after_ms is not None else None
        return next_delay(
            run.iteration,
            self._config.base_delay_s,
            self._config.max_delay_s,
            override_s=override,
        )

    def _failed_error(self, run: _PollRun, response: FutureFailed) -> RequestFailedError:
        return RequestFailedError(
            response.message or f"Future request {run.request_id} failed",
            category=response.category,
            data={"request_id": run.request_id, "error": dict(response.error)},
        )

    def _remaining(self, run: _PollRun) -> float | None:
        if run.deadline_at is None:
            return None
        return max(run.deadline_at - self._clock(), 0.0)

    def _bounded(self, run: _PollRun, delay: float) -> float:
        remaining = self._remaining(run)
        if remaining is None:
            return delay
        return min(delay, remaining)

    def _ensure_within_deadline(self, run: _PollRun) -> None:
        if run.deadline_at is None or self._clock() < run.deadline_at:
            return
        last_error = run.retry_state.last_error
        raise PollTimeoutError(
            f"Timed out while polling future {run.request_id}",
            last_error=last_error,
            data={"request_id": run.request_id, "iteration": run.iteration},
        ) from last_error

    def _maybe_emit_queue_state(self, run: _PollRun, response: TryAgain) -> None:
        queue_state = response.queue_state
        if run.queue_state is queue_state:
            return
        run.queue_state = queue_state
        metadata = {
            **run.metadata,
            "queue_state": queue_state,
            "queue_state_reason": response.queue_state_reason,
        }
        logger.debug(
            "queue_state_change",
            extra={**run.metadata, "queue_state": queue_state.value},
        )
        self._emit("queue_state_change", run, queue_state=queue_state.value)
        for observer in self._observers:
            notify_observer(observer, queue_state, metadata)

    def _emit(self, event_type: str, run: _PollRun, **fields: Any) -> None:
        extra = {k: v for k, v in run.metadata.items() if k != "request_id"}
        emit_best_effort(
            self._telemetry,
            TelemetryEvent(
                event_type=event_type,  # type: ignore[arg-type]
                session_id=self._session_id,
                request_id=run.request_id,
                attempt=run.retry_state.attempt,
                extra=_jsonable(extra),
                **fields,
            ),
        )


def _jsonable(values: Mapping[str, Any]) -> dict[str, Any]:
    return {
        key: value if isinstance(value, (str, int, float, bool, type(None))) else repr(value)
        for key, value in values.items()
    }


async def await_result(
    handle: PollHandle, timeout_s: float | None = None, *, cancel_on_timeout: bool = False
) -> Any:
    """Await one handle; raises the terminal error (or a timeout error)."""

    return await handle.result(timeout_s, cancel_on_timeout=cancel_on_timeout)


async def await_many(
    handles: Sequence[PollHandle], timeout_s: float | None = None
) -> list[PollResult]:
    """Await handles independently; results keep the input order."""

    return list(await asyncio.gather(*(handle.outcome(timeout_s) for handle in handles)))


def cancel(handle: PollHandle) -> bool:
    return handle.cancel()


__all__ = [
    "FuturePoller",
    "HandleRegistry",
    "ObserverLike",
    "PollHandle",
    "PollResult",
    "PollStatus",
    "QueueStateObserver",
    "await_many",
    "await_result",
    "cancel",
    "notify_observer",
]
