"""Session lifecycle: open, keep alive, spawn entity clients, stop.

A :class:`Session` owns everything that is shared between its clients. The
rate-limiter registry makes a 429 on one entity pause its siblings, and the
sampling dispatch gates are shared by all concurrent clients. It also keeps
the registry of live poll handles and the heartbeat task. Heartbeat failures are
never fatal; they only move the session to ``degraded`` until a beat succeeds
again.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import time
from collections.abc import Iterable, Mapping
from enum import Enum
from types import TracebackType
from typing import Any, TypeVar

from .client import EntityClient
from .concurrent import ConcurrentClient
from .config import ClientConfig
from .dispatch import SamplingDispatch
from .errors import SessionError, as_icefloe_error
from .future import HandleRegistry, ObserverLike
from .ratelimit import Clock, RateLimiter, RateLimiterRegistry, Sleep
from .retry import RetryPolicy
from .sequenced import SequencedClient, Weigher, estimate_weight
from .telemetry import NoOpTelemetrySink, TelemetryEvent, TelemetrySink, emit_best_effort
from .transport import SDK_VERSION, Transport

logger = logging.getLogger("icefloe.session")

ClientT = TypeVar("ClientT", bound=EntityClient)


class SessionLiveness(str, Enum):
    STARTING = "starting"
    ACTIVE = "active"
    DEGRADED = "degraded"
    STOPPED = "stopped"


class Session:
    """Handle for one open server-side session."""

    def __init__(
        self,
        session_id: str,
        *,
        transport: Transport,
        config: ClientConfig,
        telemetry: TelemetrySink | None = None,
        rate_limiters: RateLimiterRegistry | None = None,
        clock: Clock | None = None,
        sleep: Sleep | None = None,
    ) -> None:
        self.session_id = session_id
        self.config = config
        self._transport = transport
        self._telemetry = telemetry or NoOpTelemetrySink()
        self._clock = clock or time.monotonic
        self._sleep = sleep or asyncio.sleep
        self.rate_limiters = rate_limiters or RateLimiterRegistry(clock=clock, sleep=sleep)
        self.handles = HandleRegistry()
        self.dispatch = SamplingDispatch(self.rate_limiter, config.dispatch)
        self._clients: list[EntityClient] = []
        self._indices: dict[str, itertools.count[int]] = {
            "model": itertools.count(),
            "sampling_session": itertools.count(),
        }
        self._liveness = SessionLiveness.STARTING
        self._heartbeat_task: asyncio.Task[None] | None = None
        self._last_heartbeat_at = self._clock()
        self._heartbeat_failures = 0

    @property
    def liveness(self) -> SessionLiveness:
        return self._liveness

    @property
    def clients(self) -> tuple[EntityClient, ...]:
        return tuple(self._clients)

    @property
    def heartbeat_failures(self) -> int:
        """Consecutive failed beats since the last success."""

        return self._heartbeat_failures

    @property
    def last_heartbeat_at(self) -> float:
        return self._last_heartbeat_at

    @property
    def rate_limiter(self) -> RateLimiter:
        return self.rate_limiters.for_key(self.config.base_url, self.config.api_key)

    # ------------------------------------------------------------------
    # Clients
    # ------------------------------------------------------------------

    async def create_sequenced_client(
        self,
        *,
        entity_id: str | None = None,
        payload: Mapping[str, Any] | None = None,
        observers: Iterable[ObserverLike] = (),
        weigh: Weigher = estimate_weight,
    ) -> SequencedClient:
        index = self._next_index("model")
        entity_id = entity_id or await self._create_entity("model", index, payload)
        client = SequencedClient(
            self._transport,
            weigh=weigh,
            **self._client_kwargs(entity_id, index, observers),
        )
        return self._adopt(client)

    async def create_concurrent_client(
        self,
        *,
        entity_id: str | None = None,
        payload: Mapping[str, Any] | None = None,
        observers: Iterable[ObserverLike] = (),
        max_inflight: int | None = None,
    ) -> ConcurrentClient:
        index = self._next_index("sampling_session")
        entity_id = entity_id or await self._create_entity("sampling_session", index, payload)
        client = ConcurrentClient(
            self._transport,
            max_inflight=max_inflight,
            dispatch=self.dispatch,
            **self._client_kwargs(entity_id, index, observers),
        )
        return self._adopt(client)

    def _next_index(self, kind: str) -> int:
        self._ensure_running()
        return next(self._indices[kind])

    async def _create_entity(self, kind: str, index: int, payload: Mapping[str, Any] | None) -> str:
        policy = RetryPolicy(
            self.config.retry, clock=self._clock, sleep=self._sleep, telemetry=self._telemetry
        )
        return await policy.call(
            lambda: self._transport.create_entity(self.session_id, kind, index, dict(payload or {})),
            rate_limiter=self.rate_limiter,
            backoff_timeout_s=self.config.timeout_s,
            metadata={"session_id": self.session_id, "entity_kind": kind, "index": index},
        )

    def _client_kwargs(
        self, entity_id: str, index: int, observers: Iterable[ObserverLike]
    ) -> dict[str, Any]:
        return {
            "entity_id": entity_id,
            "index": index,
            "config": self.config,
            "rate_limiter": self.rate_limiter,
            "session_id": self.session_id,
            "session_handles": self.handles,
            "observers": observers,
            "telemetry": self._telemetry,
            "clock": self._clock,
            "sleep": self._sleep,
        }

    def _adopt(self, client: ClientT) -> ClientT:
        if self._liveness is SessionLiveness.STOPPED:
            client.close()
            raise SessionError(
                f"Session {self.session_id} stopped while creating a client",
                data={"session_id": self.session_id},
            )
        self._clients.append(client)
        logger.debug(
            "client_created",
            extra={
                "session_id": self.session_id,
                "client_type": type(client).__name__,
                "entity_id": client.entity_id,
                "index": client.index,
            },
        )
        return client

    def _ensure_running(self) -> None:
        if self._liveness is SessionLiveness.STOPPED:
            raise SessionError(
                f"Session {self.session_id} is stopped", data={"session_id": self.session_id}
            )

    # ------------------------------------------------------------------
    # Heartbeat
    # ------------------------------------------------------------------

    def _start(self) -> None:
        self._liveness = SessionLiveness.ACTIVE
        self._last_heartbeat_at = self._clock()
        self._heartbeat_task = asyncio.get_running_loop().create_task(
            self._heartbeat_loop(), name=f"icefloe:heartbeat:{self.session_id}"
        )

    async def _heartbeat_loop(self) -> None:
        interval = self.config.heartbeat_interval_s
        while self._liveness is not SessionLiveness.STOPPED:
            await asyncio.sleep(interval)
            if self._liveness is SessionLiveness.STOPPED:
                return
            await self.beat()

    async def beat(self) -> bool:
        """Send one heartbeat; returns whether it succeeded. Never raises."""

        try:
            await self._transport.heartbeat(self.session_id, timeout_s=self.config.timeout_s)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._heartbeat_failed(exc)
            return False
        self._heartbeat_succeeded()
        return True

    def _heartbeat_failed(self, exc: Exception) -> None:
        self._heartbeat_failures += 1
        if self._liveness is SessionLiveness.ACTIVE:
            self._liveness = SessionLiveness.DEGRADED
        error = as_icefloe_error(exc)
        since_success = self._clock() - self._last_heartbeat_at
        extra = {
            "session_id": self.session_id,
            "failures": self._heartbeat_failures,
            "since_success_s": round(since_success, 3),
            "error": error.format(),
        }
        logger.debug("heartbeat_failed", extra=extra)
        if since_success >= self.config.heartbeat_warning_after_s:
            logger.warning("heartbeat_failing", extra=extra)
        emit_best_effort(
            self._telemetry,
            TelemetryEvent(
                event_type="heartbeat_failed",
                session_id=self.session_id,
                attempt=self._heartbeat_failures,
                duration_s=since_success,
                error=error.format(),
            ),
        )

    def _heartbeat_succeeded(self) -> None:
        recovered = self._heartbeat_failures > 0
        self._heartbeat_failures = 0
        self._last_heartbeat_at = self._clock()
        if self._liveness is SessionLiveness.DEGRADED:
            self._liveness = SessionLiveness.ACTIVE
        if recovered:
            logger.info("heartbeat_recovered", extra={"session_id": self.session_id})
            emit_best_effort(
                self._telemetry,
                TelemetryEvent(event_type="heartbeat_recovered", session_id=self.session_id),
            )

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    async def stop(self, timeout_s: float | None = None) -> None:
        """Stop heartbeating, cancel every child's handles, close server-side.

        Returns once everything finished or ``timeout_s`` elapsed, whichever
        comes first. Never raises.
        """

        if self._liveness is SessionLiveness.STOPPED:
            return
        self._liveness = SessionLiveness.STOPPED
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout_s if timeout_s is not None else None

        def remaining() -> float | None:
            if deadline is None:
                return None
            return max(deadline - loop.time(), 0.0)

        heartbeat = self._heartbeat_task
        if heartbeat is not None:
            heartbeat.cancel()
        cancelled = sum(client.close() for client in self._clients)
        self.handles.cancel_all()

        close_task = loop.create_task(
            self._close_remote(), name=f"icefloe:close:{self.session_id}"
        )
        pending = {close_task}
        if heartbeat is not None:
            pending.add(heartbeat)
        _, still_running = await asyncio.wait(pending, timeout=remaining())
        for task in still_running:
            task.cancel()
        drained = await self.handles.drain(remaining())

        logger.info(
            "session_stopped",
            extra={
                "session_id": self.session_id,
                "cancelled": cancelled,
                "drained": drained and not still_running,
            },
        )
        emit_best_effort(
            self._telemetry,
            TelemetryEvent(
                event_type="session_stopped",
                session_id=self.session_id,
                extra={"cancelled": cancelled},
            ),
        )

    async def _close_remote(self) -> None:
        try:
            await self._transport.close_session(self.session_id)
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001
            logger.debug(
                "session_close_failed",
                extra={"session_id": self.session_id, "error": repr(exc)},
            )

    async def __aenter__(self) -> Session:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.stop()

    def __repr__(self) -> str:  # pragma: no cover - debug helper
        return f"Session(session_id={self.session_id!r}, liveness={self._liveness.value})"


class SessionSupervisor:
    """Opens sessions and keeps track of the ones still running."""

    def __init__(
        self,
        transport: Transport,
        *,
        telemetry: TelemetrySink | None = None,
        clock: Clock | None = None,
        sleep: Sleep | None = None,
    ) -> None:
        self._transport = transport
        self._telemetry = telemetry or NoOpTelemetrySink()
        self._clock = clock
        self._sleep = sleep
        self._sessions: dict[str, Session] = {}

    async def start(self, config: ClientConfig) -> Session:
        """Open a session server-side and start its heartbeat."""

        rate_limiters = RateLimiterRegistry(clock=self._clock, sleep=self._sleep)
        policy = RetryPolicy(
            config.retry, clock=self._clock, sleep=self._sleep, telemetry=self._telemetry
        )
        request = {
            "tags": list(config.tags),
            "user_metadata": dict(config.user_metadata or {}),
            "sdk_version": SDK_VERSION,
        }
        session_id = await policy.call(
            lambda: self._transport.create_session(request),
            rate_limiter=rate_limiters.for_key(config.base_url, config.api_key),
            backoff_timeout_s=config.timeout_s,
            metadata={"operation": "create_session"},
        )
        session = Session(
            session_id,
            transport=self._transport,
            config=config,
            telemetry=self._telemetry,
            rate_limiters=rate_limiters,
            clock=self._clock,
            sleep=self._sleep,
        )
        session._start()
        self._sessions[session_id] = session
        logger.info(
            "session_started",
            extra={"session_id": session_id, "base_url": config.base_url},
        )
        emit_best_effort(
            self._telemetry,
            TelemetryEvent(event_type="session_started", session_id=session_id),
        )
        return session

    async def stop(self, session: Session, timeout_s: float | None = None) -> None:
        self._sessions.pop(session.session_id, None)
        await session.stop(timeout_s)

    async def stop_all(self, timeout_s: float | None = None) -> None:
        sessions = list(self._sessions.values())
        self._sessions.clear()
        await asyncio.gather(*(session.stop(timeout_s) for session in sessions))

    def get(self, session_id: str) -> Session | None:
        return self._sessions.get(session_id)

    def __len__(self) -> int:
        return len(self._sessions)


__all__ = ["Session", "SessionLiveness", "SessionSupervisor"]
