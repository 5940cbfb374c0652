"""Shared plumbing for entity clients (sequenced and concurrent)."""

from __future__ import annotations

import logging
import time
from collections.abc import Iterable, Mapping
from typing import Any

from .config import ClientConfig, RetryConfig
from .errors import SessionError
from .future import FuturePoller, HandleRegistry, ObserverLike, PollHandle
from .queue_state import ClientKind, QueueStateLogger
from .ratelimit import Clock, RateLimiter, Sleep
from .retry import RetryPolicy
from .telemetry import NoOpTelemetrySink, TelemetryEvent, TelemetrySink, emit_best_effort
from .transport import Transport
from .types import Operation

logger = logging.getLogger("icefloe.client")


class EntityClient:
    """Base for clients bound to one server-side entity.

    Owns the entity's retry policy and poller. Every handle the client hands
    out is tracked both locally (so :meth:`close` can cancel it) and in the
    session-wide registry, when one is given.
    """

    kind: ClientKind = "training"
    entity_key: str = "model_id"

    def __init__(
        self,
        transport: Transport,
        *,
        entity_id: str,
        config: ClientConfig,
        index: int = 0,
        rate_limiter: RateLimiter | None = None,
        session_id: str | None = None,
        session_handles: HandleRegistry | None = None,
        observers: Iterable[ObserverLike] = (),
        telemetry: TelemetrySink | None = None,
        clock: Clock | None = None,
        sleep: Sleep | None = None,
    ) -> None:
        self.entity_id = entity_id
        self.index = index
        self.session_id = session_id
        self.config = config
        self._transport = transport
        self._rate_limiter = rate_limiter
        self._session_handles = session_handles
        self._telemetry = telemetry or NoOpTelemetrySink()
        self._handles = HandleRegistry()
        self._closed = False
        self._policy = RetryPolicy(config.retry, clock=clock, sleep=sleep, telemetry=self._telemetry)
        self.queue_state_logger = QueueStateLogger(self.kind, entity_id, clock=clock or time.monotonic)
        self._poller = FuturePoller(
            transport,
            config=config.poll,
            retry_policy=self._policy,
            rate_limiter=rate_limiter,
            backoff_scope=config.backoff_scope,
            observers=[self.queue_state_logger, *observers],
            telemetry=self._telemetry,
            http_timeout_s=config.timeout_s,
            session_id=session_id,
            clock=clock,
            sleep=sleep,
        )

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def poller(self) -> FuturePoller:
        return self._poller

    @property
    def outstanding(self) -> int:
        return len(self._handles)

    def add_observer(self, observer: ObserverLike) -> None:
        self._poller.add_observer(observer)

    def close(self) -> int:
        """Refuse new submissions and cancel every outstanding handle."""

        self._closed = True
        cancelled = self._handles.cancel_all()
        if cancelled:
            logger.debug(
                "client_closed",
                extra={"entity_id": self.entity_id, "cancelled": cancelled},
            )
        return cancelled

    async def wait_closed(self, timeout_s: float | None = None) -> bool:
        return await self._handles.drain(timeout_s)

    def _ensure_open(self) -> None:
        if self._closed:
            raise SessionError(
                f"{type(self).__name__} for {self.entity_id} is closed",
                data={"entity_id": self.entity_id},
            )

    def _policy_for(self, retry: RetryConfig | None) -> RetryPolicy:
        return self._policy.with_config(retry)

    def _payload(self, operation: Operation, seq_id: int, items: list[Any] | None = None) -> dict[str, Any]:
        return operation.build_payload(items, **{self.entity_key: self.entity_id, "seq_id": seq_id})

    def _metadata(self, seq_id: int, **extra: Any) -> dict[str, Any]:
        metadata: dict[str, Any] = {
            "entity_id": self.entity_id,
            "seq_id": seq_id,
            self.entity_key: self.entity_id,
        }
        metadata.update(extra)
        return metadata

    def _start_poll(
        self,
        request_id: str,
        *,
        seq_id: int,
        retry: RetryConfig | None,
        deadline_s: float | None,
        http_timeout_s: float | None,
    ) -> PollHandle:
        handle = self._poller.start(
            request_id,
            deadline_s=deadline_s,
            http_timeout_s=http_timeout_s,
            retry=retry,
            metadata=self._metadata(seq_id),
        )
        return self._track(handle)

    def _track(self, handle: PollHandle) -> PollHandle:
        self._handles.register(handle)
        if self._session_handles is not None:
            self._session_handles.register(handle)
        return handle

    def _submitted(self, endpoint: str, request_id: str, seq_id: int) -> None:
        logger.debug(
            "request_submitted",
            extra={
                "entity_id": self.entity_id,
                "endpoint": endpoint,
                "request_id": request_id,
                "seq_id": seq_id,
            },
        )
        emit_best_effort(
            self._telemetry,
            TelemetryEvent(
                event_type="request_submitted",
                session_id=self.session_id,
                request_id=request_id,
                extra={"entity_id": self.entity_id, "endpoint": endpoint, "seq_id": seq_id},
            ),
        )

    async def _send(
        self,
        endpoint: str,
        payload: Mapping[str, Any],
        *,
        policy: RetryPolicy,
        http_timeout_s: float | None,
        backoff_timeout_s: float | None,
        metadata: Mapping[str, Any],
    ) -> str:
        """Submit with retries; returns the request id."""

        limiter = self._rate_limiter
        timeout = http_timeout_s if http_timeout_s is not None else self.config.timeout_s

        async def attempt() -> str:
            observed = limiter.observed_until() if limiter is not None else None
            request_id = await self._transport.submit(endpoint, payload, timeout_s=timeout)
            if limiter is not None:
                limiter.clear_backoff(observed)
            return request_id

        return await policy.call(
            attempt,
            rate_limiter=limiter,
            backoff_timeout_s=backoff_timeout_s,
            metadata=metadata,
        )

    def __repr__(self) -> str:  # pragma: no cover - debug helper
        state = "closed" if self._closed else "open"
        return f"{type(self).__name__}(entity_id={self.entity_id!r}, index={self.index}, {state})"


__all__ = ["EntityClient"]
