"""Client for independent operations that may run concurrently."""

from __future__ import annotations

import asyncio
import itertools
from typing import Any

from .client import EntityClient
from .config import RetryConfig
from .dispatch import SamplingDispatch
from .future import PollHandle
from .sequenced import estimate_weight
from .types import Operation


class ConcurrentClient(EntityClient):
    """Unordered submissions sharing the session's backoff window.

    Callers may submit without restriction; at most ``max_inflight``
    submissions of this client talk to the transport at once. Each one also
    passes the layered :class:`SamplingDispatch` gates, which are shared with
    sibling clients when the session provides them. Every attempt first waits
    out the shared backoff window, and a 429 on any sibling extends it.
    """

    kind = "sampling"
    entity_key = "sampling_session_id"

    def __init__(
        self,
        *args: Any,
        max_inflight: int | None = None,
        dispatch: SamplingDispatch | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(*args, **kwargs)
        limit = max_inflight if max_inflight is not None else self.config.max_inflight
        if limit <= 0:
            raise ValueError("max_inflight must be positive")
        self.max_inflight = limit
        self._inflight = asyncio.Semaphore(limit)
        self.dispatch = dispatch or SamplingDispatch(self._rate_limiter, self.config.dispatch)
        self._seq = itertools.count()

    async def submit(
        self,
        operation: Operation,
        *,
        retry: RetryConfig | None = None,
        deadline_s: float | None = None,
        http_timeout_s: float | None = None,
        backoff_timeout_s: float | None = None,
        estimated_bytes: int | None = None,
    ) -> PollHandle:
        self._ensure_open()
        seq_id = next(self._seq)
        bound = backoff_timeout_s if backoff_timeout_s is not None else self.config.timeout_s
        payload = self._payload(operation, seq_id)
        if estimated_bytes is None:
            estimated_bytes = estimate_weight(payload)
        async with self._inflight, self.dispatch.slot(estimated_bytes):
            self._ensure_open()
            request_id = await self._send(
                operation.endpoint,
                payload,
                policy=self._policy_for(retry),
                http_timeout_s=http_timeout_s,
                backoff_timeout_s=bound,
                metadata=self._metadata(seq_id),
            )
        self._submitted(operation.endpoint, request_id, seq_id)
        return self._start_poll(
            request_id,
            seq_id=seq_id,
            retry=retry,
            deadline_s=deadline_s,
            http_timeout_s=http_timeout_s,
        )


__all__ = ["ConcurrentClient"]
