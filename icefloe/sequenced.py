"""Single-writer client for entities whose mutations must apply in order.

Submissions queue on a FIFO write slot. The slot is held only while a request
id is being obtained; results are polled outside it, so submission N+1 never
waits on the result of N.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Iterable, Mapping, Sequence
from typing import Any

from .client import EntityClient
from .config import RetryConfig
from .future import PollHandle
from .types import Operation

logger = logging.getLogger("icefloe.sequenced")

Weigher = Callable[[Any], int]


def estimate_weight(item: Any) -> int:
    """Rough count of numbers carried by ``item``.

    Numeric leaves count 1, ``bytes`` count their length, containers are
    summed recursively, anything else counts 0.
    """

    if isinstance(item, bool):
        return 0
    if isinstance(item, (int, float)):
        return 1
    if isinstance(item, (bytes, bytearray)):
        return len(item)
    if isinstance(item, str):
        return 0
    if isinstance(item, Mapping):
        return sum(estimate_weight(value) for value in item.values())
    if isinstance(item, Iterable):
        return sum(estimate_weight(value) for value in item)
    return 0


def chunk_items(
    items: Sequence[Any],
    *,
    max_len: int,
    max_weight: int,
    weigh: Weigher = estimate_weight,
) -> list[list[Any]]:
    """Split ``items`` into ordered chunks bounded by length and weight.

    An item heavier than ``max_weight`` on its own still gets a chunk.
    """

    chunks: list[list[Any]] = []
    current: list[Any] = []
    weight = 0
    for item in items:
        item_weight = weigh(item)
        if current and (len(current) >= max_len or weight + item_weight > max_weight):
            chunks.append(current)
            current, weight = [], 0
        current.append(item)
        weight += item_weight
    if current:
        chunks.append(current)
    return chunks


class SequencedClient(EntityClient):
    """Strictly ordered submissions for one entity (for example a model)."""

    kind = "training"
    entity_key = "model_id"

    def __init__(self, *args: Any, weigh: Weigher = estimate_weight, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self._slot = asyncio.Lock()
        self._next_seq = 0
        self._weigh = weigh

    @property
    def sequence(self) -> int:
        """The sequence number the next submission will receive."""

        return self._next_seq

    def _take_seq(self) -> int:
        seq_id = self._next_seq
        self._next_seq += 1
        return seq_id

    def _chunks(self, operation: Operation) -> list[list[Any]] | None:
        if operation.batch is None:
            return None
        return chunk_items(
            operation.batch,
            max_len=self.config.max_chunk_len,
            max_weight=self.config.max_chunk_weight,
            weigh=self._weigh,
        ) or [[]]

    async def submit(
        self,
        operation: Operation,
        *,
        retry: RetryConfig | None = None,
        deadline_s: float | None = None,
        http_timeout_s: float | None = None,
        combine: Callable[[list[Any]], Any] | None = None,
    ) -> PollHandle:
        """Send ``operation`` in order and return a handle for its result.

        Batched operations get one sequence number per chunk, all contiguous.
        Their handle resolves to ``combine(chunk_results)``, or to the list of
        chunk results when ``combine`` is ``None``.
        """

        self._ensure_open()
        chunks = self._chunks(operation)
        policy = self._policy_for(retry)
        handles: list[PollHandle] = []
        async with self._slot:
            self._ensure_open()
            try:
                for items in chunks if chunks is not None else [None]:
                    seq_id = self._take_seq()
                    payload = self._payload(operation, seq_id, items)
                    request_id = await self._send(
                        operation.endpoint,
                        payload,
                        policy=policy,
                        http_timeout_s=http_timeout_s,
                        backoff_timeout_s=self.config.timeout_s,
                        metadata=self._metadata(seq_id),
                    )
                    self._submitted(operation.endpoint, request_id, seq_id)
                    handles.append(
                        self._start_poll(
                            request_id,
                            seq_id=seq_id,
                            retry=retry,
                            deadline_s=deadline_s,
                            http_timeout_s=http_timeout_s,
                        )
                    )
            except BaseException:
                for handle in handles:
                    handle.cancel()
                raise

        if chunks is None:
            return handles[0]
        if len(handles) > 1:
            logger.debug(
                "batch_chunked",
                extra={
                    "entity_id": self.entity_id,
                    "chunks": len(handles),
                    "first_seq_id": handles[0].metadata.get("seq_id"),
                },
            )
        return self._track(PollHandle.combine(handles, combine))


__all__ = ["SequencedClient", "Weigher", "chunk_items", "estimate_weight"]
