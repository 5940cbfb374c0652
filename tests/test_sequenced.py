from __future__ import annotations

import asyncio
import dataclasses
from collections.abc import Mapping
from typing import Any

import pytest

from icefloe.config import ClientConfig
from icefloe.errors import SessionError, TransportError
from icefloe.future import PollStatus
from icefloe.sequenced import SequencedClient, chunk_items, estimate_weight
from icefloe.testkit import ManualClock, RecordingSleep, ScriptedTransport
from icefloe.types import FutureCompleted, FuturePending, Operation


class TrackingTransport(ScriptedTransport):
    inflight: int = 0
    peak: int = 0

    async def submit(
        self, endpoint: str, payload: Mapping[str, Any], *, timeout_s: float | None = None
    ) -> str:
        self.inflight += 1
        self.peak = max(self.peak, self.inflight)
        try:
            await asyncio.sleep(0)
            return await super().submit(endpoint, payload, timeout_s=timeout_s)
        finally:
            self.inflight -= 1


def _client(
    transport: ScriptedTransport,
    config: ClientConfig,
    clock: ManualClock,
    sleep: RecordingSleep,
    **kwargs: Any,
) -> SequencedClient:
    return SequencedClient(
        transport,
        entity_id="model-0",
        config=config,
        clock=clock,
        sleep=sleep,
        **kwargs,
    )


@pytest.mark.asyncio
async def test_concurrent_callers_get_strictly_increasing_sequence_numbers(
    transport: ScriptedTransport, config: ClientConfig, clock: ManualClock, sleep: RecordingSleep
) -> None:
    client = _client(transport, config, clock, sleep)

    handles = await asyncio.gather(
        *(client.submit(Operation("forward_backward", payload={"caller": i})) for i in range(3))
    )

    assert transport.seq_ids == [0, 1, 2]
    assert [call.payload["caller"] for call in transport.submissions] == [0, 1, 2]
    assert all(call.payload["model_id"] == "model-0" for call in transport.submissions)
    assert len({handle.request_id for handle in handles}) == 3
    assert client.sequence == 3


@pytest.mark.asyncio
async def test_many_submissions_have_no_gaps_and_one_writer(
    clock: ManualClock, sleep: RecordingSleep, config: ClientConfig
) -> None:
    transport = TrackingTransport(clock=clock)
    client = _client(transport, config, clock, sleep)

    await asyncio.gather(*(client.submit(Operation("optim_step")) for _ in range(25)))

    assert transport.seq_ids == list(range(25))
    assert transport.peak == 1


@pytest.mark.asyncio
async def test_submission_does_not_wait_for_previous_result(
    transport: ScriptedTransport, config: ClientConfig, clock: ManualClock, sleep: RecordingSleep
) -> None:
    transport.script("req-1", FuturePending())
    client = _client(transport, config, clock, sleep)

    first = await client.submit(Operation("forward_backward"))
    second = await client.submit(Operation("optim_step"))

    assert first.status is PollStatus.POLLING
    assert await second.result() == {"request_id": "req-2"}
    assert transport.seq_ids == [0, 1]

    transport.script("req-1", FutureCompleted(result="fb"))
    assert await first.result() == "fb"


@pytest.mark.asyncio
async def test_transient_submit_failure_retries_same_sequence_number(
    transport: ScriptedTransport, config: ClientConfig, clock: ManualClock, sleep: RecordingSleep
) -> None:
    transport.fail_submits(TransportError("unavailable", status=503))
    client = _client(transport, config, clock, sleep)

    await client.submit(Operation("forward_backward"))
    await client.submit(Operation("optim_step"))

    assert transport.seq_ids == [0, 0, 1]
    assert sleep.delays[0] == pytest.approx(0.1)


@pytest.mark.asyncio
async def test_failed_submit_never_reuses_its_sequence_number(
    transport: ScriptedTransport, config: ClientConfig, clock: ManualClock, sleep: RecordingSleep
) -> None:
    transport.fail_submits(TransportError("bad request", status=400))
    client = _client(transport, config, clock, sleep)

    with pytest.raises(TransportError):
        await client.submit(Operation("forward_backward"))
    await client.submit(Operation("forward_backward"))

    assert transport.seq_ids == [0, 1]


@pytest.mark.asyncio
async def test_large_batches_are_chunked_with_contiguous_sequence_numbers(
    transport: ScriptedTransport, config: ClientConfig, clock: ManualClock, sleep: RecordingSleep
) -> None:
    client = _client(transport, dataclasses.replace(config, max_chunk_len=2), clock, sleep)

    handle = await client.submit(Operation("forward_backward", batch=[1, 2, 3, 4, 5]))

    assert transport.seq_ids == [0, 1, 2]
    assert [call.payload["data"] for call in transport.submissions] == [[1, 2], [3, 4], [5]]
    assert await handle.result() == [
        {"request_id": "req-1"},
        {"request_id": "req-2"},
        {"request_id": "req-3"},
    ]
    assert [child.request_id for child in handle.children] == ["req-1", "req-2", "req-3"]


@pytest.mark.asyncio
async def test_chunked_results_use_combine(
    transport: ScriptedTransport, config: ClientConfig, clock: ManualClock, sleep: RecordingSleep
) -> None:
    transport.script("req-1", FutureCompleted(result={"loss": 1.0}))
    transport.script("req-2", FutureCompleted(result={"loss": 3.0}))
    client = _client(transport, dataclasses.replace(config, max_chunk_len=1), clock, sleep)

    handle = await client.submit(
        Operation("forward", batch=["a", "b"]),
        combine=lambda parts: sum(part["loss"] for part in parts) / len(parts),
    )

    assert await handle.result() == pytest.approx(2.0)


@pytest.mark.asyncio
async def test_interleaved_callers_never_split_a_chunked_batch(
    transport: ScriptedTransport, config: ClientConfig, clock: ManualClock, sleep: RecordingSleep
) -> None:
    client = _client(transport, dataclasses.replace(config, max_chunk_len=1), clock, sleep)

    await asyncio.gather(
        client.submit(Operation("forward", batch=["a1", "a2", "a3"])),
        client.submit(Operation("forward", batch=["b1", "b2"])),
    )

    assert [call.payload["data"] for call in transport.submissions] == [
        ["a1"],
        ["a2"],
        ["a3"],
        ["b1"],
        ["b2"],
    ]
    assert transport.seq_ids == [0, 1, 2, 3, 4]


@pytest.mark.asyncio
async def test_failed_chunk_cancels_started_chunks(
    transport: ScriptedTransport, config: ClientConfig, clock: ManualClock, sleep: RecordingSleep
) -> None:
    transport.script("req-1", FuturePending())
    transport.fail_submit_at(2, TransportError("payload too large", status=413))
    client = _client(transport, dataclasses.replace(config, max_chunk_len=1), clock, sleep)

    with pytest.raises(TransportError):
        await client.submit(Operation("forward", batch=["a", "b", "c"]))
    for _ in range(5):
        await asyncio.sleep(0)

    assert client.outstanding == 0
    assert client.sequence == 2


@pytest.mark.asyncio
async def test_close_cancels_outstanding_handles(
    transport: ScriptedTransport, config: ClientConfig, clock: ManualClock, sleep: RecordingSleep
) -> None:
    transport.script("req-1", FuturePending())
    client = _client(transport, config, clock, sleep)
    handle = await client.submit(Operation("forward_backward"))

    assert client.close() == 1
    outcome = await handle.outcome()

    assert not outcome.ok
    assert handle.status is PollStatus.CANCELLED
    with pytest.raises(SessionError):
        await client.submit(Operation("forward_backward"))


def test_estimate_weight_counts_numeric_leaves() -> None:
    assert estimate_weight({"tokens": [1, 2, 3], "weights": [0.5, 0.5], "name": "x"}) == 5
    assert estimate_weight(b"\x00" * 12) == 12
    assert estimate_weight(True) == 0
    assert estimate_weight(None) == 0


def test_chunk_items_respects_length_and_weight() -> None:
    items = [[1] * 3, [1] * 3, [1] * 3]

    assert chunk_items(items, max_len=10, max_weight=5) == [[items[0]], [items[1]], [items[2]]]
    assert chunk_items(items, max_len=2, max_weight=100) == [[items[0], items[1]], [items[2]]]
    assert chunk_items([[1] * 10], max_len=10, max_weight=5) == [[[1] * 10]]
    assert chunk_items([], max_len=2, max_weight=5) == []
