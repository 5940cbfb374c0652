"""Function-style entry points over sessions, clients and handles."""

from __future__ import annotations

from typing import Any

from .concurrent import ConcurrentClient
from .config import ClientConfig
from .future import PollHandle, await_many, await_result, cancel
from .sequenced import SequencedClient
from .session import Session, SessionSupervisor
from .telemetry import TelemetrySink
from .transport import HttpTransport, Transport
from .types import Operation


async def create_session(
    config: ClientConfig | None = None,
    transport: Transport | None = None,
    *,
    telemetry: TelemetrySink | None = None,
) -> Session:
    """Open a session; defaults to ``ClientConfig.from_env()`` over HTTP."""

    config = config or ClientConfig.from_env()
    if transport is None:
        transport = HttpTransport(
            base_url=config.base_url,
            api_key=config.api_key,
            timeout_s=config.timeout_s,
        )
    return await SessionSupervisor(transport, telemetry=telemetry).start(config)


async def stop_session(session: Session, timeout_s: float | None = None) -> None:
    await session.stop(timeout_s)


async def create_sequenced_client(session: Session, **opts: Any) -> SequencedClient:
    return await session.create_sequenced_client(**opts)


async def submit_sequenced(client: SequencedClient, operation: Operation, **opts: Any) -> PollHandle:
    return await client.submit(operation, **opts)


async def create_concurrent_client(session: Session, **opts: Any) -> ConcurrentClient:
    return await session.create_concurrent_client(**opts)


async def submit_concurrent(client: ConcurrentClient, operation: Operation, **opts: Any) -> PollHandle:
    return await client.submit(operation, **opts)


__all__ = [
    "await_many",
    "await_result",
    "cancel",
    "create_concurrent_client",
    "create_sequenced_client",
    "create_session",
    "stop_session",
    "submit_concurrent",
    "submit_sequenced",
]
