"""Public package surface for icefloe."""

from __future__ import annotations

from .api import (
    create_concurrent_client,
    create_sequenced_client,
    create_session,
    stop_session,
    submit_concurrent,
    submit_sequenced,
)
from .concurrent import ConcurrentClient
from .config import BackoffScope, ClientConfig, DispatchConfig, PollConfig, RetryConfig
from .dispatch import ByteBudget, SamplingDispatch
from .errors import (
    AwaitTimeoutError,
    BackoffTimeoutError,
    ErrorCategory,
    ErrorKind,
    IcefloeError,
    IcefloeTimeoutError,
    PollTimeoutError,
    ProgressTimeoutError,
    RequestCancelledError,
    RequestFailedError,
    SessionError,
    TransportError,
    ValidationError,
    classify,
)
from .future import (
    FuturePoller,
    PollHandle,
    PollResult,
    PollStatus,
    QueueStateObserver,
    await_many,
    await_result,
    cancel,
)
from .queue_state import QueueStateLogger
from .ratelimit import RateLimiter, RateLimiterRegistry
from .retry import RetryPolicy, next_delay
from .sequenced import SequencedClient
from .session import Session, SessionLiveness, SessionSupervisor
from .telemetry import TelemetryEvent, TelemetrySink
from .transport import HttpTransport, Transport
from .types import (
    FutureCompleted,
    FutureFailed,
    FuturePending,
    Operation,
    QueueState,
    TryAgain,
)

__all__ = [
    "__version__",
    "AwaitTimeoutError",
    "BackoffScope",
    "BackoffTimeoutError",
    "ByteBudget",
    "ClientConfig",
    "ConcurrentClient",
    "DispatchConfig",
    "ErrorCategory",
    "ErrorKind",
    "FutureCompleted",
    "FutureFailed",
    "FuturePending",
    "FuturePoller",
    "HttpTransport",
    "IcefloeError",
    "IcefloeTimeoutError",
    "Operation",
    "PollConfig",
    "PollHandle",
    "PollResult",
    "PollStatus",
    "PollTimeoutError",
    "ProgressTimeoutError",
    "QueueState",
    "QueueStateLogger",
    "QueueStateObserver",
    "RateLimiter",
    "RateLimiterRegistry",
    "RequestCancelledError",
    "RequestFailedError",
    "RetryConfig",
    "RetryPolicy",
    "SamplingDispatch",
    "SequencedClient",
    "Session",
    "SessionError",
    "SessionLiveness",
    "SessionSupervisor",
    "TelemetryEvent",
    "TelemetrySink",
    "Transport",
    "TransportError",
    "TryAgain",
    "ValidationError",
    "await_many",
    "await_result",
    "cancel",
    "classify",
    "create_concurrent_client",
    "create_sequenced_client",
    "create_session",
    "next_delay",
    "stop_session",
    "submit_concurrent",
    "submit_sequenced",
]

__version__ = "0.1.0"
