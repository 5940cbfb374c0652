"""Error taxonomy and classification for icefloe.

Every failure that crosses a component boundary is an :class:`IcefloeError`.
:func:`classify` is the single place that decides whether a failure is the
caller's fault (``user``, never retried) or transient (``server`` /
``unknown``, retried by :mod:`icefloe.retry`).
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Any

import httpx


class ErrorCategory(str, Enum):
    USER = "user"
    SERVER = "server"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value: Any) -> ErrorCategory:
        """Parse a wire category, case-insensitively; anything else is ``unknown``."""

        if isinstance(value, ErrorCategory):
            return value
        if isinstance(value, str):
            try:
                return cls(value.strip().lower())
            except ValueError:
                return cls.UNKNOWN
        return cls.UNKNOWN

    @property
    def retryable(self) -> bool:
        return self is not ErrorCategory.USER


class ErrorKind(str, Enum):
    API_CONNECTION = "api_connection"
    API_TIMEOUT = "api_timeout"
    API_STATUS = "api_status"
    REQUEST_FAILED = "request_failed"
    VALIDATION = "validation"
    CANCELLED = "cancelled"


# 408 Request Timeout and 429 Too Many Requests are the only retryable 4xx.
RETRYABLE_CLIENT_STATUSES = frozenset({408, 429})


class IcefloeError(Exception):
    """Base error carrying the structured fields used for retry decisions."""

    kind: ErrorKind = ErrorKind.REQUEST_FAILED

    def __init__(
        self,
        message: str,
        *,
        kind: ErrorKind | None = None,
        status: int | None = None,
        category: ErrorCategory | None = None,
        data: dict[str, Any] | None = None,
        retry_after_ms: int | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if kind is not None:
            self.kind = kind
        self.status = status
        self.category = category
        self.data = data or {}
        self.retry_after_ms = retry_after_ms

    @property
    def user_error(self) -> bool:
        return classify(self).category is ErrorCategory.USER

    @property
    def retryable(self) -> bool:
        return classify(self).retryable

    def format(self) -> str:
        status = f" ({self.status})" if self.status is not None else ""
        return f"[{self.kind.value}{status}] {self.message}"

    def __str__(self) -> str:
        return self.format()

    def __repr__(self) -> str:  # pragma: no cover - debug helper
        return (
            f"{type(self).__name__}(kind={self.kind.value!r}, status={self.status!r}, "
            f"category={self.category.value if self.category else None!r}, "
            f"message={self.message!r})"
        )


class TransportError(IcefloeError):
    """Raised by transports for HTTP status errors and connection failures."""

    kind = ErrorKind.API_STATUS


class RequestFailedError(IcefloeError):
    """A server-side future finished in the ``failed`` state."""

    kind = ErrorKind.REQUEST_FAILED


class ValidationError(IcefloeError):
    """A payload could not be decoded into the expected shape."""

    kind = ErrorKind.VALIDATION

    def __init__(self, message: str, **kwargs: Any) -> None:
        kwargs.setdefault("category", ErrorCategory.USER)
        super().__init__(message, **kwargs)


class IcefloeTimeoutError(IcefloeError):
    """Base for every ceiling-exceeded error; distinct from retry exhaustion."""

    kind = ErrorKind.API_TIMEOUT

    def __init__(
        self,
        message: str,
        *,
        last_error: IcefloeError | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(message, **kwargs)
        self.last_error = last_error


class PollTimeoutError(IcefloeTimeoutError):
    """The poll deadline elapsed before the future reached a terminal state."""


class ProgressTimeoutError(IcefloeTimeoutError):
    """No progress was recorded within the retry policy's progress ceiling."""


class AwaitTimeoutError(IcefloeTimeoutError):
    """A caller's await gave up, or the polling task crashed."""


class BackoffTimeoutError(IcefloeTimeoutError):
    """The shared backoff window outlasted the caller's wait bound."""


class RequestCancelledError(IcefloeError):
    """The poll handle was cancelled by the caller or by session shutdown."""

    kind = ErrorKind.CANCELLED


class SessionError(IcefloeError):
    """Session could not be opened or is no longer usable."""


@dataclass(frozen=True, slots=True)
class Classification:
    category: ErrorCategory
    kind: ErrorKind
    status: int | None = None

    @property
    def retryable(self) -> bool:
        return self.category.retryable

    @property
    def rate_limited(self) -> bool:
        return self.status == 429


def _category_for_status(status: int) -> ErrorCategory:
    if 400 <= status < 500 and status not in RETRYABLE_CLIENT_STATUSES:
        return ErrorCategory.USER
    if status in RETRYABLE_CLIENT_STATUSES or 500 <= status < 600:
        return ErrorCategory.SERVER
    return ErrorCategory.UNKNOWN


def classify(error: BaseException) -> Classification:
    """Map a raw failure to ``{user, server, unknown}`` plus an error kind.

    Pure function: no logging, no state. Status codes win over an explicit
    category: 408/429 are always retryable and every other 4xx is always a
    user error.
    """

    if isinstance(error, IcefloeError):
        status = error.status
        if status is not None and status in RETRYABLE_CLIENT_STATUSES:
            return Classification(ErrorCategory.SERVER, error.kind, status)
        if status is not None and _category_for_status(status) is ErrorCategory.USER:
            return Classification(ErrorCategory.USER, error.kind, status)
        if error.category is not None:
            return Classification(error.category, error.kind, status)
        if status is not None:
            return Classification(_category_for_status(status), error.kind, status)
        if error.kind in (ErrorKind.API_CONNECTION, ErrorKind.API_TIMEOUT):
            return Classification(ErrorCategory.SERVER, error.kind, None)
        if error.kind is ErrorKind.VALIDATION:
            return Classification(ErrorCategory.USER, error.kind, None)
        return Classification(ErrorCategory.UNKNOWN, error.kind, None)

    if isinstance(error, httpx.HTTPStatusError):
        status = error.response.status_code
        return Classification(_category_for_status(status), ErrorKind.API_STATUS, status)
    if isinstance(error, (httpx.TimeoutException, asyncio.TimeoutError, TimeoutError)):
        return Classification(ErrorCategory.SERVER, ErrorKind.API_TIMEOUT, None)
    if isinstance(error, (httpx.TransportError, ConnectionError, OSError)):
        return Classification(ErrorCategory.SERVER, ErrorKind.API_CONNECTION, None)
    return Classification(ErrorCategory.UNKNOWN, ErrorKind.REQUEST_FAILED, None)


def as_icefloe_error(error: BaseException) -> IcefloeError:
    """Wrap a foreign exception so the rest of the stack sees one error type."""

    if isinstance(error, IcefloeError):
        return error
    verdict = classify(error)
    wrapped = IcefloeError(
        str(error) or type(error).__name__,
        kind=verdict.kind,
        status=verdict.status,
        category=verdict.category,
        data={"exception": type(error).__name__},
    )
    wrapped.__cause__ = error
    return wrapped


__all__ = [
    "AwaitTimeoutError",
    "BackoffTimeoutError",
    "Classification",
    "ErrorCategory",
    "ErrorKind",
    "IcefloeError",
    "IcefloeTimeoutError",
    "PollTimeoutError",
    "ProgressTimeoutError",
    "RequestCancelledError",
    "RequestFailedError",
    "SessionError",
    "TransportError",
    "ValidationError",
    "as_icefloe_error",
    "classify",
]
