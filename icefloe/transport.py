"""Transport protocol and the httpx-backed implementation."""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, Protocol

import httpx
from pydantic import ValidationError as PydanticValidationError

from .errors import ErrorCategory, ErrorKind, TransportError, ValidationError
from .types import RetrieveResponse, parse_retrieve_response

logger = logging.getLogger("icefloe.transport")

SDK_VERSION = "0.1.0"
_API_PREFIX = "/api/v1"
_DEFAULT_RATE_LIMIT_RETRY_MS = 1_000


class Transport(Protocol):
    """Protocol describing the remote service surface the runtime consumes."""

    async def submit(
        self, endpoint: str, payload: Mapping[str, Any], *, timeout_s: float | None = None
    ) -> str:
        """Send an operation and return its request id. Never waits for completion."""

    async def retrieve(self, request_id: str, *, timeout_s: float | None = None) -> RetrieveResponse:
        """Fetch the current state of a submitted operation."""

    async def heartbeat(self, session_id: str, *, timeout_s: float | None = None) -> None:
        """Keep ``session_id`` alive server-side."""

    async def create_session(self, request: Mapping[str, Any]) -> str:
        """Open a session and return its id."""

    async def close_session(self, session_id: str) -> None:
        """Best-effort server-side session close."""

    async def create_entity(
        self, session_id: str, kind: str, index: int, payload: Mapping[str, Any]
    ) -> str:
        """Create a session-scoped resource (model, sampling session) and return its id."""


def _normalize_base_url(url: str) -> str:
    return url.rstrip("/")


def _parse_retry_after_ms(headers: httpx.Headers) -> int | None:
    raw_ms = headers.get("retry-after-ms")
    if raw_ms is not None:
        try:
            return int(float(raw_ms.strip()))
        except ValueError:
            pass
    raw_s = headers.get("retry-after")
    if raw_s is not None:
        try:
            return int(float(raw_s.strip()) * 1000)
        except ValueError:
            logger.warning("retry_after_unsupported", extra={"value": raw_s})
    return None


def _decode_error_body(body: str) -> dict[str, Any]:
    if not body:
        return {}
    try:
        payload = json.loads(body)
    except json.JSONDecodeError:
        return {"message": body}
    if isinstance(payload, Mapping):
        return dict(payload)
    return {"message": body}


def _raise_for_status(response: httpx.Response) -> None:
    status = response.status_code
    if 200 <= status < 300:
        return
    data = _decode_error_body(response.text)
    category = ErrorCategory.parse(data["category"]) if isinstance(data.get("category"), str) else None
    retry_after_ms = _parse_retry_after_ms(response.headers)
    if retry_after_ms is None and isinstance(data.get("retry_after_ms"), int):
        retry_after_ms = data["retry_after_ms"]
    if status == 429 and retry_after_ms is None:
        retry_after_ms = _DEFAULT_RATE_LIMIT_RETRY_MS
    message = data.get("message") or data.get("error") or data.get("detail") or f"HTTP {status}"
    raise TransportError(
        str(message),
        status=status,
        category=category,
        data=data,
        retry_after_ms=retry_after_ms,
    )


@dataclass(slots=True)
class HttpTransport(Transport):
    base_url: str
    api_key: str | None = None
    timeout_s: float | None = None
    headers: Mapping[str, str] | None = None
    client: httpx.AsyncClient | None = None
    entity_endpoints: dict[str, str] = field(
        default_factory=lambda: {
            "model": "create_model",
            "sampling_session": "create_sampling_session",
        }
    )

    @asynccontextmanager
    async def _client_context(self, timeout: float | None):
        if self.client is not None:
            yield self.client
            return
        async with httpx.AsyncClient(timeout=timeout) as client:
            yield client

    def _base_headers(self) -> dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
            "User-Agent": f"icefloe-python/{SDK_VERSION}",
        }
        if self.api_key:
            headers["X-API-Key"] = self.api_key
        if self.headers:
            headers.update(self.headers)
        return headers

    def _url(self, path: str) -> str:
        return f"{_normalize_base_url(self.base_url)}{_API_PREFIX}/{path.lstrip('/')}"

    async def _post(
        self, path: str, payload: Mapping[str, Any], *, timeout_s: float | None = None
    ) -> dict[str, Any]:
        timeout = timeout_s or self.timeout_s
        try:
            async with self._client_context(timeout) as client:
                response = await client.post(
                    self._url(path),
                    json=dict(payload),
                    headers=self._base_headers(),
                    timeout=timeout,
                )
        except httpx.TimeoutException as exc:
            raise TransportError(
                f"Request to {path} timed out: {exc}",
                kind=ErrorKind.API_TIMEOUT,
                data={"path": path},
            ) from exc
        except httpx.TransportError as exc:
            logger.debug("transport_error", extra={"path": path, "error": repr(exc)})
            raise TransportError(
                str(exc) or type(exc).__name__,
                kind=ErrorKind.API_CONNECTION,
                data={"path": path},
            ) from exc
        _raise_for_status(response)
        try:
            data = response.json()
        except ValueError as exc:
            raise ValidationError(f"JSON decode error from {path}: {exc}") from exc
        if not isinstance(data, dict):
            raise ValidationError(f"Unexpected response payload from {path}")
        return data

    async def submit(
        self, endpoint: str, payload: Mapping[str, Any], *, timeout_s: float | None = None
    ) -> str:
        data = await self._post(endpoint, payload, timeout_s=timeout_s)
        request_id = data.get("request_id")
        if not isinstance(request_id, str) or not request_id:
            raise ValidationError(f"Response from {endpoint} is missing request_id")
        return request_id

    async def retrieve(self, request_id: str, *, timeout_s: float | None = None) -> RetrieveResponse:
        data = await self._post("future/retrieve", {"request_id": request_id}, timeout_s=timeout_s)
        try:
            return parse_retrieve_response(data)
        except PydanticValidationError as exc:
            raise ValidationError(
                f"Malformed retrieve response for {request_id}", data={"errors": exc.errors()}
            ) from exc

    async def heartbeat(self, session_id: str, *, timeout_s: float | None = None) -> None:
        await self._post(
            "session_heartbeat",
            {"session_id": session_id, "type": "session_heartbeat"},
            timeout_s=timeout_s,
        )

    async def create_session(self, request: Mapping[str, Any]) -> str:
        data = await self._post("create_session", {"type": "create_session", **dict(request)})
        session_id = data.get("session_id")
        if not isinstance(session_id, str) or not session_id:
            raise ValidationError("create_session response is missing session_id")
        return session_id

    async def close_session(self, session_id: str) -> None:
        await self._post("end_session", {"session_id": session_id})

    async def create_entity(
        self, session_id: str, kind: str, index: int, payload: Mapping[str, Any]
    ) -> str:
        endpoint = self.entity_endpoints.get(kind)
        if endpoint is None:
            raise ValueError(f"Unknown entity kind {kind!r}")
        body = {"session_id": session_id, f"{kind}_seq_id": index, **dict(payload)}
        data = await self._post(endpoint, body)
        for key in (f"{kind}_id", "model_id", "sampling_session_id", "id"):
            value = data.get(key)
            if isinstance(value, str) and value:
                return value
        raise ValidationError(f"{endpoint} response is missing an entity id")


__all__ = ["HttpTransport", "SDK_VERSION", "Transport"]
