"""HTTP + WebSocket backend for node-graph image servers.

Requests (submit, status lookup, interrupt, dequeue) go over httpx; the
event channel is an aiohttp WebSocket at ``{ws_path}?clientId=...`` that
emits JSON ``{"type": ..., "data": {...}}`` text frames. Binary frames carry
preview images and are skipped.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import Sequence
from typing import Any

import aiohttp
import httpx

from renderq.backends.base import (
    BackendEvent,
    ComputeBackend,
    EventChannel,
    ExecutingEvent,
    ExecutionErrorEvent,
    ExecutionStarted,
    ProgressEvent,
    StatusResult,
)
from renderq.core.errors import BackendRejectedError, BackendTransportError
from renderq.core.logging import get_logger
from renderq.core.models import OutputRef

_logger = get_logger("backend.http")


def parse_message(message: dict[str, Any]) -> BackendEvent | None:
    """Translate one channel message into a BackendEvent.

    Returns None for message types the orchestrator does not consume
    (queue status broadcasts, cached-node notices and the like).
    """
    kind = message.get("type")
    data = message.get("data") or {}
    prompt_id = data.get("prompt_id")

    if kind == "execution_start":
        return ExecutionStarted(external_job_id=prompt_id)
    if kind == "progress":
        return ProgressEvent(
            value=int(data.get("value", 0)),
            max=int(data.get("max", 0)),
            node_id=_as_node_id(data.get("node")),
            external_job_id=prompt_id,
        )
    if kind == "executing":
        return ExecutingEvent(node=_as_node_id(data.get("node")), external_job_id=prompt_id)
    if kind == "execution_success":
        return ExecutingEvent(node=None, external_job_id=prompt_id)
    if kind == "execution_error":
        return ExecutionErrorEvent(
            message=data.get("exception_message") or "unknown execution error",
            external_job_id=prompt_id,
            node_id=_as_node_id(data.get("node_id")),
        )
    if kind == "execution_interrupted":
        return ExecutionErrorEvent(message="execution interrupted", external_job_id=prompt_id)
    return None


def _as_node_id(value: Any) -> str | None:
    return None if value is None else str(value)


def parse_history(external_job_id: str, body: dict[str, Any]) -> StatusResult:
    """Build a StatusResult from a ``/history/{id}`` response body."""
    entry = body.get(external_job_id)
    if not isinstance(entry, dict):
        return StatusResult(external_job_id=external_job_id)

    outputs: list[OutputRef] = []
    for node_output in (entry.get("outputs") or {}).values():
        for image in node_output.get("images", []):
            outputs.append(OutputRef(
                filename=image["filename"],
                subfolder=image.get("subfolder", ""),
                kind=image.get("type", "output"),
            ))

    error: str | None = None
    status = entry.get("status") or {}
    if status.get("status_str") == "error" and not outputs:
        error = _history_error_message(status)

    return StatusResult(
        external_job_id=external_job_id, outputs=outputs, error=error, raw=entry,
    )


def _history_error_message(status: dict[str, Any]) -> str:
    for name, detail in status.get("messages", []):
        if name == "execution_error" and isinstance(detail, dict):
            return str(detail.get("exception_message") or "execution error")
    return "execution error"


def _rejection_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:500] or f"HTTP {response.status_code}"
    error = body.get("error") if isinstance(body, dict) else None
    if isinstance(error, dict):
        return str(error.get("message") or error.get("type") or body)
    return str(error or body)


class WebSocketEventChannel(EventChannel):
    """EventChannel over an aiohttp WebSocket."""

    def __init__(
        self,
        session: aiohttp.ClientSession,
        ws: aiohttp.ClientWebSocketResponse,
    ) -> None:
        self._session = session
        self._ws = ws

    @property
    def closed(self) -> bool:
        return self._ws.closed

    async def __anext__(self) -> BackendEvent:
        while True:
            msg = await self._ws.receive()
            if msg.type == aiohttp.WSMsgType.TEXT:
                try:
                    payload = json.loads(msg.data)
                except json.JSONDecodeError:
                    _logger.debug("channel.malformed_message", preview=msg.data[:200])
                    continue
                event = parse_message(payload) if isinstance(payload, dict) else None
                if event is not None:
                    return event
            elif msg.type == aiohttp.WSMsgType.BINARY:
                continue
            elif msg.type == aiohttp.WSMsgType.ERROR:
                await self.close()
                raise BackendTransportError(f"Event channel error: {self._ws.exception()}")
            else:
                # CLOSE, CLOSING, CLOSED
                await self.close()
                raise StopAsyncIteration

    async def close(self) -> None:
        if not self._ws.closed:
            await self._ws.close()
        if not self._session.closed:
            await self._session.close()


class HttpComputeBackend(ComputeBackend):
    """Compute backend reached over HTTP with a WebSocket event channel.

    Attributes:
        base_url: HTTP root of the backend.
        ws_path: Path of the WebSocket endpoint.
        timeout: Per-request timeout in seconds.
    """

    def __init__(
        self,
        base_url: str = "http://127.0.0.1:8188",
        ws_path: str = "/ws",
        timeout: float = 30.0,
        auth_token: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the backend.

        Args:
            base_url: HTTP root, e.g. ``http://127.0.0.1:8188``.
            ws_path: WebSocket path appended to the root.
            timeout: Per-request timeout in seconds.
            auth_token: Optional bearer token sent on every request.
            transport: Custom httpx transport, used by tests to stub responses.
        """
        self.base_url = base_url.rstrip("/")
        self.ws_path = ws_path
        self.timeout = timeout
        self._auth_token = auth_token
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @property
    def name(self) -> str:
        return "http"

    @property
    def ws_url(self) -> str:
        if self.base_url.startswith("https://"):
            root = "wss://" + self.base_url[len("https://"):]
        else:
            root = "ws://" + self.base_url.removeprefix("http://")
        return f"{root}{self.ws_path}"

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._auth_token:
            headers["Authorization"] = f"Bearer {self._auth_token}"
        return headers

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client.

        Created lazily so it binds to the running event loop.
        """
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=httpx.Timeout(self.timeout),
                headers=self._headers(),
                transport=self._transport,
            )
        return self._client

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        client = await self._get_client()
        _logger.debug("http_request", method=method, path=path)
        try:
            response = await client.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            raise BackendTransportError(f"{method} {path} timed out after {self.timeout}s") from e
        except httpx.TransportError as e:
            raise BackendTransportError(f"{method} {path} failed: {e}") from e
        if response.status_code >= 500:
            raise BackendTransportError(
                f"{method} {path} returned HTTP {response.status_code}"
            )
        return response

    async def open_channel(self, client_id: str) -> EventChannel:
        session = aiohttp.ClientSession(
            headers={"Authorization": f"Bearer {self._auth_token}"} if self._auth_token else None,
            timeout=aiohttp.ClientTimeout(total=None, connect=self.timeout),
        )
        try:
            ws = await session.ws_connect(
                self.ws_url, params={"clientId": client_id}, heartbeat=30.0,
            )
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            await session.close()
            raise BackendTransportError(f"Could not open event channel: {e}") from e
        _logger.debug("channel_opened", client_id=client_id)
        return WebSocketEventChannel(session, ws)

    async def submit(self, payload: dict[str, Any], client_id: str) -> str:
        response = await self._request(
            "POST", "/prompt", json={"prompt": payload, "client_id": client_id},
        )
        if response.status_code != 200:
            message = _rejection_message(response)
            _logger.error(
                "submit_rejected", status_code=response.status_code, message=message,
            )
            raise BackendRejectedError(message)

        try:
            body = response.json()
        except ValueError as e:
            raise BackendRejectedError("Submission response was not JSON") from e
        prompt_id = body.get("prompt_id") if isinstance(body, dict) else None
        if not prompt_id:
            node_errors = body.get("node_errors") if isinstance(body, dict) else None
            raise BackendRejectedError(f"Submission returned no job id: {node_errors or body}")
        return str(prompt_id)

    async def get_status(self, external_job_id: str) -> StatusResult:
        response = await self._request("GET", f"/history/{external_job_id}")
        if response.status_code != 200:
            return StatusResult(external_job_id=external_job_id)
        try:
            body = response.json()
        except ValueError:
            _logger.warning("history_not_json", external_job_id=external_job_id)
            return StatusResult(external_job_id=external_job_id)
        if not isinstance(body, dict):
            return StatusResult(external_job_id=external_job_id)
        return parse_history(external_job_id, body)

    async def interrupt(self) -> None:
        await self._request("POST", "/interrupt")

    async def dequeue(self, external_job_ids: Sequence[str]) -> None:
        if not external_job_ids:
            return
        await self._request("POST", "/queue", json={"delete": list(external_job_ids)})

    async def health_check(self) -> bool:
        try:
            response = await self._request("GET", "/system_stats")
        except BackendTransportError as e:
            _logger.warning("health_check_failed", error=str(e))
            return False
        return response.status_code == 200

    async def close(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
        self._client = None


__all__ = [
    "HttpComputeBackend",
    "WebSocketEventChannel",
    "parse_history",
    "parse_message",
]
