"""
Session-scoped JSON-RPC transport over HTTP POST and Server-Sent Events.

One `Transport` serves one session:

- POST carries client-to-server JSON-RPC messages. A request is answered in the
  HTTP response once the handler sends a response with the same id.
- GET opens the session's SSE stream, which carries every other message the
  server sends, plus a heartbeat.

Both endpoints can be protected by an API key (see `mcp_session_transport.auth`).
"""

from __future__ import annotations

import json
import uuid
from collections.abc import Callable, Mapping
from enum import Enum
from typing import Any

from anyio.abc import TaskGroup
from starlette.requests import Request
from starlette.responses import JSONResponse, PlainTextResponse, Response, StreamingResponse

from mcp_session_transport.auth import AuthConfig, create_unauthorized_response, validate_api_key
from mcp_session_transport.bridge import MessageBridge, MessageHandler
from mcp_session_transport.exceptions import PayloadTooLargeError, TransportClosedError
from mcp_session_transport.sse import (
    DEFAULT_BUFFER_SIZE,
    DEFAULT_HEARTBEAT_INTERVAL,
    MemoryPushChannel,
    Scheduler,
    SSEChannel,
    TaskGroupScheduler,
)
from mcp_session_transport.types import (
    INTERNAL_ERROR,
    INVALID_REQUEST,
    JSONRPCMessage,
    dump_message,
    error_envelope,
)
from mcp_session_transport.utilities.logging import get_logger, redact_sensitive_data

logger = get_logger(__name__)

MCP_SESSION_ID_HEADER = "mcp-session-id"
MESSAGE_EVENT = "message"
DEFAULT_MAX_BODY_BYTES = 1_000_000

CORS_HEADERS = {"Access-Control-Allow-Origin": "*"}
POST_CORS_HEADERS = {
    **CORS_HEADERS,
    "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
    "Access-Control-Allow-Headers": f"Content-Type, {MCP_SESSION_ID_HEADER}, Authorization",
}
SSE_HEADERS = {
    "Content-Type": "text/event-stream",
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    **CORS_HEADERS,
    "Access-Control-Allow-Headers": f"Cache-Control, {MCP_SESSION_ID_HEADER}, Authorization",
}


class TransportState(str, Enum):
    OPEN = "open"
    CLOSED = "closed"


def generate_session_id() -> str:
    """Return a new random session id."""
    return str(uuid.uuid4())


class Transport:
    """
    JSON-RPC transport for a single session.

    The business layer attaches `on_message` (and optionally `on_close` and
    `on_error`) and answers requests by calling `send()` with a response that
    carries the request's id. Several requests may be in flight at once.

    Args:
        session_id: the session this transport serves; required for SSE
        task_group: task group handlers and the heartbeat run in
        scheduler: drives the SSE heartbeat; defaults to running it in `task_group`
        request_timeout: seconds a POST waits for the handler's response; None waits forever
        heartbeat_interval: seconds between SSE ``ping`` events
        max_body_bytes: cap on POST body size; None disables the cap
        sse_buffer_size: number of SSE events buffered for a slow client
    """

    def __init__(
        self,
        session_id: str | None = None,
        *,
        task_group: TaskGroup,
        scheduler: Scheduler | None = None,
        request_timeout: float | None = None,
        heartbeat_interval: float = DEFAULT_HEARTBEAT_INTERVAL,
        max_body_bytes: int | None = DEFAULT_MAX_BODY_BYTES,
        sse_buffer_size: int = DEFAULT_BUFFER_SIZE,
    ):
        if max_body_bytes is not None and max_body_bytes <= 0:
            raise ValueError("max_body_bytes must be positive or None")

        self.session_id = session_id
        self.on_message: MessageHandler | None = None
        self.on_close: Callable[[], Any] | None = None
        self.on_error: Callable[[Exception], Any] | None = None

        self._state = TransportState.OPEN
        self._bridge = MessageBridge(task_group, request_timeout)
        self._scheduler = scheduler or TaskGroupScheduler(task_group)
        self._heartbeat_interval = heartbeat_interval
        self._max_body_bytes = max_body_bytes
        self._sse_buffer_size = sse_buffer_size
        self._sse: SSEChannel | None = None
        self._close_listeners: list[Callable[[], None]] = []

    generate_session_id = staticmethod(generate_session_id)

    @property
    def state(self) -> TransportState:
        return self._state

    @property
    def closed(self) -> bool:
        return self._state is TransportState.CLOSED

    @property
    def sse_connected(self) -> bool:
        return self._sse is not None and not self._sse.closed

    async def start(self) -> None:
        logger.debug(f"Transport started for session {self.session_id}")

    def add_close_listener(self, callback: Callable[[], None]) -> None:
        """Register `callback` to run once when the transport closes.

        Meant for the code that owns the transport, such as a session registry;
        the business layer uses `on_close`.
        """
        self._close_listeners.append(callback)

    async def handle_post_request(self, request: Request, auth_config: AuthConfig | None = None) -> Response:
        """Handle a JSON-RPC POST and return the HTTP response."""
        if auth_config is not None and not validate_api_key(request, auth_config):
            return create_unauthorized_response()

        logger.debug(f"POST for session {self.session_id}: headers={redact_sensitive_data(dict(request.headers))}")
        try:
            body = await self._read_body(request)
        except PayloadTooLargeError as exc:
            logger.warning(str(exc))
            return JSONResponse(error_envelope(INVALID_REQUEST, str(exc)), status_code=413, headers=CORS_HEADERS)

        try:
            if self.closed:
                raise TransportClosedError()
            message = json.loads(body)
            response = await self._bridge.process_message(message, self.on_message)
        except Exception as exc:
            logger.exception("Error handling POST request")
            self._report_error(exc)
            return JSONResponse(
                error_envelope(INTERNAL_ERROR, str(exc) or "Internal error"),
                status_code=500,
                headers=CORS_HEADERS,
            )

        return JSONResponse(response, status_code=200, headers=self._session_headers(POST_CORS_HEADERS))

    def handle_get_request(self, request: Request | None = None, auth_config: AuthConfig | None = None) -> Response:
        """Open the session's SSE stream."""
        if request is not None and auth_config is not None and not validate_api_key(request, auth_config):
            return create_unauthorized_response()

        if not self.session_id:
            return PlainTextResponse("Session ID required for SSE", status_code=400, headers=CORS_HEADERS)

        if self.closed:
            return PlainTextResponse("Transport is closed", status_code=400, headers=CORS_HEADERS)

        if self._sse is not None:
            logger.debug(f"Replacing SSE stream for session {self.session_id}")
            self._sse.close()

        channel = MemoryPushChannel(self._sse_buffer_size)
        self._sse = SSEChannel(
            channel,
            self._scheduler,
            heartbeat_interval=self._heartbeat_interval,
            on_cancel=self._handle_stream_cancelled,
        )
        self._sse.open()
        logger.info(f"SSE stream opened for session {self.session_id}")

        return StreamingResponse(channel.stream(), status_code=200, headers=self._session_headers(SSE_HEADERS))

    async def send(self, message: JSONRPCMessage | dict[str, Any], options: Mapping[str, Any] | None = None) -> None:
        """Send a message to the client.

        A response to an in-flight POST request becomes that request's HTTP
        response; anything else is pushed on the SSE stream as a ``message``
        event. Without an open stream the message is dropped.

        `options` is accepted for compatibility with other transports and is not used.
        """
        if self.closed:
            raise TransportClosedError()

        if self._bridge.resolve(message):
            return

        if self._sse is None or self._sse.closed:
            logger.debug(f"No SSE stream for session {self.session_id}; dropping message")
            return

        self._sse.send_message(json.dumps(dump_message(message)), MESSAGE_EVENT)

    async def close(self) -> None:
        if self.closed:
            return
        self._mark_closed()
        if self._sse is not None:
            self._sse.close()
        self._fire_close()

    def _handle_stream_cancelled(self) -> None:
        if self.closed:
            return
        logger.info(f"SSE client disconnected from session {self.session_id}")
        self._mark_closed()
        self._fire_close()

    def _mark_closed(self) -> None:
        self._state = TransportState.CLOSED
        self._bridge.fail_all(TransportClosedError())

    def _fire_close(self) -> None:
        for listener in self._close_listeners:
            try:
                listener()
            except Exception:
                logger.exception("Error in close listener")
        self._close_listeners.clear()

        if self.on_close is None:
            return
        try:
            self.on_close()
        except Exception:
            logger.exception("Error in close callback")

    async def _read_body(self, request: Request) -> bytes:
        limit = self._max_body_bytes
        if limit is None:
            return await request.body()

        # A declared length over the limit is refused before reading anything.
        declared = request.headers.get("content-length", "")
        if declared.isdigit() and int(declared) > limit:
            raise PayloadTooLargeError(limit)

        chunks: list[bytes] = []
        received = 0
        async for chunk in request.stream():
            received += len(chunk)
            if received > limit:
                raise PayloadTooLargeError(limit)
            chunks.append(chunk)
        return b"".join(chunks)

    def _report_error(self, exc: Exception) -> None:
        if self.on_error is None:
            return
        try:
            self.on_error(exc)
        except Exception:
            logger.exception("Error in error callback")

    def _session_headers(self, headers: dict[str, str]) -> dict[str, str]:
        if self.session_id:
            return {**headers, MCP_SESSION_ID_HEADER: self.session_id}
        return dict(headers)
