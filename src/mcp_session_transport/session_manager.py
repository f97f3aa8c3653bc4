"""In-memory registry of session transports."""

from __future__ import annotations

import contextlib
import inspect
from collections.abc import AsyncIterator, Awaitable, Callable

import anyio
from anyio.abc import TaskGroup
from starlette.requests import Request
from starlette.responses import PlainTextResponse, Response

from mcp_session_transport.auth import create_unauthorized_response, validate_api_key
from mcp_session_transport.settings import TransportSettings
from mcp_session_transport.sse import Scheduler
from mcp_session_transport.transport import (
    CORS_HEADERS,
    MCP_SESSION_ID_HEADER,
    POST_CORS_HEADERS,
    Transport,
    generate_session_id,
)
from mcp_session_transport.utilities.logging import get_logger

logger = get_logger(__name__)

SessionHandler = Callable[[Transport], Awaitable[None] | None]


class SessionManager:
    """
    Creates a `Transport` per session and routes HTTP requests to it.

    A POST without an ``mcp-session-id`` header starts a new session: a
    transport is created under a freshly generated id and handed to
    `on_session`, which attaches the business-logic callbacks. Later POST and
    GET requests carrying that id are routed to the same transport. Sessions
    are forgotten as soon as their transport closes, whether the server closed it
    or the client dropped the SSE stream.

    Only one `run()` is allowed per instance. Use it in the lifespan of the
    Starlette app:

        @contextlib.asynccontextmanager
        async def lifespan(app: Starlette) -> AsyncIterator[None]:
            async with session_manager.run():
                yield

    Args:
        on_session: called with every new transport
        settings: transport settings; read from the environment when omitted
        session_id_generator: produces new session ids
        scheduler: heartbeat scheduler shared by all transports; defaults to the
            manager's task group
    """

    def __init__(
        self,
        on_session: SessionHandler,
        settings: TransportSettings | None = None,
        session_id_generator: Callable[[], str] = generate_session_id,
        scheduler: Scheduler | None = None,
    ):
        self.on_session = on_session
        self.settings = settings or TransportSettings()
        self.session_id_generator = session_id_generator
        self.scheduler = scheduler

        self._auth = self.settings.auth
        self._transports: dict[str, Transport] = {}
        self._task_group: TaskGroup | None = None
        self._has_started = False

    @property
    def sessions(self) -> dict[str, Transport]:
        return dict(self._transports)

    @contextlib.asynccontextmanager
    async def run(self) -> AsyncIterator[None]:
        if self._has_started:
            raise RuntimeError(
                "SessionManager .run() can only be called once per instance. "
                "Create a new instance if you need to run again."
            )
        self._has_started = True

        async with anyio.create_task_group() as tg:
            self._task_group = tg
            logger.info("Session manager started")
            try:
                yield
            finally:
                logger.info("Session manager shutting down")
                for transport in list(self._transports.values()):
                    await transport.close()
                self._transports.clear()
                tg.cancel_scope.cancel()
                self._task_group = None

    async def handle_request(self, request: Request) -> Response:
        if request.method == "OPTIONS":
            return Response(status_code=204, headers=POST_CORS_HEADERS)

        if request.method not in ("GET", "POST"):
            return PlainTextResponse(
                "Method not allowed",
                status_code=405,
                headers={**CORS_HEADERS, "Allow": "GET, POST, OPTIONS"},
            )

        if not validate_api_key(request, self._auth):
            return create_unauthorized_response()

        session_id = request.headers.get(MCP_SESSION_ID_HEADER)
        if request.method == "GET":
            if not session_id:
                return PlainTextResponse("Session ID required for SSE", status_code=400, headers=CORS_HEADERS)
            transport = self._lookup(session_id)
            if transport is None:
                return self._session_not_found(session_id)
            return transport.handle_get_request(request)

        if session_id:
            transport = self._lookup(session_id)
            if transport is None:
                return self._session_not_found(session_id)
        else:
            transport = await self._create_session()
        return await transport.handle_post_request(request)

    async def _create_session(self) -> Transport:
        if self._task_group is None:
            raise RuntimeError("Task group is not initialized. Make sure to use run().")

        session_id = self.session_id_generator()
        transport = Transport(
            session_id,
            task_group=self._task_group,
            scheduler=self.scheduler,
            request_timeout=self.settings.request_timeout,
            heartbeat_interval=self.settings.heartbeat_interval,
            max_body_bytes=self.settings.max_body_bytes,
            sse_buffer_size=self.settings.sse_buffer_size,
        )
        self._transports[session_id] = transport
        transport.add_close_listener(lambda: self._forget(session_id, transport))

        try:
            result = self.on_session(transport)
            if inspect.isawaitable(result):
                await result
        except BaseException:
            self._forget(session_id, transport)
            raise
        await transport.start()

        logger.info(f"Created new session {session_id}")
        return transport

    def _lookup(self, session_id: str) -> Transport | None:
        return self._transports.get(session_id)

    def _forget(self, session_id: str, transport: Transport) -> None:
        if self._transports.get(session_id) is transport:
            del self._transports[session_id]
            logger.debug(f"Removed session {session_id}")

    def _session_not_found(self, session_id: str) -> Response:
        logger.warning(f"Request for unknown session {session_id}")
        return PlainTextResponse("Session not found", status_code=404, headers=CORS_HEADERS)
