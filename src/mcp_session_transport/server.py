"""Starlette application serving session transports."""

from __future__ import annotations

from starlette.applications import Starlette
from starlette.routing import Route

from mcp_session_transport.session_manager import SessionHandler, SessionManager
from mcp_session_transport.settings import TransportSettings
from mcp_session_transport.sse import Scheduler
from mcp_session_transport.utilities.logging import configure_logging


def create_app(
    on_session: SessionHandler,
    settings: TransportSettings | None = None,
    *,
    scheduler: Scheduler | None = None,
    debug: bool = False,
) -> Starlette:
    """Create a Starlette ASGI app exposing the transport at ``settings.path``.

    Usage:
        async def on_session(transport: Transport) -> None:
            async def on_message(message: JSONRPCMessage) -> None:
                if isinstance(message, JSONRPCRequest):
                    await transport.send({"jsonrpc": "2.0", "id": message.id, "result": {}})

            transport.on_message = on_message

        app = create_app(on_session)
        uvicorn.run(app, host="127.0.0.1", port=8000)
    """
    settings = settings or TransportSettings()
    session_manager = SessionManager(on_session, settings, scheduler=scheduler)

    app = Starlette(
        debug=debug,
        routes=[
            Route(settings.path, endpoint=session_manager.handle_request, methods=["GET", "POST", "OPTIONS"]),
        ],
        lifespan=lambda app: session_manager.run(),
    )
    app.state.session_manager = session_manager
    return app


def run(on_session: SessionHandler, settings: TransportSettings | None = None) -> None:
    """Serve the transport with uvicorn using `settings` (or the environment)."""
    import uvicorn

    settings = settings or TransportSettings()
    configure_logging(settings.log_level)
    uvicorn.run(create_app(on_session, settings), host=settings.host, port=settings.port)
