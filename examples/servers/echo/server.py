"""Echo server: answers every request with its own params and pushes a notification over SSE.

    MCP_AUTH_REQUIRED=true MCP_API_KEY=secret python examples/servers/echo/server.py --port 8000

    curl -i -X POST localhost:8000/ -H "Authorization: Bearer secret" \
        -d '{"jsonrpc": "2.0", "id": 1, "method": "echo", "params": {"hello": "world"}}'
"""

import logging

import click

from mcp_session_transport import JSONRPCMessage, JSONRPCRequest, Transport, TransportSettings, run

logger = logging.getLogger(__name__)


async def on_session(transport: Transport) -> None:
    async def on_message(message: JSONRPCMessage) -> None:
        if not isinstance(message, JSONRPCRequest):
            logger.info(f"Notification {message.method} on session {transport.session_id}")
            return

        await transport.send({"jsonrpc": "2.0", "method": "notifications/echoed", "params": {"id": message.id}})
        await transport.send({"jsonrpc": "2.0", "id": message.id, "result": message.params or {}})

    transport.on_message = on_message
    transport.on_close = lambda: logger.info(f"Session {transport.session_id} closed")


@click.command()
@click.option("--port", default=8000, help="Port to listen on for HTTP")
@click.option(
    "--log-level",
    default="INFO",
    help="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
)
def main(port: int, log_level: str) -> int:
    run(on_session, TransportSettings(port=port, log_level=log_level.upper()))
    return 0


if __name__ == "__main__":
    main()
