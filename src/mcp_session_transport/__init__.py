"""Session-scoped JSON-RPC transport over HTTP POST and Server-Sent Events.

Clients POST JSON-RPC messages and receive request responses in the HTTP
response; a GET on the same session opens an SSE stream for everything the
server pushes. Both channels can be protected by an API key.
"""

from .auth import AuthConfig, create_unauthorized_response, validate_api_key
from .bridge import MessageBridge, MessageHandler
from .exceptions import (
    AuthConfigurationError,
    DuplicateRequestError,
    PayloadTooLargeError,
    RequestTimeoutError,
    TransportClosedError,
    TransportError,
)
from .server import create_app, run
from .session_manager import SessionManager
from .settings import TransportSettings
from .sse import MemoryPushChannel, PushChannel, Scheduler, SSEChannel, TaskGroupScheduler
from .transport import MCP_SESSION_ID_HEADER, Transport, TransportState, generate_session_id
from .types import (
    JSONRPCErrorResponse,
    JSONRPCMessage,
    JSONRPCNotification,
    JSONRPCRequest,
    JSONRPCResponse,
    JSONRPCResultResponse,
)

__all__ = [
    "AuthConfig",
    "AuthConfigurationError",
    "DuplicateRequestError",
    "JSONRPCErrorResponse",
    "JSONRPCMessage",
    "JSONRPCNotification",
    "JSONRPCRequest",
    "JSONRPCResponse",
    "JSONRPCResultResponse",
    "MCP_SESSION_ID_HEADER",
    "MemoryPushChannel",
    "MessageBridge",
    "MessageHandler",
    "PayloadTooLargeError",
    "PushChannel",
    "RequestTimeoutError",
    "SSEChannel",
    "Scheduler",
    "SessionManager",
    "TaskGroupScheduler",
    "Transport",
    "TransportClosedError",
    "TransportError",
    "TransportSettings",
    "TransportState",
    "create_app",
    "create_unauthorized_response",
    "generate_session_id",
    "run",
    "validate_api_key",
]
