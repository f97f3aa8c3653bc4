from mcp_session_transport.types import RequestId


class TransportError(Exception):
    """Base class for errors raised by the session transport."""


class TransportClosedError(TransportError):
    """Raised when sending on a transport that has already been closed."""

    def __init__(self, message: str = "Transport is closed"):
        super().__init__(message)


class RequestTimeoutError(TransportError):
    """Raised when a handler does not answer a request within the configured timeout.

    Attributes:
        request_id: id of the JSON-RPC request that went unanswered
        timeout: the timeout that elapsed, in seconds
    """

    def __init__(self, request_id: RequestId, timeout: float):
        super().__init__(f"Timed out after {timeout} seconds waiting for a response to request {request_id!r}")
        self.request_id = request_id
        self.timeout = timeout


class DuplicateRequestError(TransportError):
    """Raised when a request id is reused while an earlier request with that id is still in flight."""

    def __init__(self, request_id: RequestId):
        super().__init__(f"Request {request_id!r} is already in flight on this session")
        self.request_id = request_id


class AuthConfigurationError(TransportError, ValueError):
    """Raised at startup when authentication is required but no API key is configured."""


class PayloadTooLargeError(TransportError):
    """Raised while reading a POST body that is larger than the transport accepts.

    Attributes:
        limit: the largest accepted body, in bytes
    """

    def __init__(self, limit: int):
        super().__init__(f"Request body is larger than {limit} bytes")
        self.limit = limit
