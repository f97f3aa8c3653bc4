"""API key authentication for the session transport endpoints."""

import hmac

from pydantic import BaseModel, SecretStr
from starlette.requests import HTTPConnection
from starlette.responses import JSONResponse

from mcp_session_transport.types import INVALID_REQUEST, error_envelope
from mcp_session_transport.utilities.logging import get_logger

logger = get_logger(__name__)

DEFAULT_AUTH_HEADER = "Authorization"
BEARER_PREFIX = "Bearer "
UNAUTHORIZED_MESSAGE = "Unauthorized: Invalid or missing API key"
WWW_AUTHENTICATE = 'Bearer realm="MCP Server"'


class AuthConfig(BaseModel):
    """Credentials check applied to incoming requests.

    Build it through `TransportSettings.auth` to get fail-fast validation of the
    configuration; a directly constructed config that requires auth without a key
    rejects every request instead.
    """

    required: bool = False
    """Whether requests must carry a valid API key."""

    api_key: SecretStr | None = None
    """The expected API key."""

    header_name: str = DEFAULT_AUTH_HEADER
    """Header carrying the key, either as ``Bearer <key>`` or as the raw key."""


def extract_api_key(header_value: str) -> str:
    """Strip an optional ``Bearer `` prefix (case-sensitive) from a header value."""
    if header_value.startswith(BEARER_PREFIX):
        return header_value[len(BEARER_PREFIX) :]
    return header_value


def validate_api_key(request: HTTPConnection, config: AuthConfig) -> bool:
    """Check the request's API key header against `config`.

    Returns True when authentication is not required, or when the presented key
    matches the configured one.
    """
    if not config.required:
        return True

    if config.api_key is None or not config.api_key.get_secret_value():
        logger.error("Authentication is required but no API key is configured; rejecting request")
        return False

    header_value = request.headers.get(config.header_name)
    if not header_value:
        logger.warning(f"Missing {config.header_name} header in request")
        return False

    provided = extract_api_key(header_value)
    expected = config.api_key.get_secret_value()
    if not hmac.compare_digest(provided.encode(), expected.encode()):
        logger.warning(f"Invalid API key presented in {config.header_name} header")
        return False

    return True


def create_unauthorized_response() -> JSONResponse:
    return JSONResponse(
        error_envelope(INVALID_REQUEST, UNAUTHORIZED_MESSAGE),
        status_code=401,
        headers={
            "Access-Control-Allow-Origin": "*",
            "WWW-Authenticate": WWW_AUTHENTICATE,
        },
    )
