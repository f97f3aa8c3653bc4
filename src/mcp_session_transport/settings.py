"""Environment-driven settings for the session transport server."""

from __future__ import annotations

from typing import Annotated

from pydantic import Field, SecretStr, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from mcp_session_transport.auth import DEFAULT_AUTH_HEADER, AuthConfig
from mcp_session_transport.exceptions import AuthConfigurationError
from mcp_session_transport.sse import DEFAULT_BUFFER_SIZE, DEFAULT_HEARTBEAT_INTERVAL
from mcp_session_transport.transport import DEFAULT_MAX_BODY_BYTES
from mcp_session_transport.utilities.logging import LogLevel

DEFAULT_REQUEST_TIMEOUT = 60.0


class TransportSettings(BaseSettings):
    """Session transport settings.

    All settings can be configured via environment variables with the prefix MCP_.
    For example, MCP_AUTH_REQUIRED=true together with MCP_API_KEY=secret turns on
    API key authentication.
    """

    model_config = SettingsConfigDict(
        env_prefix="MCP_",
        env_file=".env",
        extra="ignore",
    )

    # Auth settings
    auth_required: bool = False
    api_key: SecretStr | None = None
    auth_header_name: str = DEFAULT_AUTH_HEADER

    # Transport settings
    heartbeat_interval: float = Field(DEFAULT_HEARTBEAT_INTERVAL, gt=0)
    request_timeout: Annotated[float, Field(gt=0)] | None = DEFAULT_REQUEST_TIMEOUT
    """Seconds to wait for a handler to answer a request; None waits forever."""

    max_body_bytes: Annotated[int, Field(gt=0)] | None = DEFAULT_MAX_BODY_BYTES
    sse_buffer_size: int = Field(DEFAULT_BUFFER_SIZE, gt=0)

    # HTTP settings
    host: str = "127.0.0.1"
    port: int = 8000
    path: str = "/"

    log_level: LogLevel = "INFO"

    @model_validator(mode="after")
    def _check_auth(self) -> TransportSettings:
        if self.auth_required and (self.api_key is None or not self.api_key.get_secret_value()):
            raise AuthConfigurationError("MCP_API_KEY must be set when MCP_AUTH_REQUIRED is enabled")
        return self

    @property
    def auth(self) -> AuthConfig:
        return AuthConfig(
            required=self.auth_required,
            api_key=self.api_key,
            header_name=self.auth_header_name,
        )
