"""Logging utilities for the session transport."""

import logging
from collections.abc import Mapping
from typing import Any, Literal

from rich.console import Console
from rich.logging import RichHandler

LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]


def get_logger(name: str) -> logging.Logger:
    """Get a logger for the given module name.

    Args:
        name: the name of the logger, usually ``__name__``

    Returns:
        a logger instance
    """
    return logging.getLogger(name)


def configure_logging(level: LogLevel = "INFO") -> None:
    """Configure logging for the server process.

    Args:
        level: the log level to use
    """
    logging.basicConfig(
        level=level,
        format="%(message)s",
        handlers=[RichHandler(console=Console(stderr=True), rich_tracebacks=True)],
    )


def redact_sensitive_data(
    data: Mapping[str, Any] | None,
    sensitive_keys: set[str] | None = None,
) -> Mapping[str, Any] | None:
    """Return a shallow copy with sensitive values replaced by "***".

    Parameters
    ----------
    data:
        Original mapping (typically request headers).  If *None* the
        function simply returns *None*.
    sensitive_keys:
        Optional set of lower-cased keys that should be hidden; defaults to
        the standard credential headers.
    """

    if data is None:
        return None

    sensitive_keys = sensitive_keys or {"authorization", "x-api-key", "cookie"}

    redacted: dict[str, Any] = {}
    for key, value in data.items():
        redacted[key] = "***" if key.lower() in sensitive_keys else value

    return redacted
