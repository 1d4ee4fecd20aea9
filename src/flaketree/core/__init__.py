"""Core module exports."""

from flaketree.core.errors import (
    ConfigError,
    ErrorCode,
    EvaluatorUnavailableError,
    FlakeTreeError,
    MalformedPathError,
)
from flaketree.core.logging import (
    clear_refresh_id,
    configure_logging,
    get_logger,
    get_refresh_id,
    set_refresh_id,
)
from flaketree.core.progress import pluralize, spinner, status

__all__ = [
    # Errors
    "ConfigError",
    "ErrorCode",
    "EvaluatorUnavailableError",
    "FlakeTreeError",
    "MalformedPathError",
    # Logging
    "clear_refresh_id",
    "configure_logging",
    "get_logger",
    "get_refresh_id",
    "set_refresh_id",
    # Progress
    "pluralize",
    "spinner",
    "status",
]
