"""Structured logging for the explorer.

Every configured output gets its own stdlib handler, level and renderer;
structlog events are routed through them. Log lines written during a
refresh pass carry that pass's ``refresh_id``, so all the evaluator
queries one refresh issued can be grouped.
"""

from __future__ import annotations

import logging
import sys
from contextvars import ContextVar
from pathlib import Path
from typing import TYPE_CHECKING, Any
from uuid import uuid4

import structlog

if TYPE_CHECKING:
    from flaketree.config.models import LoggingConfig, LogOutputConfig

_refresh_id: ContextVar[str | None] = ContextVar("refresh_id", default=None)

# Chatty third-party loggers
_QUIET = ("watchfiles.main", "asyncio")


def get_refresh_id() -> str | None:
    return _refresh_id.get()


def set_refresh_id(refresh_id: str | None = None) -> str:
    """Start a refresh correlation scope. Generates an id when none is given."""
    rid = refresh_id or uuid4().hex[:12]
    _refresh_id.set(rid)
    return rid


def clear_refresh_id() -> None:
    _refresh_id.set(None)


def _add_refresh_id(
    _logger: structlog.types.WrappedLogger,
    _method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    if rid := get_refresh_id():
        event_dict["refresh_id"] = rid
    return event_dict


_SHARED_PROCESSORS: list[structlog.types.Processor] = [
    structlog.contextvars.merge_contextvars,
    structlog.processors.add_log_level,
    structlog.processors.TimeStamper(fmt="%Y-%m-%d %H:%M:%S", key="timestamp"),
    _add_refresh_id,  # type: ignore[list-item]
]


def _level(name: str) -> int:
    return logging.getLevelNamesMapping().get(name.upper(), logging.INFO)


def _handler(output: LogOutputConfig) -> logging.Handler:
    if output.destination in ("stderr", "stdout"):
        stream = sys.stderr if output.destination == "stderr" else sys.stdout
        handler: logging.Handler = logging.StreamHandler(stream)
        colors = stream.isatty()
    else:
        path = Path(output.destination)
        path.parent.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(path, mode="a")
        colors = False

    renderer: structlog.types.Processor
    if output.format == "json":
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=colors, pad_event_to=0, pad_level=False)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processor=renderer,
            foreign_pre_chain=_SHARED_PROCESSORS,
        )
    )
    return handler


def configure_logging(*, config: LoggingConfig | None = None, level: str = "INFO") -> None:
    """Route structlog through one handler per configured output.

    Without ``config``, logs go to stderr in console format at ``level``.
    An output without its own level inherits the config's.
    """
    from flaketree.config.models import LoggingConfig, LogOutputConfig

    if config is None:
        config = LoggingConfig(level=level, outputs=[LogOutputConfig()])
    root_level = _level(config.level)

    structlog.configure(
        processors=[*_SHARED_PROCESSORS, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        wrapper_class=structlog.make_filtering_bound_logger(root_level),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        # Reconfiguration must reach loggers created at import time
        cache_logger_on_first_use=False,
    )

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.setLevel(root_level)
    for name in _QUIET:
        logging.getLogger(name).setLevel(logging.WARNING)

    for output in config.outputs:
        handler = _handler(output)
        handler.setLevel(_level(output.level or config.level))
        root_logger.addHandler(handler)


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    logger = structlog.get_logger()
    if name:
        logger = logger.bind(logger=name)
    return logger  # type: ignore[no-any-return]
