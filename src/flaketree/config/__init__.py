"""Config module exports."""

from flaketree.config.loader import FlakeTreeSettings, load_config
from flaketree.config.models import (
    CacheConfig,
    EvaluatorConfig,
    ExplorerConfig,
    FlakeTreeConfig,
    LoggingConfig,
    WatcherConfig,
)

__all__ = [
    "load_config",
    "FlakeTreeConfig",
    "FlakeTreeSettings",
    "CacheConfig",
    "EvaluatorConfig",
    "ExplorerConfig",
    "LoggingConfig",
    "WatcherConfig",
]
