"""Pydantic configuration models with env var support.

Configuration Hierarchy (highest to lowest precedence):
1. Direct kwargs to load_config()
2. Environment variables (FLAKETREE__SECTION__KEY)
3. Repo YAML (<flake>/.flaketree.yaml)
4. Global YAML (~/.config/flaketree/config.yaml)
5. Built-in defaults (this file)

Environment Variable Format:
    FLAKETREE__<SECTION>__<KEY>=<VALUE>

Examples:
    FLAKETREE__LOGGING__LEVEL=DEBUG
    FLAKETREE__EXPLORER__ROOT_PATH=packages.x86_64-linux
    FLAKETREE__EXPLORER__DEBOUNCE_MS=250
    FLAKETREE__EVALUATOR__TIMEOUT_SEC=60
"""

import getpass
import socket
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field, field_validator

LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]

DEFAULT_ROOT_PATH = "nixosConfigurations.${hostname}.config"

DEFAULT_PREFETCH_PATHS = [
    "programs",
    "services",
    "environment",
    "system",
    "users",
    "nix",
    "networking",
    "boot",
    "hardware",
    "security",
]


class LogOutputConfig(BaseModel):
    """Single logging output configuration."""

    format: Literal["json", "console"] = "console"
    destination: str = "stderr"  # stderr, stdout, or absolute file path
    level: LogLevel | None = None  # Inherits from parent if None

    @field_validator("destination")
    @classmethod
    def validate_destination(cls, v: str) -> str:
        if v in ("stderr", "stdout"):
            return v
        path = Path(v).expanduser()
        if not path.is_absolute():
            raise ValueError(f"File destination must be absolute path: {v}")
        return str(path)


class LoggingConfig(BaseModel):
    """Logging configuration.

    Env vars:
        FLAKETREE__LOGGING__LEVEL: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """

    level: LogLevel = Field(
        default="WARNING",
        description="Root log level. INFO logs every evaluator invocation.",
    )
    outputs: list[LogOutputConfig] = Field(default_factory=lambda: [LogOutputConfig()])


class ExplorerConfig(BaseModel):
    """What to explore and when to refresh it.

    Env vars:
        FLAKETREE__EXPLORER__ROOT_PATH: Attribute path shown as the tree root
        FLAKETREE__EXPLORER__DEBOUNCE_MS: Change debounce window
    """

    root_path: str = Field(
        default=DEFAULT_ROOT_PATH,
        description="Attribute path used as the tree root. Empty shows all flake outputs. "
        "${hostname} and ${user} are substituted.",
    )
    prefetch_paths: list[str] = Field(
        default_factory=lambda: list(DEFAULT_PREFETCH_PATHS),
        description="Subpaths of the root warmed in the background after a full refresh.",
    )
    debounce_ms: int = Field(
        default=500,
        description="Quiet window before a file change triggers a refresh. "
        "Lower values may re-evaluate repeatedly during rapid edits.",
    )
    watch_patterns: list[str] = Field(
        default_factory=lambda: ["flake.nix", "flake.lock", "**/*.nix"],
        description="Glob patterns, relative to the flake directory, that trigger a refresh.",
    )

    @field_validator("debounce_ms")
    @classmethod
    def validate_debounce(cls, v: int) -> int:
        if v < 0:
            raise ValueError(f"debounce_ms must be >= 0, got {v}")
        return v

    def resolved_root_path(self) -> str:
        """Root path with ${hostname} and ${user} placeholders substituted."""
        return substitute_placeholders(self.root_path)


class EvaluatorConfig(BaseModel):
    """External evaluator invocation.

    Env vars:
        FLAKETREE__EVALUATOR__EXECUTABLE: Evaluator binary (default: nix)
        FLAKETREE__EVALUATOR__TIMEOUT_SEC: Hard timeout per query
    """

    executable: str = Field(
        default="nix",
        description="Evaluator binary, looked up on PATH.",
    )
    extra_args: list[str] = Field(
        default_factory=lambda: ["--offline"],
        description="Arguments appended to every query, before the subcommand.",
    )
    experimental_features: list[str] = Field(
        default_factory=lambda: ["nix-command", "flakes"],
        description="Passed as --extra-experimental-features. Empty disables the flag.",
    )
    timeout_sec: float = Field(
        default=30.0,
        description="Hard timeout per query. The process is terminated on expiry.",
    )
    terminate_grace_sec: float = Field(
        default=2.0,
        description="Wait after SIGTERM before the process is killed.",
    )

    @field_validator("timeout_sec")
    @classmethod
    def validate_timeout(cls, v: float) -> float:
        if v <= 0:
            raise ValueError(f"timeout_sec must be positive, got {v}")
        return v


class CacheConfig(BaseModel):
    """Node cache configuration.

    Env vars:
        FLAKETREE__CACHE__MAX_AGE_SEC: Safety-net TTL for cached entries
    """

    max_age_sec: float = Field(
        default=60.0,
        description="Entries older than this are re-evaluated on access. "
        "Change notifications remain the primary invalidation signal.",
    )


class WatcherConfig(BaseModel):
    """File watcher configuration.

    Env vars:
        FLAKETREE__WATCHER__POLL_INTERVAL_SEC: Polling interval on cross-filesystem mounts
    """

    poll_interval_sec: float = Field(
        default=1.0,
        description="Polling interval for cross-filesystem mounts (WSL /mnt/*).",
    )
    max_debounce_wait_sec: float = Field(
        default=2.0,
        description="Maximum delay before a burst of changes is flushed.",
    )
    stop_timeout_sec: float = Field(
        default=5.0,
        description="Shutdown timeout for the watcher and in-flight queries.",
    )


class FlakeTreeConfig(BaseModel):
    """Root configuration for flaketree.

    All settings can be configured via:
    1. Environment variables: FLAKETREE__SECTION__KEY
    2. YAML config files (repo or global)
    3. Direct kwargs to load_config()
    """

    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    explorer: ExplorerConfig = Field(default_factory=ExplorerConfig)
    evaluator: EvaluatorConfig = Field(default_factory=EvaluatorConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    watcher: WatcherConfig = Field(default_factory=WatcherConfig)


def substitute_placeholders(
    template: str,
    *,
    hostname: str | None = None,
    user: str | None = None,
) -> str:
    """Replace ${hostname} and ${user} in a configured path."""
    if "${hostname}" in template:
        template = template.replace("${hostname}", hostname or socket.gethostname())
    if "${user}" in template:
        template = template.replace("${user}", user or getpass.getuser())
    return template
