"""flaketree error types with typed error codes.

Error code ranges:
- 2xxx: Config
- 3xxx: Path
- 4xxx: Evaluator

Evaluator failures are not raised. They travel as ``EvalError`` values
(see ``flaketree.eval.models``) and are folded into Failed nodes by the
resolver. The exceptions below cover bad input, configuration, and a flake
directory the evaluator cannot work in at all.
"""

from dataclasses import dataclass, field
from enum import IntEnum
from pathlib import Path
from typing import Any


class ErrorCode(IntEnum):
    """Typed error codes for programmatic handling."""

    # Config (2xxx)
    CONFIG_PARSE_ERROR = 2001
    CONFIG_INVALID_VALUE = 2002

    # Path (3xxx)
    PATH_MALFORMED = 3001

    # Evaluator (4xxx)
    EVALUATOR_UNAVAILABLE = 4001


@dataclass(frozen=True, slots=True)
class FlakeTreeError(Exception):
    """Base error with structured context."""

    code: ErrorCode
    message: str
    retryable: bool = False
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def error_name(self) -> str:
        """String identifier for logging (e.g., 'PATH_MALFORMED')."""
        return self.code.name

    def to_dict(self) -> dict[str, Any]:
        """Serialize for JSON output."""
        return {
            "code": self.code.value,
            "error": self.error_name,
            "message": self.message,
            "retryable": self.retryable,
            "details": self.details,
        }

    def __str__(self) -> str:
        return f"[{self.code.value}] {self.error_name}: {self.message}"


class ConfigError(FlakeTreeError):
    """Configuration-related errors."""

    @classmethod
    def parse_error(cls, path: str, reason: str) -> "ConfigError":
        return cls(
            code=ErrorCode.CONFIG_PARSE_ERROR,
            message=f"Failed to parse config at {path}: {reason}",
            details={"path": path, "reason": reason},
        )

    @classmethod
    def invalid_value(cls, field: str, value: Any, reason: str) -> "ConfigError":
        return cls(
            code=ErrorCode.CONFIG_INVALID_VALUE,
            message=f"Invalid value for '{field}': {reason}",
            details={"field": field, "value": str(value), "reason": reason},
        )


class MalformedPathError(FlakeTreeError):
    """An attribute path that cannot be parsed. Never retried."""

    @classmethod
    def at(cls, display: str, position: int, reason: str) -> "MalformedPathError":
        return cls(
            code=ErrorCode.PATH_MALFORMED,
            message=f"Malformed attribute path {display!r} at {position}: {reason}",
            details={"path": display, "position": position, "reason": reason},
        )


class EvaluatorUnavailableError(FlakeTreeError):
    """The flake directory cannot be evaluated until it is reconfigured."""

    @classmethod
    def flake_not_found(cls, flake_dir: Path, flake_file: str) -> "EvaluatorUnavailableError":
        return cls(
            code=ErrorCode.EVALUATOR_UNAVAILABLE,
            message=f"No {flake_file} found in {flake_dir}",
            retryable=True,
            details={"flake_dir": str(flake_dir)},
        )
