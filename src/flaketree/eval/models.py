"""Typed query keys, invocation specs and results for the evaluator."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

from flaketree.tree.paths import AttrPath


class AttrOp(Enum):
    """Per-path evaluator operations. Each op gets its own cancellation key."""

    OUTPUTS = "outputs"
    INFO = "info"
    NAMES = "names"
    VALUE = "value"
    DRV_PATH = "drv_path"


@dataclass(frozen=True, slots=True)
class AttrQuery:
    op: AttrOp
    path: AttrPath

    def __str__(self) -> str:
        return f"{self.op.value}:{self.path}"


@dataclass(frozen=True, slots=True)
class ListElementsQuery:
    """All elements of a list, or a single one when ``index`` is set."""

    path: AttrPath
    index: int | None = None

    def __str__(self) -> str:
        suffix = "" if self.index is None else f"[{self.index}]"
        return f"list_elements:{self.path}{suffix}"


@dataclass(frozen=True, slots=True)
class DerivationQuery:
    drv_path: str

    def __str__(self) -> str:
        return f"derivation:{self.drv_path}"


QueryKey = AttrQuery | ListElementsQuery | DerivationQuery


@dataclass(frozen=True, slots=True)
class QuerySpec:
    """Evaluator subcommand arguments (without executable or global flags)."""

    args: tuple[str, ...]
    cwd: Path
    timeout: float | None = None


class EvalErrorKind(Enum):
    TIMEOUT = "timeout"
    EVALUATION_FAILED = "evaluation_failed"
    SPAWN_FAILED = "spawn_failed"
    CANCELLED = "cancelled"


@dataclass(frozen=True, slots=True)
class EvalError:
    kind: EvalErrorKind
    message: str

    def __str__(self) -> str:
        return self.message


@dataclass(frozen=True, slots=True)
class QueryResult:
    """Outcome of one query. Exactly one of ``data``/``error`` is meaningful."""

    key: QueryKey
    data: Any = None
    error: EvalError | None = None
    duration_sec: float = 0.0
    command: tuple[str, ...] = field(default=(), compare=False)

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def cancelled(self) -> bool:
        return self.error is not None and self.error.kind is EvalErrorKind.CANCELLED

    @classmethod
    def success(cls, key: QueryKey, data: Any, **kwargs: Any) -> QueryResult:
        return cls(key=key, data=data, **kwargs)

    @classmethod
    def failure(
        cls,
        key: QueryKey,
        kind: EvalErrorKind,
        message: str,
        **kwargs: Any,
    ) -> QueryResult:
        return cls(key=key, error=EvalError(kind=kind, message=message), **kwargs)

    def to_dict(self) -> dict[str, Any]:
        if self.error is not None:
            return {"error": self.error.message, "kind": self.error.kind.value}
        return {"data": self.data}
