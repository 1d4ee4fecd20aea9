"""Node and payload types for the lazily resolved tree."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any

from flaketree.config.constants import SCALAR_DESCRIPTION_MAX
from flaketree.tree.paths import AttrPath


class NodeKind(Enum):
    """What a node turned out to be once evaluated."""

    NAMESPACE = "namespace"
    COLLECTION = "collection"
    COLLECTION_ELEMENT = "collection_element"
    DERIVED_ARTIFACT = "derived_artifact"
    SCALAR = "scalar"
    UNRESOLVED = "unresolved"
    FAILED = "failed"

    @property
    def is_success(self) -> bool:
        return self not in (NodeKind.UNRESOLVED, NodeKind.FAILED)


@dataclass(frozen=True, slots=True)
class Node:
    """A single row in the tree.

    ``kind`` is what the parent's listing knows about the child. Namespace
    children start out as NAMESPACE and may turn out to be scalars or
    collections once they are themselves resolved.
    """

    path: AttrPath
    label: str
    kind: NodeKind
    expandable: bool = True
    list_index: int | None = None
    artifact: bool = False
    error: str | None = None
    description: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "path": str(self.path),
            "label": self.label,
            "kind": self.kind.value,
            "expandable": self.expandable,
            "list_index": self.list_index,
            "artifact": self.artifact,
            "error": self.error,
            "description": self.description,
        }


@dataclass(frozen=True, slots=True)
class Resolved:
    """Cached evaluation result for one path."""

    kind: NodeKind
    children: tuple[Node, ...] = ()
    value: Any = None
    description: str | None = None


def failed_node(path: AttrPath, message: str) -> Node:
    return Node(
        path=path,
        label="Error",
        kind=NodeKind.FAILED,
        expandable=False,
        error=message,
        description="error",
    )


def loading_node(path: AttrPath) -> Node:
    return Node(
        path=path,
        label="Loading...",
        kind=NodeKind.UNRESOLVED,
        expandable=False,
    )


def describe_value(value: Any) -> str:
    """Short one-line rendering of a JSON-like value."""
    if isinstance(value, str):
        if len(value) > SCALAR_DESCRIPTION_MAX:
            value = value[: SCALAR_DESCRIPTION_MAX - 3] + "..."
        return f'"{value}"'
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return "null"
    if isinstance(value, list):
        return f"[{len(value)} items]"
    if isinstance(value, dict):
        return f"{{ {len(value)} attrs }}"
    return str(value)
