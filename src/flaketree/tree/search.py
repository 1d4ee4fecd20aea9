"""Filtering of fetched children and autocomplete over known paths.

Paths are compared relative to the configured root, so with root
``nixosConfigurations.host.config`` the filter ``programs.git`` matches the
node at ``nixosConfigurations.host.config.programs.git``.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field

from flaketree.config.constants import SEARCH_SUGGESTIONS_MAX, SEARCH_TOP_LEVEL_MAX
from flaketree.tree.models import Node
from flaketree.tree.paths import AttrPath, serialize


@dataclass(frozen=True)
class PathFilter:
    """Keeps a node when its root-relative path is the filter, leads to it,
    lies below it, or when label and filter contain one another."""

    text: str
    root: AttrPath = field(default_factory=AttrPath.root)

    def __post_init__(self) -> None:
        object.__setattr__(self, "text", self.text.strip())

    def __bool__(self) -> bool:
        return bool(self.text)

    def matches(self, node: Node) -> bool:
        if not self.text:
            return True
        needle = self.text.lower()
        relative = serialize(node.path.relative_to(self.root)).lower()
        label = node.label.lower()

        if relative == needle:
            return True
        # Ancestor of the filter: "programs" for "programs.git"
        if needle.startswith(relative + "."):
            return True
        # Descendant of the filter, on a segment boundary
        if relative.startswith(needle + "."):
            return True
        return bool(label) and (needle in label or label in needle)

    def apply(self, nodes: list[Node]) -> list[Node]:
        if not self.text:
            return nodes
        return [n for n in nodes if self.matches(n)]


def _fuzzy(query: str, target: str) -> bool:
    """True when the characters of ``query`` appear in order in ``target``."""
    it = iter(target)
    return all(ch in it for ch in query)


class SearchIndex:
    """Every path seen so far, relative to the root, for autocomplete."""

    def __init__(self, root: AttrPath | None = None) -> None:
        self._root = root or AttrPath.root()
        self._paths: set[str] = set()
        self._tree: dict[str, set[str]] = {}
        self._lock = threading.Lock()

    @property
    def root(self) -> AttrPath:
        return self._root

    def add(self, path: AttrPath) -> bool:
        """Index ``path``. Returns False for the root itself or already-known paths."""
        relative = path.relative_to(self._root)
        if relative.is_root:
            return False
        key = serialize(relative)
        with self._lock:
            if key in self._paths:
                return False
            self._paths.add(key)
            current = AttrPath.root()
            for segment in relative.segments:
                parent_key = serialize(current)
                current = AttrPath((*current.segments, segment))
                self._tree.setdefault(parent_key, set()).add(serialize(current))
        return True

    def clear(self, root: AttrPath | None = None) -> None:
        with self._lock:
            self._paths.clear()
            self._tree.clear()
            if root is not None:
                self._root = root

    def children_of(self, relative: str) -> list[str]:
        with self._lock:
            return sorted(self._tree.get(relative, ()))

    def suggest(self, query: str, limit: int = SEARCH_SUGGESTIONS_MAX) -> list[str]:
        """Ranked root-relative paths for a partially typed query."""
        if not query:
            return self.children_of("")[: min(limit, SEARCH_TOP_LEVEL_MAX)]

        if query.endswith("."):
            return self.children_of(query[:-1])[:limit]

        lowered = query.lower()
        last_dot = query.rfind(".")
        parent_key = query[:last_dot] if last_dot > 0 else ""
        term = query[last_dot + 1 :].lower() if last_dot > 0 else lowered

        scores: dict[str, int] = {}
        with self._lock:
            siblings = set(self._tree.get(parent_key, ()))
            known = set(self._paths)

        for path in siblings:
            child = path.rsplit(".", 1)[-1].lower()
            if child.startswith(term):
                scores[path] = 10
            elif term in child:
                scores[path] = 5

        for path in known:
            if path in scores:
                continue
            last = path.rsplit(".", 1)[-1].lower()
            if last.startswith(term):
                scores[path] = 3
            elif lowered in path.lower():
                scores[path] = 2
            elif _fuzzy(lowered, last):
                scores[path] = 1

        ranked = sorted(scores.items(), key=lambda item: (-item[1], item[0]))
        return [path for path, _ in ranked[:limit]]

    def __len__(self) -> int:
        with self._lock:
            return len(self._paths)
