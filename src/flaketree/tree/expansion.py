"""Tracks which paths are open in the consuming tree view.

Collapsing a path forgets it and everything below it, and evicts their
cache entries, so memory stays bounded by what is actually visible.
"""

from __future__ import annotations

import threading

import structlog

from flaketree.tree.cache import NodeCache
from flaketree.tree.paths import AttrPath, is_ancestor

logger = structlog.get_logger()


class ExpansionTracker:
    def __init__(self, cache: NodeCache, root: AttrPath | None = None) -> None:
        self._cache = cache
        self._root = root or AttrPath.root()
        self._expanded: set[AttrPath] = set()
        self._lock = threading.Lock()

    @property
    def root(self) -> AttrPath:
        return self._root

    def on_expand(self, path: AttrPath) -> bool:
        """Record ``path`` as open. Returns False if its parent is not tracked."""
        with self._lock:
            if path == self._root:
                return True
            parent = path.parent()
            if not is_ancestor(self._root, path) or (
                parent != self._root and parent not in self._expanded
            ):
                logger.warning("expand_rejected", path=str(path), reason="parent_not_expanded")
                return False
            self._expanded.add(path)
        logger.debug("node_expanded", path=str(path))
        return True

    def on_collapse(self, path: AttrPath) -> list[AttrPath]:
        """Forget ``path`` and its descendants; evict their cache entries.

        Returns the evicted cache paths.
        """
        with self._lock:
            self._expanded = {p for p in self._expanded if not is_ancestor(path, p)}
        evicted = self._cache.evict(path)
        logger.debug("node_collapsed", path=str(path), evicted=len(evicted))
        return evicted

    def is_expanded(self, path: AttrPath) -> bool:
        if path == self._root:
            return True
        with self._lock:
            return path in self._expanded

    def snapshot(self) -> set[AttrPath]:
        """Expanded paths, root included."""
        with self._lock:
            return {self._root, *self._expanded}

    def reset(self, root: AttrPath | None = None) -> None:
        with self._lock:
            self._expanded.clear()
            if root is not None:
                self._root = root

    def __len__(self) -> int:
        with self._lock:
            return len(self._expanded)
