"""Per-path cache of evaluation results with last-known-good retention.

Each path holds at most one ``CacheEntry``. ``value`` is the latest
successful result and is dropped by ``invalidate`` and by failures;
``last_good`` survives both and is only replaced by a newer success.
Freshness is decided by the refresh orchestrator; ``is_fresh`` against
``max_age`` is a safety net, not the primary invalidation signal.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from dataclasses import dataclass

import structlog

from flaketree.tree.models import NodeKind, Resolved
from flaketree.tree.paths import AttrPath, is_ancestor

logger = structlog.get_logger()

DEFAULT_MAX_AGE_SEC = 60.0


@dataclass
class CacheEntry:
    path: AttrPath
    value: Resolved | None = None
    last_good: Resolved | None = None
    fetched_at: float | None = None
    error: str | None = None

    @property
    def kind(self) -> NodeKind:
        """Current state of the path, independent of last_good."""
        if self.value is not None:
            return self.value.kind
        if self.error is not None:
            return NodeKind.FAILED
        return NodeKind.UNRESOLVED


class NodeCache:
    """Thread-safe map of ``AttrPath`` to ``CacheEntry``.

    Every read-modify-write of an entry happens under one lock, so
    completions arriving from concurrent queries cannot interleave on the
    same path.
    """

    def __init__(
        self,
        max_age: float = DEFAULT_MAX_AGE_SEC,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_age = max_age
        self._clock = clock
        self._entries: dict[AttrPath, CacheEntry] = {}
        self._lock = threading.Lock()

    def get(self, path: AttrPath) -> CacheEntry | None:
        with self._lock:
            entry = self._entries.get(path)
            if entry is None:
                return None
            # Snapshot, callers never see a half-updated entry
            return CacheEntry(
                path=entry.path,
                value=entry.value,
                last_good=entry.last_good,
                fetched_at=entry.fetched_at,
                error=entry.error,
            )

    def put(self, path: AttrPath, value: Resolved) -> Resolved | None:
        """Store a successful result. Returns the previous last-good value."""
        with self._lock:
            entry = self._entries.setdefault(path, CacheEntry(path=path))
            previous = entry.last_good
            entry.value = value
            entry.last_good = value
            entry.error = None
            entry.fetched_at = self._clock()
            return previous

    def record_failure(self, path: AttrPath, message: str) -> None:
        """Mark the path Failed while keeping its last-good value."""
        with self._lock:
            entry = self._entries.setdefault(path, CacheEntry(path=path))
            entry.value = None
            entry.error = message
            entry.fetched_at = self._clock()

    def get_last_good(self, path: AttrPath) -> Resolved | None:
        with self._lock:
            entry = self._entries.get(path)
            return entry.last_good if entry is not None else None

    def invalidate(self, path: AttrPath) -> None:
        """Drop the current value and timestamp, keep last-good."""
        with self._lock:
            entry = self._entries.get(path)
            if entry is None:
                return
            entry.value = None
            entry.error = None
            entry.fetched_at = None

    def evict(self, path: AttrPath, *, descendants: bool = True) -> list[AttrPath]:
        """Remove the entry for ``path`` (and by default every descendant)."""
        with self._lock:
            if descendants:
                doomed = [p for p in self._entries if is_ancestor(path, p)]
            else:
                doomed = [path] if path in self._entries else []
            for p in doomed:
                del self._entries[p]
        if doomed:
            logger.debug("cache_evicted", path=str(path), count=len(doomed))
        return doomed

    def is_fresh(self, path: AttrPath, max_age: float | None = None) -> bool:
        limit = self.max_age if max_age is None else max_age
        with self._lock:
            entry = self._entries.get(path)
            if entry is None or entry.fetched_at is None:
                return False
            return self._clock() - entry.fetched_at <= limit

    def paths(self) -> list[AttrPath]:
        with self._lock:
            return list(self._entries)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __contains__(self, path: object) -> bool:
        with self._lock:
            return path in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
