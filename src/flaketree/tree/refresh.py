"""Refresh orchestration after the flake sources change.

A smart refresh keeps the tree's shape: everything the view still shows
(the root plus every expanded path) is invalidated and re-fetched, deepest
first, while cached data for collapsed paths is evicted. A full refresh
drops everything and re-warms the prefetch paths.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Iterable
from dataclasses import dataclass

import structlog

from flaketree.core.logging import clear_refresh_id, set_refresh_id
from flaketree.eval.engine import QueryEngine
from flaketree.tree.cache import NodeCache
from flaketree.tree.events import EventBus, RefreshCompleted, StatusLevel, TreeReset
from flaketree.tree.expansion import ExpansionTracker
from flaketree.tree.paths import AttrPath
from flaketree.tree.resolver import TreeResolver
from flaketree.tree.search import SearchIndex

logger = structlog.get_logger()


@dataclass(frozen=True, slots=True)
class RefreshStats:
    refreshed: tuple[AttrPath, ...] = ()
    evicted: tuple[AttrPath, ...] = ()
    duration_sec: float = 0.0


def refresh_order(paths: Iterable[AttrPath]) -> list[AttrPath]:
    """Deepest first; ties broken by display form so order is stable."""
    return sorted(paths, key=lambda p: (-p.depth, str(p)))


class RefreshOrchestrator:
    def __init__(
        self,
        engine: QueryEngine,
        cache: NodeCache,
        tracker: ExpansionTracker,
        resolver: TreeResolver,
        events: EventBus,
        search_index: SearchIndex,
        prefetch_paths: Iterable[AttrPath] = (),
        debounce_ms: int = 0,
    ) -> None:
        self._engine = engine
        self._cache = cache
        self._tracker = tracker
        self._resolver = resolver
        self._events = events
        self._search = search_index
        self.prefetch_paths = tuple(prefetch_paths)
        self.debounce_ms = debounce_ms
        # One refresh at a time
        self._lock = asyncio.Lock()

    async def smart_refresh(self) -> RefreshStats:
        """Re-fetch every visible path, evict the rest of the cache."""
        async with self._lock:
            refresh_id = set_refresh_id()
            start = time.monotonic()
            try:
                visible = self._tracker.snapshot()
                evicted: list[AttrPath] = []
                for path in self._cache.paths():
                    if path not in visible:
                        # Only this entry: expanded descendants keep theirs
                        evicted += self._cache.evict(path, descendants=False)

                order = refresh_order(visible)
                for path in order:
                    self._cache.invalidate(path)

                logger.info(
                    "smart_refresh_started",
                    refresh_id=refresh_id,
                    refreshing=len(order),
                    evicted=len(evicted),
                )
                # Tasks are created deepest first so their queries start in that order
                tasks = [
                    asyncio.create_task(self._resolver.children(path), name=f"refresh:{path}")
                    for path in order
                ]
                await asyncio.gather(*tasks)

                stats = RefreshStats(
                    refreshed=tuple(order),
                    evicted=tuple(evicted),
                    duration_sec=time.monotonic() - start,
                )
                logger.info(
                    "smart_refresh_completed",
                    refresh_id=refresh_id,
                    refreshed=len(stats.refreshed),
                    evicted=len(stats.evicted),
                    duration_ms=round(stats.duration_sec * 1000),
                )
                self._events.publish(
                    RefreshCompleted(refreshed=stats.refreshed, evicted=stats.evicted)
                )
                return stats
            finally:
                clear_refresh_id()

    async def full_refresh(self) -> RefreshStats:
        """Drop every cached value and expansion, then warm the prefetch paths."""
        async with self._lock:
            refresh_id = set_refresh_id()
            start = time.monotonic()
            try:
                cancelled = self._engine.cancel_all()
                # Resolver calls between two queries must not write into the new cache
                self._resolver.supersede_all()
                evicted = tuple(self._cache.paths())
                self._cache.clear()
                self._tracker.reset(self._resolver.root)
                self._search.clear(self._resolver.root)
                self._events.publish(TreeReset())
                logger.info(
                    "full_refresh_started",
                    refresh_id=refresh_id,
                    cancelled=cancelled,
                    evicted=len(evicted),
                )

                warmed = await self.prefetch()
                stats = RefreshStats(
                    refreshed=tuple(warmed),
                    evicted=evicted,
                    duration_sec=time.monotonic() - start,
                )
                logger.info(
                    "full_refresh_completed",
                    refresh_id=refresh_id,
                    warmed=len(warmed),
                    duration_ms=round(stats.duration_sec * 1000),
                )
                self._events.publish(
                    RefreshCompleted(refreshed=stats.refreshed, evicted=stats.evicted)
                )
                return stats
            finally:
                clear_refresh_id()

    async def prefetch(self) -> list[AttrPath]:
        """Resolve the root and each prefetch path concurrently."""
        root = self._resolver.root
        paths = [root]
        # Prefetch paths are relative to a configured root, not the flake itself
        if not root.is_root:
            paths += [root.join(p) for p in self.prefetch_paths]
        results = await asyncio.gather(
            *(self._resolver.children(path) for path in paths),
            return_exceptions=True,
        )
        for path, result in zip(paths, results, strict=True):
            if isinstance(result, BaseException):
                logger.warning("prefetch_failed", path=str(path), error=str(result))
        return paths

    async def refresh_node(self, path: AttrPath) -> None:
        """User-requested re-evaluation of one path, debounced."""
        self._cache.invalidate(path)
        self._events.status(StatusLevel.INFO, f"Refreshing {str(path) or '(flake root)'}", path)
        await self._resolver.children(path, debounce_ms=self.debounce_ms)
