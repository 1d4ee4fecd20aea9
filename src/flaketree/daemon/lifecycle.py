"""Explorer lifecycle management."""

from __future__ import annotations

import asyncio
import contextlib
from dataclasses import dataclass, field
from pathlib import Path

import structlog

from flaketree.config.models import FlakeTreeConfig
from flaketree.core.errors import ConfigError, MalformedPathError
from flaketree.daemon.watcher import FileWatcher
from flaketree.eval.engine import QueryEngine
from flaketree.eval.models import QueryResult
from flaketree.eval.queries import NixQueries
from flaketree.tree.cache import NodeCache
from flaketree.tree.events import EventBus
from flaketree.tree.expansion import ExpansionTracker
from flaketree.tree.models import Node
from flaketree.tree.paths import AttrPath, parse
from flaketree.tree.refresh import RefreshOrchestrator, RefreshStats
from flaketree.tree.resolver import TreeResolver
from flaketree.tree.search import PathFilter, SearchIndex

logger = structlog.get_logger()


def _parse_setting(name: str, value: str) -> AttrPath:
    try:
        return parse(value) if value else AttrPath.root()
    except MalformedPathError as e:
        raise ConfigError.invalid_value(name, value, e.message) from e


def resolve_root(config: FlakeTreeConfig) -> AttrPath:
    """Configured tree root with placeholders substituted."""
    return _parse_setting("explorer.root_path", config.explorer.resolved_root_path())


def resolve_prefetch_paths(config: FlakeTreeConfig) -> list[AttrPath]:
    return [_parse_setting("explorer.prefetch_paths", p) for p in config.explorer.prefetch_paths]


@dataclass
class ExplorerController:
    """
    Owns every explorer service for one flake directory.

    Components:
    - QueryEngine / NixQueries: evaluator subprocesses
    - NodeCache, ExpansionTracker, SearchIndex: tree state
    - TreeResolver: cache-or-evaluate read path
    - RefreshOrchestrator: smart and full refresh
    - FileWatcher: flake source changes schedule a smart refresh
    """

    flake_dir: Path
    config: FlakeTreeConfig = field(default_factory=FlakeTreeConfig)

    engine: QueryEngine = field(init=False)
    queries: NixQueries = field(init=False)
    cache: NodeCache = field(init=False)
    tracker: ExpansionTracker = field(init=False)
    search_index: SearchIndex = field(init=False)
    events: EventBus = field(init=False)
    resolver: TreeResolver = field(init=False)
    orchestrator: RefreshOrchestrator = field(init=False)
    watcher: FileWatcher = field(init=False)
    _refresh_task: asyncio.Task[RefreshStats] | None = field(default=None, init=False)
    _refresh_pending: bool = field(default=False, init=False)
    _shutdown_event: asyncio.Event = field(default_factory=asyncio.Event, init=False)

    def __post_init__(self) -> None:
        self.flake_dir = self.flake_dir.expanduser().resolve()
        root = resolve_root(self.config)

        self.engine = QueryEngine.from_config(self.config.evaluator)
        self.queries = NixQueries(self.engine, self.flake_dir)
        self.cache = NodeCache(max_age=self.config.cache.max_age_sec)
        self.tracker = ExpansionTracker(self.cache, root)
        self.search_index = SearchIndex(root)
        self.events = EventBus()
        self.resolver = TreeResolver(
            queries=self.queries,
            cache=self.cache,
            events=self.events,
            search_index=self.search_index,
            root=root,
        )
        self.orchestrator = RefreshOrchestrator(
            engine=self.engine,
            cache=self.cache,
            tracker=self.tracker,
            resolver=self.resolver,
            events=self.events,
            search_index=self.search_index,
            prefetch_paths=resolve_prefetch_paths(self.config),
            debounce_ms=self.config.explorer.debounce_ms,
        )
        self.watcher = self._make_watcher()

    def _make_watcher(self) -> FileWatcher:
        return FileWatcher(
            flake_dir=self.flake_dir,
            on_change=self._on_sources_changed,
            patterns=self.config.explorer.watch_patterns,
            poll_interval=self.config.watcher.poll_interval_sec,
            debounce_window=self.config.explorer.debounce_ms / 1000,
            max_debounce_wait=self.config.watcher.max_debounce_wait_sec,
        )

    @property
    def root(self) -> AttrPath:
        return self.resolver.root

    async def start(self, *, watch: bool = True) -> RefreshStats:
        """Full refresh, then (optionally) start watching the flake sources."""
        logger.info("explorer_starting", flake_dir=str(self.flake_dir), root=str(self.root))
        stats = await self.orchestrator.full_refresh()
        if watch:
            await self.watcher.start()
        logger.info("explorer_started", warmed=len(stats.refreshed))
        return stats

    async def stop(self) -> None:
        """Stop the watcher and cancel every in-flight query."""
        logger.info("explorer_stopping")
        stop_timeout = self.config.watcher.stop_timeout_sec
        try:
            async with asyncio.timeout(stop_timeout):
                await self.watcher.stop()
                await self._cancel_refresh()
                self.engine.cancel_all()
        except TimeoutError:
            logger.warning(
                "explorer_stop_timeout",
                message=f"Shutdown timed out after {stop_timeout}s",
            )
        self._shutdown_event.set()
        logger.info("explorer_stopped")

    def wait_for_shutdown(self) -> asyncio.Event:
        """Get the shutdown event for external coordination."""
        return self._shutdown_event

    async def reconfigure(self, config: FlakeTreeConfig) -> RefreshStats:
        """Apply a new configuration and rebuild the tree from scratch."""
        root = resolve_root(config)
        prefetch = resolve_prefetch_paths(config)
        was_watching = self.watcher.running
        await self.watcher.stop()
        await self._cancel_refresh()

        self.config = config
        self.engine.executable = config.evaluator.executable
        self.engine.extra_args = list(config.evaluator.extra_args)
        self.engine.experimental_features = list(config.evaluator.experimental_features)
        self.engine.timeout = config.evaluator.timeout_sec
        self.engine.terminate_grace = config.evaluator.terminate_grace_sec
        self.cache.max_age = config.cache.max_age_sec
        self.resolver.reconfigure(root=root, flake_dir=self.flake_dir)
        self.orchestrator.prefetch_paths = tuple(prefetch)
        self.orchestrator.debounce_ms = config.explorer.debounce_ms
        self.watcher = self._make_watcher()

        logger.info("explorer_reconfigured", root=str(root))
        stats = await self.orchestrator.full_refresh()
        if was_watching:
            await self.watcher.start()
        return stats

    def _on_sources_changed(self) -> None:
        if self._refresh_task is not None and not self._refresh_task.done():
            # The running refresh may have read the sources before this change
            self._refresh_pending = True
            logger.debug("smart_refresh_queued")
            return
        self._refresh_task = asyncio.create_task(self._refresh_loop(), name="smart-refresh")
        self._refresh_task.add_done_callback(self._on_refresh_done)

    async def _refresh_loop(self) -> RefreshStats:
        """Smart refresh, repeated once for any change that arrived meanwhile."""
        while True:
            self._refresh_pending = False
            stats = await self.orchestrator.smart_refresh()
            if not self._refresh_pending:
                return stats
            logger.debug("smart_refresh_trailing")

    def _on_refresh_done(self, task: asyncio.Task[RefreshStats]) -> None:
        if task.cancelled():
            return
        if (exc := task.exception()) is not None:
            logger.error("smart_refresh_failed", error=str(exc))

    async def _cancel_refresh(self) -> None:
        task = self._refresh_task
        self._refresh_task = None
        self._refresh_pending = False
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

    def resolve_path(self, display: str) -> AttrPath:
        """Parse a root-relative display path into an absolute one."""
        return self.root.join(parse(display)) if display else self.root

    async def expand(self, path: AttrPath, *, path_filter: PathFilter | None = None) -> list[Node]:
        """Mark ``path`` (and any unexpanded ancestors below the root) open and list it."""
        if self.root.is_ancestor_of(path):
            current = self.root
            for segment in path.relative_to(self.root).segments:
                current = AttrPath((*current.segments, segment))
                self.tracker.on_expand(current)
        return await self.resolver.children(path, path_filter=path_filter)

    def collapse(self, path: AttrPath) -> list[AttrPath]:
        return self.tracker.on_collapse(path)

    async def refresh(self, path: AttrPath) -> None:
        await self.orchestrator.refresh_node(path)

    async def value(self, path: AttrPath) -> QueryResult:
        return await self.resolver.value(path)

    async def derivation_info(self, path: AttrPath) -> QueryResult:
        return await self.resolver.derivation_info(path)

    async def suggest(self, query: str, limit: int | None = None) -> list[str]:
        """Autocomplete ``query`` after resolving its parent.

        The parent is listed through the resolver only, so completing a path
        never marks it expanded in the tree view.
        """
        parent_text = query.rsplit(".", 1)[0] if "." in query else ""
        with contextlib.suppress(MalformedPathError):
            await self.resolver.children(self.resolve_path(parent_text))
        if limit is None:
            return self.search_index.suggest(query)
        return self.search_index.suggest(query, limit)
