"""Tree resolver: the read path from a tree view down to the evaluator.

``children(path)`` answers from the cache when it can. On a miss it asks the
evaluator for the value's coarse kind in one round trip (type, derivation
flag, and attribute names or list length), then:

- namespace: children are the sorted attribute names
- list: one batched query returns name and derivation flag for every
  element, instead of one query per element
- derivation: a non-expandable leaf; build metadata via ``derivation_info``
- anything else: a scalar, its value fetched for display

Query failures never raise. The path is marked Failed in the cache, an
error status is published, and the last-known-good children are returned
if there are any, otherwise a single Failed node carrying the message.

Every fetch takes a generation for its path. A fetch whose generation is no
longer the newest when its queries come back (a later fetch of the same path
started, or a full refresh superseded everything) leaves the cache alone.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import structlog

from flaketree.config.constants import FLAKE_FILE
from flaketree.core.errors import EvaluatorUnavailableError
from flaketree.core.progress import pluralize
from flaketree.eval.models import EvalErrorKind, QueryResult
from flaketree.eval.queries import NixQueries
from flaketree.tree.cache import NodeCache
from flaketree.tree.events import EventBus, NodeUpdated, StatusLevel
from flaketree.tree.models import (
    Node,
    NodeKind,
    Resolved,
    describe_value,
    failed_node,
    loading_node,
)
from flaketree.tree.paths import AttrPath
from flaketree.tree.search import PathFilter, SearchIndex

logger = structlog.get_logger()


def _malformed(result: QueryResult, what: str) -> QueryResult:
    return QueryResult.failure(
        result.key,
        EvalErrorKind.EVALUATION_FAILED,
        f"Unexpected evaluator output for {what}: {str(result.data)[:200]}",
        duration_sec=result.duration_sec,
    )


class TreeResolver:
    def __init__(
        self,
        queries: NixQueries,
        cache: NodeCache,
        events: EventBus,
        search_index: SearchIndex | None = None,
        root: AttrPath | None = None,
    ) -> None:
        self._queries = queries
        self._cache = cache
        self._events = events
        self._root = root or AttrPath.root()
        self._search = search_index or SearchIndex(self._root)
        self._halted: EvaluatorUnavailableError | None = None
        self._fetch_seq = 0
        self._latest: dict[AttrPath, int] = {}

    @property
    def root(self) -> AttrPath:
        return self._root

    @property
    def flake_dir(self) -> Path:
        return self._queries.flake_dir

    @property
    def halted(self) -> EvaluatorUnavailableError | None:
        """Why queries are halted, or None."""
        return self._halted

    def reconfigure(self, *, root: AttrPath | None = None, flake_dir: Path | None = None) -> None:
        """Apply new settings and lift a fatal halt."""
        if root is not None:
            self._root = root
            self._search.clear(root)
        if flake_dir is not None:
            self._queries.flake_dir = flake_dir
        self._halted = None
        self.supersede_all()

    def supersede_all(self) -> None:
        """Fetches still in flight will not write their results."""
        self._latest.clear()

    def _check_flake(self) -> bool:
        if self._halted is not None:
            return False
        if (self.flake_dir / FLAKE_FILE).is_file():
            return True
        self._halted = EvaluatorUnavailableError.flake_not_found(self.flake_dir, FLAKE_FILE)
        logger.error(
            "flake_not_found", flake_dir=str(self.flake_dir), code=self._halted.code.value
        )
        self._events.status(StatusLevel.ERROR, self._halted.message)
        return False

    def kind_of(self, path: AttrPath) -> NodeKind:
        entry = self._cache.get(path)
        return entry.kind if entry is not None else NodeKind.UNRESOLVED

    async def children(
        self,
        path: AttrPath | None = None,
        *,
        path_filter: PathFilter | None = None,
        debounce_ms: int = 0,
    ) -> list[Node]:
        """Children of ``path`` (default: the root), evaluated on a cache miss."""
        target = self._root if path is None else path
        if not self._check_flake():
            return []

        entry = self._cache.get(target)
        if entry is not None and self._cache.is_fresh(target):
            if entry.value is not None:
                nodes = list(entry.value.children)
            else:
                nodes = self._fallback(target, entry.error or "", entry.last_good)
        else:
            nodes = await self._fetch(target, debounce_ms)

        return path_filter.apply(nodes) if path_filter else nodes

    async def resolve(self, path: AttrPath, debounce_ms: int = 0) -> Resolved | None:
        """Re-evaluate ``path`` regardless of cache state. None on failure."""
        await self._fetch(path, debounce_ms)
        entry = self._cache.get(path)
        return entry.value if entry is not None else None

    async def _fetch(self, path: AttrPath, debounce_ms: int) -> list[Node]:
        self._fetch_seq += 1
        generation = self._fetch_seq
        self._latest[path] = generation
        try:
            result, resolved = await self._evaluate(path, debounce_ms)
        finally:
            current = self._latest.get(path) == generation
            if current:
                del self._latest[path]

        if not current:
            logger.debug("stale_fetch_dropped", path=str(path), generation=generation)
            return self._superseded(path)

        if resolved is not None:
            previous = self._cache.put(path, resolved)
            self._index(path, resolved.children)
            if previous != resolved:
                self._events.publish(NodeUpdated(path))
            logger.debug(
                "node_resolved",
                path=str(path),
                kind=resolved.kind.value,
                children=len(resolved.children),
            )
            return list(resolved.children)

        assert result.error is not None
        if result.error.kind is EvalErrorKind.CANCELLED:
            return self._superseded(path)

        last_good = self._cache.get_last_good(path)
        before = self.kind_of(path)
        self._cache.record_failure(path, result.error.message)
        label = str(path) or "(flake root)"
        self._events.status(
            StatusLevel.ERROR,
            f"Failed to evaluate {label}: {result.error.message}",
            path,
        )
        if before is not NodeKind.FAILED:
            self._events.publish(NodeUpdated(path))
        return self._fallback(path, result.error.message, last_good)

    def _superseded(self, path: AttrPath) -> list[Node]:
        # A newer request for this path owns the cache entry
        last_good = self._cache.get_last_good(path)
        return list(last_good.children) if last_good is not None else [loading_node(path)]

    def _fallback(self, path: AttrPath, message: str, last_good: Resolved | None) -> list[Node]:
        if last_good is not None:
            return list(last_good.children)
        return [failed_node(path, message)]

    def _index(self, path: AttrPath, children: tuple[Node, ...]) -> None:
        self._search.add(path)
        for child in children:
            self._search.add(child.path)

    async def _evaluate(
        self, path: AttrPath, debounce_ms: int
    ) -> tuple[QueryResult, Resolved | None]:
        if path.is_root:
            outputs = await self._queries.flake_outputs(debounce_ms)
            if not outputs.ok:
                return outputs, None
            if not isinstance(outputs.data, dict):
                return _malformed(outputs, "flake outputs"), None
            self._events.status(StatusLevel.SUCCESS, "Flake outputs loaded")
            return outputs, Resolved(
                kind=NodeKind.NAMESPACE,
                children=tuple(self._namespace_child(path, name) for name in sorted(outputs.data)),
            )

        info = await self._queries.attr_info(path, debounce_ms)
        if not info.ok:
            return info, None
        data = info.data
        if not isinstance(data, dict) or "type" not in data:
            return _malformed(info, str(path)), None

        value_type = data["type"]
        if value_type == "set":
            if data.get("isDrv"):
                return info, Resolved(kind=NodeKind.DERIVED_ARTIFACT, description="derivation")
            names = sorted(data.get("attrNames") or [])
            self._events.status(StatusLevel.SUCCESS, f"Loaded {pluralize(len(names), 'attribute')}")
            return info, Resolved(
                kind=NodeKind.NAMESPACE,
                children=tuple(self._namespace_child(path, name) for name in names),
                description=f"{{ {len(names)} attrs }}",
            )

        if value_type == "list":
            return await self._evaluate_collection(path, info, int(data.get("listLength") or 0))

        if value_type == "lambda":
            return info, Resolved(kind=NodeKind.SCALAR, description="<lambda>")

        value = await self._queries.value(path)
        if not value.ok:
            return value, None
        return value, Resolved(
            kind=NodeKind.SCALAR,
            value=value.data,
            description=describe_value(value.data),
        )

    async def _evaluate_collection(
        self, path: AttrPath, info: QueryResult, length: int
    ) -> tuple[QueryResult, Resolved | None]:
        if length == 0:
            return info, Resolved(kind=NodeKind.COLLECTION, description="[0 items]")

        # One batched query for every element
        elements = await self._queries.list_elements(path)
        if not elements.ok:
            return elements, None
        if not isinstance(elements.data, list):
            return _malformed(elements, str(path)), None

        try:
            children = tuple(self._collection_child(path, meta) for meta in elements.data)
        except (KeyError, TypeError, ValueError):
            return _malformed(elements, str(path)), None

        logger.debug("collection_loaded", path=str(path), count=len(children))
        self._events.status(StatusLevel.SUCCESS, f"Loaded {pluralize(len(children), 'list item')}")
        return elements, Resolved(
            kind=NodeKind.COLLECTION,
            children=children,
            description=f"[{len(children)} items]",
        )

    @staticmethod
    def _namespace_child(parent: AttrPath, name: str) -> Node:
        return Node(path=parent.child(name), label=name, kind=NodeKind.NAMESPACE)

    @staticmethod
    def _collection_child(parent: AttrPath, meta: dict[str, Any]) -> Node:
        index = int(meta["index"])
        is_artifact = bool(meta.get("isDrv"))
        name = meta.get("name")
        return Node(
            path=parent.element(index),
            label=str(name) if name not in (None, "") else str(index),
            kind=NodeKind.COLLECTION_ELEMENT,
            # Packages in lists are leaves; inspect them with derivation_info
            expandable=not is_artifact,
            list_index=index,
            artifact=is_artifact,
        )

    async def value(self, path: AttrPath) -> QueryResult:
        """Full JSON value at ``path``."""
        return await self._queries.value(path)

    async def derivation_info(self, path: AttrPath) -> QueryResult:
        """Build metadata of the derived artifact at ``path``."""
        drv = await self._queries.drv_path(path)
        if not drv.ok:
            return drv
        drv_path = str(drv.data).strip()
        if not drv_path:
            return _malformed(drv, f"{path}.drvPath")
        return await self._queries.derivation_show(drv_path)
