"""Lazily resolved attribute tree: paths, nodes, cache and expansion state.

The resolver and refresh orchestrator sit on top of the evaluator and are
imported from their own modules.
"""

from flaketree.tree.cache import CacheEntry, NodeCache
from flaketree.tree.events import (
    EventBus,
    NodeUpdated,
    RefreshCompleted,
    StatusChanged,
    StatusLevel,
    TreeEvent,
    TreeReset,
)
from flaketree.tree.expansion import ExpansionTracker
from flaketree.tree.models import Node, NodeKind, Resolved
from flaketree.tree.paths import AttrPath, EvaluatorExpression, parse, serialize
from flaketree.tree.search import PathFilter, SearchIndex

__all__ = [
    "AttrPath",
    "CacheEntry",
    "EvaluatorExpression",
    "EventBus",
    "ExpansionTracker",
    "Node",
    "NodeCache",
    "NodeKind",
    "NodeUpdated",
    "PathFilter",
    "RefreshCompleted",
    "Resolved",
    "SearchIndex",
    "StatusChanged",
    "StatusLevel",
    "TreeEvent",
    "TreeReset",
    "parse",
    "serialize",
]
