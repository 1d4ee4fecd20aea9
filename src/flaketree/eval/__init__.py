"""Evaluator access: typed queries, the query engine and Nix query builders."""

from flaketree.eval.engine import EngineStatus, QueryEngine
from flaketree.eval.models import (
    AttrOp,
    AttrQuery,
    DerivationQuery,
    EvalError,
    EvalErrorKind,
    ListElementsQuery,
    QueryKey,
    QueryResult,
    QuerySpec,
)
from flaketree.eval.queries import NixQueries

__all__ = [
    "AttrOp",
    "AttrQuery",
    "DerivationQuery",
    "EngineStatus",
    "EvalError",
    "EvalErrorKind",
    "ListElementsQuery",
    "NixQueries",
    "QueryEngine",
    "QueryKey",
    "QueryResult",
    "QuerySpec",
]
