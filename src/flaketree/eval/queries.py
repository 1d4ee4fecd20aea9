"""Nix evaluator queries, one method per evaluator capability.

Every per-path query goes through ``to_evaluator_expression`` so paths
with list indices are evaluated as ``.#<base> --apply <accessor>`` and the
transform is composed on top of the accessor.
"""

from __future__ import annotations

from pathlib import Path

from flaketree.eval.engine import QueryEngine
from flaketree.eval.models import (
    AttrOp,
    AttrQuery,
    DerivationQuery,
    ListElementsQuery,
    QueryKey,
    QueryResult,
    QuerySpec,
)
from flaketree.tree.paths import AttrPath, compose_apply, flake_reference, to_evaluator_expression

_IS_DRV = '((x.type or null) == "derivation" || (x ? drvPath))'

ATTR_INFO_EXPR = f"""x: let
  t = builtins.typeOf x;
  isDrv = t == "set" && {_IS_DRV};
in {{
  type = t;
  isDrv = isDrv;
}} // (if t == "set" && !isDrv then {{
  attrNames = builtins.attrNames x;
}} else {{}}) // (if t == "list" then {{
  listLength = builtins.length x;
}} else {{}})"""

ATTR_NAMES_EXPR = "x: builtins.attrNames x"

_ELEMENT_META = (
    "{ index = i; "
    "name = e.name or e.pname or (toString i); "
    'isDrv = builtins.isAttrs e && ((e.type or null) == "derivation" || (e ? drvPath)); }'
)

LIST_ELEMENTS_EXPR = (
    f"xs: builtins.genList (i: let e = builtins.elemAt xs i; in {_ELEMENT_META}) "
    "(builtins.length xs)"
)

DRV_PATH_EXPR = "x: x.drvPath"


def list_element_expr(index: int) -> str:
    return f"xs: let i = {index}; e = builtins.elemAt xs i; in {_ELEMENT_META}"


class NixQueries:
    """Builds evaluator invocations for a flake and runs them on a ``QueryEngine``."""

    def __init__(self, engine: QueryEngine, flake_dir: Path) -> None:
        self.engine = engine
        self.flake_dir = flake_dir

    def _spec(self, *args: str) -> QuerySpec:
        return QuerySpec(args=tuple(args), cwd=self.flake_dir)

    def eval_args(
        self, path: AttrPath, transform: str | None = None, *, raw: bool = False
    ) -> list[str]:
        """``eval`` arguments for ``path`` with an optional value transform."""
        expression = to_evaluator_expression(path)
        apply = compose_apply(expression.accessor, transform)
        args = ["eval", "--raw" if raw else "--json", flake_reference(expression.base)]
        if apply is not None:
            args += ["--apply", apply]
        return args

    async def _eval(
        self,
        key: QueryKey,
        path: AttrPath,
        transform: str | None = None,
        *,
        raw: bool = False,
        debounce_ms: int = 0,
    ) -> QueryResult:
        spec = self._spec(*self.eval_args(path, transform, raw=raw))
        return await self.engine.execute(key, spec, debounce_ms=debounce_ms)

    async def flake_outputs(self, debounce_ms: int = 0) -> QueryResult:
        """Top-level outputs via ``nix flake show --json``."""
        key = AttrQuery(AttrOp.OUTPUTS, AttrPath.root())
        spec = self._spec("flake", "show", "--json", ".")
        return await self.engine.execute(key, spec, debounce_ms=debounce_ms)

    async def attr_info(self, path: AttrPath, debounce_ms: int = 0) -> QueryResult:
        """Type, derivation flag and attrNames/listLength in one round trip."""
        return await self._eval(
            AttrQuery(AttrOp.INFO, path), path, ATTR_INFO_EXPR, debounce_ms=debounce_ms
        )

    async def attr_names(self, path: AttrPath) -> QueryResult:
        return await self._eval(AttrQuery(AttrOp.NAMES, path), path, ATTR_NAMES_EXPR)

    async def value(self, path: AttrPath, debounce_ms: int = 0) -> QueryResult:
        return await self._eval(AttrQuery(AttrOp.VALUE, path), path, debounce_ms=debounce_ms)

    async def list_elements(self, path: AttrPath, debounce_ms: int = 0) -> QueryResult:
        """Name and derivation flag for every element of the list, in one call."""
        return await self._eval(
            ListElementsQuery(path), path, LIST_ELEMENTS_EXPR, debounce_ms=debounce_ms
        )

    async def list_element(self, path: AttrPath, index: int) -> QueryResult:
        return await self._eval(ListElementsQuery(path, index), path, list_element_expr(index))

    async def drv_path(self, path: AttrPath) -> QueryResult:
        """Store path of the derivation at ``path`` (``/nix/store/...drv``)."""
        return await self._eval(AttrQuery(AttrOp.DRV_PATH, path), path, DRV_PATH_EXPR, raw=True)

    async def derivation_show(self, drv_path: str) -> QueryResult:
        """Full build metadata via ``nix derivation show``."""
        spec = self._spec("derivation", "show", drv_path)
        return await self.engine.execute(DerivationQuery(drv_path), spec)
