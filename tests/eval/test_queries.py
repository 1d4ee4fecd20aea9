"""Tests for Nix query construction."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import pytest

from flaketree.eval.models import (
    AttrOp,
    AttrQuery,
    DerivationQuery,
    ListElementsQuery,
    QueryKey,
    QueryResult,
    QuerySpec,
)
from flaketree.eval.queries import (
    ATTR_INFO_EXPR,
    DRV_PATH_EXPR,
    LIST_ELEMENTS_EXPR,
    NixQueries,
)
from flaketree.tree.paths import AttrPath


class RecordingEngine:
    """Captures execute() calls instead of running anything."""

    def __init__(self) -> None:
        self.calls: list[tuple[QueryKey, QuerySpec, int]] = []

    async def execute(self, key: QueryKey, spec: QuerySpec, debounce_ms: int = 0) -> QueryResult:
        self.calls.append((key, spec, debounce_ms))
        return QueryResult.success(key, None)


@pytest.fixture
def engine() -> RecordingEngine:
    return RecordingEngine()


@pytest.fixture
def queries(engine: Any, tmp_path: Path) -> NixQueries:
    return NixQueries(engine, tmp_path)


class TestEvalArgs:
    def test_given_plain_path_when_eval_args_then_installable_without_apply(
        self, queries: NixQueries
    ) -> None:
        args = queries.eval_args(AttrPath.of("packages", "x86_64-linux", "hello"))
        assert args == ["eval", "--json", ".#packages.x86_64-linux.hello"]

    def test_given_index_path_and_transform_when_eval_args_then_composed_apply(
        self, queries: NixQueries
    ) -> None:
        """The accessor walks into the list before the transform runs."""
        args = queries.eval_args(AttrPath.of("xs", 1), "y: y.name", raw=True)
        assert args == [
            "eval",
            "--raw",
            ".#xs",
            "--apply",
            "x: (y: y.name) ((x: (builtins.elemAt x 1)) x)",
        ]


class TestQueries:
    @pytest.mark.asyncio
    async def test_given_flake_when_flake_outputs_then_flake_show(
        self, queries: NixQueries, engine: RecordingEngine, tmp_path: Path
    ) -> None:
        await queries.flake_outputs(debounce_ms=100)

        key, spec, debounce_ms = engine.calls[0]
        assert key == AttrQuery(AttrOp.OUTPUTS, AttrPath.root())
        assert spec.args == ("flake", "show", "--json", ".")
        assert spec.cwd == tmp_path
        assert debounce_ms == 100

    @pytest.mark.asyncio
    async def test_given_path_when_attr_info_then_info_expression_applied(
        self, queries: NixQueries, engine: RecordingEngine
    ) -> None:
        path = AttrPath.of("programs")
        await queries.attr_info(path)

        key, spec, _ = engine.calls[0]
        assert key == AttrQuery(AttrOp.INFO, path)
        assert spec.args == ("eval", "--json", ".#programs", "--apply", ATTR_INFO_EXPR)

    @pytest.mark.asyncio
    async def test_given_list_when_list_elements_then_single_batched_query(
        self, queries: NixQueries, engine: RecordingEngine
    ) -> None:
        path = AttrPath.of("environment", "systemPackages")
        await queries.list_elements(path)

        key, spec, _ = engine.calls[0]
        assert key == ListElementsQuery(path)
        assert spec.args[-1] == LIST_ELEMENTS_EXPR
        assert len(engine.calls) == 1

    @pytest.mark.asyncio
    async def test_given_element_when_list_element_then_keyed_by_index(
        self, queries: NixQueries, engine: RecordingEngine
    ) -> None:
        path = AttrPath.of("xs")
        await queries.list_element(path, 4)

        key, spec, _ = engine.calls[0]
        assert key == ListElementsQuery(path, 4)
        assert "i = 4;" in spec.args[-1]

    @pytest.mark.asyncio
    async def test_given_package_when_drv_path_then_raw_eval(
        self, queries: NixQueries, engine: RecordingEngine
    ) -> None:
        await queries.drv_path(AttrPath.of("packages", "hello"))

        _, spec, _ = engine.calls[0]
        assert spec.args == ("eval", "--raw", ".#packages.hello", "--apply", DRV_PATH_EXPR)

    @pytest.mark.asyncio
    async def test_given_drv_when_derivation_show_then_derivation_subcommand(
        self, queries: NixQueries, engine: RecordingEngine
    ) -> None:
        await queries.derivation_show("/nix/store/abc-hello.drv")

        key, spec, _ = engine.calls[0]
        assert key == DerivationQuery("/nix/store/abc-hello.drv")
        assert spec.args == ("derivation", "show", "/nix/store/abc-hello.drv")

    def test_given_keys_when_compared_then_ops_are_distinct(self) -> None:
        """Different ops on one path never cancel each other."""
        path = AttrPath.of("a")
        assert AttrQuery(AttrOp.INFO, path) != AttrQuery(AttrOp.VALUE, path)
        assert len({AttrQuery(AttrOp.INFO, path), AttrQuery(AttrOp.INFO, AttrPath.of("a"))}) == 1
