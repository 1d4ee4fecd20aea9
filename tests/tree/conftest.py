"""In-memory evaluator for resolver and refresh tests.

``FakeQueries`` answers the same calls as ``NixQueries`` from a nested
Python structure instead of spawning the evaluator. Dicts are attribute
sets (a dict with ``"type": "derivation"`` is a derivation), lists are
lists, callables are lambdas and everything else is a scalar.

``hold(op, path)`` parks the next such call after it has read the outputs,
so a test can change the flake underneath an evaluation in progress.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import pytest

from flaketree.eval.models import (
    AttrOp,
    AttrQuery,
    DerivationQuery,
    EvalErrorKind,
    ListElementsQuery,
    QueryKey,
    QueryResult,
)
from flaketree.tree.cache import NodeCache
from flaketree.tree.events import EventBus, TreeEvent
from flaketree.tree.paths import AttrPath


def _is_drv(value: Any) -> bool:
    return isinstance(value, dict) and value.get("type") == "derivation"


def _type_of(value: Any) -> str:
    if isinstance(value, dict):
        return "set"
    if isinstance(value, list):
        return "list"
    if callable(value):
        return "lambda"
    if isinstance(value, bool):
        return "bool"
    if isinstance(value, int):
        return "int"
    if value is None:
        return "null"
    return "string"


def _info(value: Any) -> dict[str, Any]:
    info: dict[str, Any] = {"type": _type_of(value), "isDrv": _is_drv(value)}
    if isinstance(value, dict) and not info["isDrv"]:
        info["attrNames"] = sorted(value)
    if isinstance(value, list):
        info["listLength"] = len(value)
    return info


def _element_meta(index: int, element: Any) -> dict[str, Any]:
    name = None
    if isinstance(element, dict):
        name = element.get("name") or element.get("pname")
    return {"index": index, "name": name or str(index), "isDrv": _is_drv(element)}


@dataclass
class Hold:
    reached: asyncio.Event = field(default_factory=asyncio.Event)
    release: asyncio.Event = field(default_factory=asyncio.Event)


class FakeQueries:
    def __init__(self, flake_dir: Path, outputs: dict[str, Any]) -> None:
        self.flake_dir = flake_dir
        self.outputs = outputs
        self.calls: list[tuple[str, AttrPath]] = []
        self.debounces: list[int] = []
        self.failures: dict[tuple[str, AttrPath], tuple[EvalErrorKind, str]] = {}
        self.derivations: dict[str, dict[str, Any]] = {}
        self.holds: dict[tuple[str, AttrPath], Hold] = {}

    def fail(self, op: str, path: AttrPath, kind: EvalErrorKind, message: str = "boom") -> None:
        self.failures[(op, path)] = (kind, message)

    def hold(self, op: str, path: AttrPath) -> Hold:
        self.holds[(op, path)] = Hold()
        return self.holds[(op, path)]

    def recover(self) -> None:
        self.failures.clear()

    def calls_for(self, op: str) -> list[AttrPath]:
        return [path for name, path in self.calls if name == op]

    def lookup(self, path: AttrPath) -> Any:
        value: Any = self.outputs
        for segment in path.segments:
            value = value[segment]
        return value

    async def _answer(self, op: str, key: QueryKey, path: AttrPath, produce: Any) -> QueryResult:
        self.calls.append((op, path))
        await asyncio.sleep(0)
        result = self._produce(key, op, path, produce)
        if (hold := self.holds.pop((op, path), None)) is not None:
            hold.reached.set()
            await hold.release.wait()
        return result

    def _produce(self, key: QueryKey, op: str, path: AttrPath, produce: Any) -> QueryResult:
        if (op, path) in self.failures:
            kind, message = self.failures[(op, path)]
            return QueryResult.failure(key, kind, message)
        try:
            data = produce(self.lookup(path))
        except (KeyError, IndexError, TypeError):
            return QueryResult.failure(
                key, EvalErrorKind.EVALUATION_FAILED, f"attribute '{path}' missing"
            )
        return QueryResult.success(key, data)

    async def flake_outputs(self, debounce_ms: int = 0) -> QueryResult:
        self.debounces.append(debounce_ms)
        root = AttrPath.root()
        return await self._answer(
            "outputs", AttrQuery(AttrOp.OUTPUTS, root), root, lambda v: {k: {} for k in v}
        )

    async def attr_info(self, path: AttrPath, debounce_ms: int = 0) -> QueryResult:
        self.debounces.append(debounce_ms)
        return await self._answer("info", AttrQuery(AttrOp.INFO, path), path, _info)

    async def value(self, path: AttrPath, debounce_ms: int = 0) -> QueryResult:
        return await self._answer("value", AttrQuery(AttrOp.VALUE, path), path, lambda v: v)

    async def list_elements(self, path: AttrPath, debounce_ms: int = 0) -> QueryResult:
        return await self._answer(
            "list_elements",
            ListElementsQuery(path),
            path,
            lambda v: [_element_meta(i, e) for i, e in enumerate(v)],
        )

    async def drv_path(self, path: AttrPath) -> QueryResult:
        return await self._answer(
            "drv_path", AttrQuery(AttrOp.DRV_PATH, path), path, lambda v: v["drvPath"]
        )

    async def derivation_show(self, drv_path: str) -> QueryResult:
        self.calls.append(("derivation_show", AttrPath.of(drv_path)))
        key = DerivationQuery(drv_path)
        if drv_path not in self.derivations:
            return QueryResult.failure(key, EvalErrorKind.EVALUATION_FAILED, "no such drv")
        return QueryResult.success(key, self.derivations[drv_path])


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def derivation(name: str) -> dict[str, Any]:
    return {"type": "derivation", "name": name, "drvPath": f"/nix/store/0000-{name}.drv"}


@pytest.fixture
def flake_dir(tmp_path: Path) -> Path:
    """Directory containing an (empty) flake.nix."""
    (tmp_path / "flake.nix").write_text("{ outputs = _: { }; }\n")
    return tmp_path


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def cache(clock: FakeClock) -> NodeCache:
    return NodeCache(max_age=60.0, clock=clock)


@pytest.fixture
def events() -> EventBus:
    return EventBus()


@pytest.fixture
def published(events: EventBus) -> list[TreeEvent]:
    received: list[TreeEvent] = []
    events.subscribe(received.append)
    return received


@pytest.fixture
def make_queries(flake_dir: Path) -> Any:
    """Factory: ``make_queries(outputs) -> FakeQueries`` rooted at ``flake_dir``."""

    def factory(outputs: dict[str, Any]) -> FakeQueries:
        return FakeQueries(flake_dir, outputs)

    return factory


@pytest.fixture
def drv() -> Any:
    """Factory for fake derivation attribute sets."""
    return derivation
