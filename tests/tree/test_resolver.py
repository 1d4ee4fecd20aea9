"""Tests for the tree resolver, mostly against an in-memory evaluator."""

from __future__ import annotations

import asyncio
import json
import sys
from pathlib import Path
from typing import Any

import pytest

from flaketree.core.errors import ErrorCode
from flaketree.eval.engine import QueryEngine
from flaketree.eval.models import EvalErrorKind
from flaketree.eval.queries import NixQueries
from flaketree.tree.cache import NodeCache
from flaketree.tree.events import EventBus, NodeUpdated, StatusChanged, StatusLevel, TreeEvent
from flaketree.tree.models import NodeKind
from flaketree.tree.paths import AttrPath
from flaketree.tree.resolver import TreeResolver
from flaketree.tree.search import PathFilter, SearchIndex


def _errors(published: list[TreeEvent]) -> list[StatusChanged]:
    return [
        e for e in published if isinstance(e, StatusChanged) and e.level is StatusLevel.ERROR
    ]


# Stand-in evaluator for the engine-backed tests in this module. It reads
# state.json from its working directory once at startup, like an evaluation
# that began on the sources of that moment.
FAKE_NIX = """
import json, pathlib, sys, time
args = sys.argv[1:]
state = json.loads(pathlib.Path("state.json").read_text())
apply = args[args.index("--apply") + 1] if "--apply" in args else ""
xs = state["xs"]
if "genList" in apply:
    pathlib.Path("elements.started").touch()
    time.sleep(state.get("elements_delay", 0))
    print(json.dumps([{"index": i, "name": str(i), "isDrv": False} for i in range(len(xs))]))
elif "typeOf" in apply and isinstance(xs, list):
    print(json.dumps({"type": "list", "isDrv": False, "listLength": len(xs)}))
elif "typeOf" in apply:
    print(json.dumps({"type": "set", "isDrv": False, "attrNames": sorted(xs)}))
else:
    sys.exit("unexpected arguments: " + " ".join(args))
"""


async def _wait_for(marker: Path, timeout: float = 10.0) -> None:
    async with asyncio.timeout(timeout):
        while not marker.exists():
            await asyncio.sleep(0.01)


class TestTopLevel:
    """Root listing from the flake outputs."""

    @pytest.mark.asyncio
    async def test_given_no_root_when_children_then_sorted_namespaces(
        self, make_queries: Any, cache: NodeCache, events: EventBus
    ) -> None:
        """Outputs packages and apps are listed as apps, packages."""
        # Given
        queries = make_queries({"packages": {}, "apps": {}})
        resolver = TreeResolver(queries, cache, events)

        # When
        nodes = await resolver.children()

        # Then
        assert [n.label for n in nodes] == ["apps", "packages"]
        assert all(n.kind is NodeKind.NAMESPACE for n in nodes)
        assert all(n.expandable for n in nodes)
        assert [n.path for n in nodes] == [AttrPath.of("apps"), AttrPath.of("packages")]
        assert queries.calls_for("outputs") == [AttrPath.root()]

    @pytest.mark.asyncio
    async def test_given_cached_root_when_children_again_then_no_second_query(
        self, make_queries: Any, cache: NodeCache, events: EventBus
    ) -> None:
        """A fresh cache entry is served without re-evaluating."""
        # Given
        queries = make_queries({"packages": {}})
        resolver = TreeResolver(queries, cache, events)
        await resolver.children()

        # When
        nodes = await resolver.children()

        # Then
        assert [n.label for n in nodes] == ["packages"]
        assert len(queries.calls) == 1


class TestClassification:
    """Kind detection from the attr info query."""

    @pytest.mark.asyncio
    async def test_given_attrset_when_children_then_namespace_with_sorted_names(
        self, make_queries: Any, cache: NodeCache, events: EventBus
    ) -> None:
        """Attribute sets become namespaces whose children are the sorted names."""
        # Given
        queries = make_queries({"programs": {"zsh": {}, "git": {"enable": True}}})
        resolver = TreeResolver(queries, cache, events)

        # When
        nodes = await resolver.children(AttrPath.of("programs"))

        # Then
        assert [n.label for n in nodes] == ["git", "zsh"]
        assert resolver.kind_of(AttrPath.of("programs")) is NodeKind.NAMESPACE

    @pytest.mark.asyncio
    async def test_given_list_of_three_when_children_then_collection_elements(
        self, make_queries: Any, cache: NodeCache, events: EventBus
    ) -> None:
        """List elements are addressed by index and labelled by name."""
        # Given
        modules = [{"name": "a"}, "plain", {"pname": "c"}]
        queries = make_queries({"x": {"modules": modules}})
        resolver = TreeResolver(queries, cache, events)
        path = AttrPath.of("x", "modules")

        # When
        nodes = await resolver.children(path)

        # Then
        assert [n.label for n in nodes] == ["a", "1", "c"]
        assert [n.path for n in nodes] == [path.element(0), path.element(1), path.element(2)]
        assert [str(n.path) for n in nodes] == ["x.modules.[0]", "x.modules.[1]", "x.modules.[2]"]
        assert all(n.kind is NodeKind.COLLECTION_ELEMENT for n in nodes)
        assert [n.list_index for n in nodes] == [0, 1, 2]
        assert resolver.kind_of(path) is NodeKind.COLLECTION

    @pytest.mark.asyncio
    async def test_given_large_list_when_children_then_single_batched_query(
        self, make_queries: Any, cache: NodeCache, events: EventBus
    ) -> None:
        """500 elements are described by exactly one batched evaluator call."""
        # Given
        queries = make_queries({"big": [{"name": f"pkg{i}"} for i in range(500)]})
        resolver = TreeResolver(queries, cache, events)

        # When
        nodes = await resolver.children(AttrPath.of("big"))

        # Then
        assert len(nodes) == 500
        assert queries.calls_for("list_elements") == [AttrPath.of("big")]
        assert len(queries.calls) == 2  # info + one batch

    @pytest.mark.asyncio
    async def test_given_empty_list_when_children_then_no_batch_query(
        self, make_queries: Any, cache: NodeCache, events: EventBus
    ) -> None:
        """An empty list is resolved from its length alone and still cached."""
        # Given
        queries = make_queries({"empty": []})
        resolver = TreeResolver(queries, cache, events)

        # When
        nodes = await resolver.children(AttrPath.of("empty"))

        # Then
        assert nodes == []
        assert queries.calls_for("list_elements") == []
        assert cache.is_fresh(AttrPath.of("empty"))

    @pytest.mark.asyncio
    async def test_given_package_in_list_when_children_then_artifact_leaf(
        self, make_queries: Any, drv: Any, cache: NodeCache, events: EventBus
    ) -> None:
        """Derivations inside lists are flagged and not expandable."""
        # Given
        queries = make_queries({"systemPackages": [drv("git"), drv("vim")]})
        resolver = TreeResolver(queries, cache, events)

        # When
        nodes = await resolver.children(AttrPath.of("systemPackages"))

        # Then
        assert [n.label for n in nodes] == ["git", "vim"]
        assert all(n.artifact and not n.expandable for n in nodes)

    @pytest.mark.asyncio
    async def test_given_derivation_when_children_then_leaf_without_children(
        self, make_queries: Any, drv: Any, cache: NodeCache, events: EventBus
    ) -> None:
        """A derivation resolves as a derived artifact with no children."""
        # Given
        queries = make_queries({"packages": {"hello": drv("hello")}})
        resolver = TreeResolver(queries, cache, events)
        path = AttrPath.of("packages", "hello")

        # When
        nodes = await resolver.children(path)

        # Then
        assert nodes == []
        assert resolver.kind_of(path) is NodeKind.DERIVED_ARTIFACT
        assert queries.calls_for("value") == []

    @pytest.mark.asyncio
    async def test_given_scalar_when_children_then_value_is_described(
        self, make_queries: Any, cache: NodeCache, events: EventBus
    ) -> None:
        """Scalars fetch their value and carry a short description."""
        # Given
        queries = make_queries({"networking": {"hostName": "box"}})
        resolver = TreeResolver(queries, cache, events)
        path = AttrPath.of("networking", "hostName")

        # When
        nodes = await resolver.children(path)

        # Then
        entry = cache.get(path)
        assert nodes == []
        assert entry is not None and entry.value is not None
        assert entry.value.kind is NodeKind.SCALAR
        assert entry.value.value == "box"
        assert entry.value.description == '"box"'

    @pytest.mark.asyncio
    async def test_given_lambda_when_children_then_scalar_without_value_query(
        self, make_queries: Any, cache: NodeCache, events: EventBus
    ) -> None:
        """Functions cannot be serialized, so only their kind is recorded."""
        # Given
        queries = make_queries({"lib": {"id": lambda x: x}})
        resolver = TreeResolver(queries, cache, events)
        path = AttrPath.of("lib", "id")

        # When
        await resolver.children(path)

        # Then
        entry = cache.get(path)
        assert entry is not None and entry.value is not None
        assert entry.value.description == "<lambda>"
        assert queries.calls_for("value") == []


class TestFailures:
    """Failed and cancelled queries."""

    @pytest.mark.asyncio
    async def test_given_no_previous_value_when_query_fails_then_single_failed_node(
        self,
        make_queries: Any,
        cache: NodeCache,
        events: EventBus,
        published: list[TreeEvent],
    ) -> None:
        """Without last-good data the failure itself is shown."""
        # Given
        queries = make_queries({"broken": {}})
        path = AttrPath.of("broken")
        queries.fail("info", path, EvalErrorKind.EVALUATION_FAILED, "infinite recursion")
        resolver = TreeResolver(queries, cache, events)

        # When
        nodes = await resolver.children(path)

        # Then
        assert len(nodes) == 1
        assert nodes[0].kind is NodeKind.FAILED
        assert nodes[0].error == "infinite recursion"
        assert resolver.kind_of(path) is NodeKind.FAILED
        assert len(_errors(published)) == 1

    @pytest.mark.asyncio
    async def test_given_last_good_when_refetch_fails_then_last_good_children_returned(
        self,
        make_queries: Any,
        cache: NodeCache,
        clock: Any,
        events: EventBus,
        published: list[TreeEvent],
    ) -> None:
        """A failing re-evaluation keeps showing the previous children."""
        # Given
        queries = make_queries({"programs": {"git": {}, "zsh": {}}})
        resolver = TreeResolver(queries, cache, events)
        path = AttrPath.of("programs")
        await resolver.children(path)
        cache.invalidate(path)
        queries.fail("info", path, EvalErrorKind.TIMEOUT, "Command timed out after 30s")

        # When
        nodes = await resolver.children(path)

        # Then
        assert [n.label for n in nodes] == ["git", "zsh"]
        assert resolver.kind_of(path) is NodeKind.FAILED
        errors = _errors(published)
        assert len(errors) == 1
        assert "timed out" in errors[0].message
        assert errors[0].path == path

    @pytest.mark.asyncio
    async def test_given_failure_cached_when_children_again_then_no_requery(
        self, make_queries: Any, cache: NodeCache, clock: Any, events: EventBus
    ) -> None:
        """Failures are remembered until invalidation or the TTL expires."""
        # Given
        queries = make_queries({})
        path = AttrPath.of("nope")
        resolver = TreeResolver(queries, cache, events)
        await resolver.children(path)

        # When
        await resolver.children(path)
        clock.advance(61)
        await resolver.children(path)

        # Then
        assert queries.calls_for("info") == [path, path]

    @pytest.mark.asyncio
    async def test_given_cancelled_query_when_children_then_cache_untouched(
        self,
        make_queries: Any,
        cache: NodeCache,
        events: EventBus,
        published: list[TreeEvent],
    ) -> None:
        """A superseded request writes nothing and reports nothing."""
        # Given
        queries = make_queries({"programs": {}})
        path = AttrPath.of("programs")
        queries.fail("info", path, EvalErrorKind.CANCELLED, "Superseded by a newer request")
        resolver = TreeResolver(queries, cache, events)

        # When
        nodes = await resolver.children(path)

        # Then
        assert cache.get(path) is None
        assert [n.kind for n in nodes] == [NodeKind.UNRESOLVED]
        assert nodes[0].label == "Loading..."
        assert _errors(published) == []

    @pytest.mark.asyncio
    async def test_given_failure_in_batch_when_children_then_path_failed(
        self, make_queries: Any, cache: NodeCache, events: EventBus
    ) -> None:
        """A failing element query fails the list path."""
        # Given
        queries = make_queries({"xs": [1, 2]})
        path = AttrPath.of("xs")
        queries.fail("list_elements", path, EvalErrorKind.EVALUATION_FAILED, "bad element")
        resolver = TreeResolver(queries, cache, events)

        # When
        nodes = await resolver.children(path)

        # Then
        assert [n.error for n in nodes] == ["bad element"]
        assert resolver.kind_of(path) is NodeKind.FAILED


class TestEventsAndIndex:
    """Change notification and search indexing."""

    @pytest.mark.asyncio
    async def test_given_unchanged_result_when_refetched_then_no_second_update(
        self,
        make_queries: Any,
        cache: NodeCache,
        events: EventBus,
        published: list[TreeEvent],
    ) -> None:
        """NodeUpdated is only published when the listing actually changes."""
        # Given
        queries = make_queries({"programs": {"git": {}}})
        resolver = TreeResolver(queries, cache, events)
        path = AttrPath.of("programs")
        await resolver.children(path)
        cache.invalidate(path)

        # When
        await resolver.children(path)
        queries.outputs["programs"]["zsh"] = {}
        cache.invalidate(path)
        await resolver.children(path)

        # Then
        updates = [e for e in published if isinstance(e, NodeUpdated)]
        assert updates == [NodeUpdated(path), NodeUpdated(path)]

    @pytest.mark.asyncio
    async def test_given_resolved_children_when_suggest_then_paths_are_indexed(
        self, make_queries: Any, cache: NodeCache, events: EventBus
    ) -> None:
        """Every resolved child path lands in the search index."""
        # Given
        root = AttrPath.of("cfg")
        queries = make_queries({"cfg": {"programs": {"git": {}, "gnupg": {}}}})
        index = SearchIndex(root)
        resolver = TreeResolver(queries, cache, events, search_index=index, root=root)

        # When
        await resolver.children()
        await resolver.children(root.child("programs"))

        # Then
        assert index.suggest("programs.g") == ["programs.git", "programs.gnupg"]

    @pytest.mark.asyncio
    async def test_given_filter_when_children_then_only_matches_returned(
        self, make_queries: Any, cache: NodeCache, events: EventBus
    ) -> None:
        """The path filter applies to already-fetched children."""
        # Given
        root = AttrPath.of("cfg")
        queries = make_queries({"cfg": {"programs": {}, "services": {}, "boot": {}}})
        resolver = TreeResolver(queries, cache, events, root=root)

        # When
        nodes = await resolver.children(path_filter=PathFilter("programs.git", root))

        # Then
        assert [n.label for n in nodes] == ["programs"]


class TestOverlappingFetches:
    """A fetch that finishes after a newer fetch of the same path."""

    @pytest.mark.asyncio
    async def test_given_older_fetch_finishing_last_when_children_then_newer_result_kept(
        self,
        make_queries: Any,
        cache: NodeCache,
        events: EventBus,
        published: list[TreeEvent],
    ) -> None:
        """A list evaluation that started first cannot overwrite the newer attribute set."""
        # Given
        queries = make_queries({"xs": [1, 2]})
        path = AttrPath.of("xs")
        hold = queries.hold("list_elements", path)
        resolver = TreeResolver(queries, cache, events)
        older = asyncio.create_task(resolver.children(path))
        await hold.reached.wait()

        # When
        queries.outputs["xs"] = {"a": 1, "b": 2}
        newer = await resolver.children(path)
        hold.release.set()
        late = await older

        # Then
        assert [n.label for n in newer] == ["a", "b"]
        assert resolver.kind_of(path) is NodeKind.NAMESPACE
        assert late == newer
        assert [e for e in published if isinstance(e, NodeUpdated)] == [NodeUpdated(path)]

    @pytest.mark.asyncio
    async def test_given_older_fetch_failing_last_when_children_then_no_failure_recorded(
        self,
        make_queries: Any,
        cache: NodeCache,
        events: EventBus,
        published: list[TreeEvent],
    ) -> None:
        """A late failure from an outdated evaluation is neither cached nor reported."""
        # Given
        queries = make_queries({"xs": [1, 2]})
        path = AttrPath.of("xs")
        queries.fail("list_elements", path, EvalErrorKind.EVALUATION_FAILED, "old sources")
        hold = queries.hold("list_elements", path)
        resolver = TreeResolver(queries, cache, events)
        older = asyncio.create_task(resolver.children(path))
        await hold.reached.wait()

        # When
        queries.outputs["xs"] = {"a": 1}
        await resolver.children(path)
        hold.release.set()
        await older

        # Then
        assert resolver.kind_of(path) is NodeKind.NAMESPACE
        entry = cache.get(path)
        assert entry is not None and entry.error is None
        assert _errors(published) == []

    @pytest.mark.asyncio
    async def test_given_fetch_in_flight_when_reconfigured_then_late_result_discarded(
        self, make_queries: Any, cache: NodeCache, events: EventBus
    ) -> None:
        """Results evaluated under the previous settings never reach the cache."""
        # Given
        queries = make_queries({"xs": [1, 2]})
        path = AttrPath.of("xs")
        hold = queries.hold("list_elements", path)
        resolver = TreeResolver(queries, cache, events)
        in_flight = asyncio.create_task(resolver.children(path))
        await hold.reached.wait()

        # When
        resolver.reconfigure(root=path)
        hold.release.set()
        nodes = await in_flight

        # Then
        assert path not in cache
        assert nodes[0].label == "Loading..."

    @pytest.mark.asyncio
    async def test_given_engine_when_older_list_query_returns_late_then_newer_result_kept(
        self, flake_dir: Path, cache: NodeCache, events: EventBus
    ) -> None:
        """Real evaluator processes: the slow element query outlives the newer info query."""
        # Given
        script = flake_dir / "fake_nix.py"
        script.write_text(FAKE_NIX)
        state = flake_dir / "state.json"
        state.write_text(json.dumps({"xs": [1, 2], "elements_delay": 1.0}))
        engine = QueryEngine(
            executable=sys.executable,
            extra_args=[str(script)],
            timeout=10.0,
            terminate_grace=0.5,
        )
        resolver = TreeResolver(NixQueries(engine, flake_dir), cache, events)
        path = AttrPath.of("xs")
        older = asyncio.create_task(resolver.children(path))
        await _wait_for(flake_dir / "elements.started")

        # When
        state.write_text(json.dumps({"xs": {"a": 1}}))
        newer = await resolver.children(path)
        late = await older

        # Then
        assert [n.label for n in newer] == ["a"]
        assert resolver.kind_of(path) is NodeKind.NAMESPACE
        assert late == newer


class TestFlakeDirectory:
    """Fatal conditions about the flake directory."""

    @pytest.mark.asyncio
    async def test_given_no_flake_file_when_children_then_halted_and_reported_once(
        self,
        make_queries: Any,
        tmp_path: Path,
        cache: NodeCache,
        events: EventBus,
        published: list[TreeEvent],
    ) -> None:
        """A missing flake.nix halts queries and is reported a single time."""
        # Given
        queries = make_queries({"packages": {}})
        queries.flake_dir = tmp_path / "not-a-flake"
        queries.flake_dir.mkdir()
        resolver = TreeResolver(queries, cache, events)

        # When
        first = await resolver.children()
        second = await resolver.children()

        # Then
        assert first == [] and second == []
        assert queries.calls == []
        assert resolver.halted is not None
        assert resolver.halted.code is ErrorCode.EVALUATOR_UNAVAILABLE
        assert resolver.halted.message == f"No flake.nix found in {queries.flake_dir}"
        assert len(_errors(published)) == 1

    @pytest.mark.asyncio
    async def test_given_halted_when_reconfigured_then_queries_resume(
        self, make_queries: Any, tmp_path: Path, cache: NodeCache, events: EventBus
    ) -> None:
        """reconfigure() lifts the halt."""
        # Given
        queries = make_queries({"packages": {}})
        good_dir = queries.flake_dir
        queries.flake_dir = tmp_path / "not-a-flake"
        queries.flake_dir.mkdir()
        resolver = TreeResolver(queries, cache, events)
        await resolver.children()

        # When
        resolver.reconfigure(flake_dir=good_dir)
        nodes = await resolver.children()

        # Then
        assert resolver.halted is None
        assert [n.label for n in nodes] == ["packages"]


class TestDerivationInfo:
    """Build metadata of derived artifacts."""

    @pytest.mark.asyncio
    async def test_given_derivation_when_derivation_info_then_show_output(
        self, make_queries: Any, drv: Any, cache: NodeCache, events: EventBus
    ) -> None:
        """drvPath is resolved first, then shown."""
        # Given
        queries = make_queries({"packages": {"hello": drv("hello")}})
        queries.derivations["/nix/store/0000-hello.drv"] = {"outputs": {"out": {}}}
        resolver = TreeResolver(queries, cache, events)

        # When
        result = await resolver.derivation_info(AttrPath.of("packages", "hello"))

        # Then
        assert result.ok
        assert result.data == {"outputs": {"out": {}}}

    @pytest.mark.asyncio
    async def test_given_non_derivation_when_derivation_info_then_failure(
        self, make_queries: Any, cache: NodeCache, events: EventBus
    ) -> None:
        """Values without drvPath report an evaluation failure."""
        # Given
        queries = make_queries({"lib": {}})
        resolver = TreeResolver(queries, cache, events)

        # When
        result = await resolver.derivation_info(AttrPath.of("lib"))

        # Then
        assert not result.ok
        assert result.error is not None
        assert result.error.kind is EvalErrorKind.EVALUATION_FAILED
