"""Tests for resource dependency ordering."""

from __future__ import annotations

import pytest
from provider_mock import web_stack

from converge.dependency import (
    CycleDetected,
    DependencyGraph,
    DependencyNode,
    UnknownReference,
    resolve,
)
from converge.models import Resource


def network(name: str, depends_on: list[str] | None = None) -> Resource:
    return Resource.model_validate(
        {
            "kind": "network",
            "name": name,
            "attributes": {"cidr_block": "10.0.0.0/16"},
            "dependsOn": depends_on or [],
        }
    )


class TestDependencyNode:
    """Tests for DependencyNode dataclass."""

    def test_default_values(self) -> None:
        node = DependencyNode(name="main")
        assert node.name == "main"
        assert node.depends_on == []


class TestDependencyGraph:
    """Tests for DependencyGraph."""

    def test_add_node(self) -> None:
        graph = DependencyGraph()
        graph.add_node("main")
        graph.add_node("public-a", ["main"])

        assert graph.nodes["public-a"].depends_on == ["main"]
        assert graph.edges() == [("public-a", "main")]

    def test_dependents(self) -> None:
        graph = DependencyGraph()
        graph.add_node("main")
        graph.add_node("b", ["main"])
        graph.add_node("a", ["main"])

        assert graph.dependents() == {"main": ["a", "b"], "a": [], "b": []}

    def test_lexicographic_tie_break(self) -> None:
        """Independent nodes come out in name order."""
        graph = DependencyGraph()
        for name in ["zeta", "alpha", "mid"]:
            graph.add_node(name)
        assert graph.topological_sort() == ["alpha", "mid", "zeta"]

    def test_dependencies_first(self) -> None:
        graph = DependencyGraph()
        graph.add_node("a", ["z"])
        graph.add_node("z")
        graph.add_node("b")
        assert graph.topological_sort() == ["b", "z", "a"]

    def test_cycle_reported(self) -> None:
        """A cycle names its members and no partial order is returned."""
        graph = DependencyGraph()
        graph.add_node("a", ["b"])
        graph.add_node("b", ["c"])
        graph.add_node("c", ["a"])
        graph.add_node("d")

        with pytest.raises(CycleDetected) as exc_info:
            graph.topological_sort()

        cycle = exc_info.value.cycle
        assert cycle[0] == cycle[-1]
        assert set(cycle) == {"a", "b", "c"}
        assert "Circular dependency detected" in str(exc_info.value)

    def test_find_cycle_none_when_acyclic(self) -> None:
        graph = DependencyGraph()
        graph.add_node("a", ["b"])
        graph.add_node("b")
        assert graph.find_cycle() is None

    def test_unknown_reference(self) -> None:
        graph = DependencyGraph()
        graph.add_node("public-a", ["main"])
        with pytest.raises(UnknownReference) as exc_info:
            graph.check_references()
        assert exc_info.value.resource == "public-a"
        assert exc_info.value.missing == ["main"]

    def test_from_mapping_drops_missing(self) -> None:
        """Observed state may reference names that are already gone."""
        graph = DependencyGraph.from_mapping({"public-a": ["main"], "web": ["public-a"]})
        assert graph.nodes["public-a"].depends_on == []
        assert graph.topological_sort() == ["public-a", "web"]

    def test_transitive_relations(self) -> None:
        graph = DependencyGraph.from_resources(web_stack())
        assert graph.transitive_dependents("web") == {"scale-up", "cpu-high"}
        assert graph.transitive_dependencies("web-http") == {
            "web-lb",
            "web-tg",
            "public-a",
            "web-sg",
            "main",
        }
        assert "assets" not in graph.transitive_dependents("main")

    def test_get_ready(self) -> None:
        graph = DependencyGraph.from_resources(web_stack())
        assert graph.get_ready(set()) == ["assets", "main"]
        assert graph.get_ready({"main", "assets"}) == ["public-a", "web-sg", "web-tg"]


class TestResolve:
    """Tests for resolve()."""

    def test_every_resource_after_its_dependencies(self) -> None:
        ordered = resolve(web_stack())
        position = {resource.name: index for index, resource in enumerate(ordered)}
        for resource in ordered:
            for dep in resource.dependencies:
                assert position[dep] < position[resource.name]

    def test_deterministic(self) -> None:
        """Declaration order does not change the result."""
        resources = web_stack()
        first = [r.name for r in resolve(resources)]
        second = [r.name for r in resolve(list(reversed(resources)))]
        assert first == second

    def test_explicit_depends_on(self) -> None:
        ordered = resolve([network("b", ["c"]), network("a"), network("c")])
        assert [r.name for r in ordered] == ["a", "c", "b"]

    def test_cycle(self) -> None:
        with pytest.raises(CycleDetected) as exc_info:
            resolve([network("a", ["b"]), network("b", ["a"])])
        assert exc_info.value.cycle in (["a", "b", "a"], ["b", "a", "b"])

    def test_self_reference_is_a_cycle(self) -> None:
        with pytest.raises(CycleDetected, match="a -> a") as exc_info:
            resolve([network("b"), network("a", ["a"])])
        assert exc_info.value.cycle == ["a", "a"]

    def test_unknown_dependency(self) -> None:
        with pytest.raises(UnknownReference):
            resolve([network("a", ["missing"])])

    def test_empty(self) -> None:
        assert resolve([]) == []
