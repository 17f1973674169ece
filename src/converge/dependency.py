"""Resource dependency ordering and validation.

This module implements dependency management for a desired resource set:
1. Edge list construction from attribute references and ``dependsOn``
2. Topological sorting for execution order
3. Cycle detection, reporting the offending cycle

DESIGN:
- Edges are built once, when the graph is constructed, and never
  re-derived during execution
- Ties between ready nodes are broken lexicographically by logical name so
  the same graph always yields the same order

EXAMPLE:
```yaml
- kind: subnet
  name: public-a
  attributes:
    network_id: ${main.id}    # edge: public-a -> main
    cidr_block: 10.0.1.0/24
```
"""

from __future__ import annotations

import heapq
import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field

from .models import Resource

logger = logging.getLogger(__name__)


class DependencyError(Exception):
    """Raised when dependency validation fails."""

    pass


class CycleDetected(DependencyError):
    """Raised when a dependency cycle is detected.

    Attributes:
        cycle: Names along the cycle, first name repeated at the end.
    """

    def __init__(self, cycle: list[str]) -> None:
        self.cycle = cycle
        super().__init__(f"Circular dependency detected: {' -> '.join(cycle)}")


class UnknownReference(DependencyError):
    """Raised when a resource references a name outside the graph."""

    def __init__(self, resource: str, missing: list[str]) -> None:
        self.resource = resource
        self.missing = missing
        super().__init__(f"Resource '{resource}' references unknown resources: {missing}")


@dataclass
class DependencyNode:
    """A node in the dependency graph."""

    name: str
    depends_on: list[str] = field(default_factory=list)


@dataclass
class DependencyGraph:
    """Directed acyclic graph of resource dependencies.

    Edges point from a resource to the resources it depends on.
    """

    nodes: dict[str, DependencyNode] = field(default_factory=dict)

    @classmethod
    def from_resources(cls, resources: Iterable[Resource]) -> DependencyGraph:
        """Build the graph from desired resources.

        Raises:
            UnknownReference: If a resource depends on a name not in the set.
        """
        resources = list(resources)
        graph = cls()
        for resource in resources:
            graph.add_node(resource.name, sorted(resource.dependencies))
        graph.check_references()
        return graph

    @classmethod
    def from_mapping(cls, dependencies: Mapping[str, Iterable[str]]) -> DependencyGraph:
        """Build the graph from a name -> dependency names mapping.

        Dependencies on names outside the mapping are dropped; this is used
        for observed state where a dependency may already be gone.
        """
        graph = cls()
        for name, deps in dependencies.items():
            graph.nodes[name] = DependencyNode(
                name=name,
                depends_on=sorted(d for d in deps if d in dependencies),
            )
        return graph

    def add_node(self, name: str, depends_on: list[str] | None = None) -> None:
        """Add a node to the dependency graph.

        Args:
            name: Logical resource name.
            depends_on: Names this resource depends on.
        """
        if name in self.nodes:
            if depends_on:
                self.nodes[name].depends_on = list(depends_on)
        else:
            self.nodes[name] = DependencyNode(name=name, depends_on=list(depends_on or []))

    def check_references(self) -> None:
        """Ensure every dependency names a node in the graph.

        Raises:
            UnknownReference: On the first (by name) node with a dangling edge.
        """
        for name in sorted(self.nodes):
            missing = [dep for dep in self.nodes[name].depends_on if dep not in self.nodes]
            if missing:
                raise UnknownReference(name, sorted(missing))

    def edges(self) -> list[tuple[str, str]]:
        """Explicit (dependent, dependency) edge list, sorted."""
        return sorted(
            (node.name, dep) for node in self.nodes.values() for dep in node.depends_on
        )

    def dependents(self) -> dict[str, list[str]]:
        """Reverse adjacency: name -> direct dependents."""
        reverse: dict[str, list[str]] = {name: [] for name in self.nodes}
        for node in self.nodes.values():
            for dep in node.depends_on:
                if dep in reverse:
                    reverse[dep].append(node.name)
        for names in reverse.values():
            names.sort()
        return reverse

    def find_cycle(self) -> list[str] | None:
        """Return one cycle as a name list, or None if the graph is acyclic."""
        white, grey, black = 0, 1, 2
        color = dict.fromkeys(self.nodes, white)
        stack: list[str] = []

        def visit(name: str) -> list[str] | None:
            color[name] = grey
            stack.append(name)
            for dep in sorted(self.nodes[name].depends_on):
                if dep not in color:
                    continue
                if color[dep] == grey:
                    start = stack.index(dep)
                    return [*stack[start:], dep]
                if color[dep] == white:
                    found = visit(dep)
                    if found:
                        return found
            stack.pop()
            color[name] = black
            return None

        for name in sorted(self.nodes):
            if color[name] == white:
                found = visit(name)
                if found:
                    return found
        return None

    def validate(self) -> None:
        """Validate the dependency graph for cycles.

        Raises:
            CycleDetected: If a cycle is detected.
        """
        cycle = self.find_cycle()
        if cycle is not None:
            raise CycleDetected(cycle)

    def topological_sort(self) -> list[str]:
        """Return names in dependency order (dependencies first).

        Raises:
            CycleDetected: If a cycle is detected. No partial order is returned.
        """
        self.validate()

        dependents = self.dependents()
        in_degree: dict[str, int] = {
            name: sum(1 for dep in node.depends_on if dep in self.nodes)
            for name, node in self.nodes.items()
        }

        # Kahn's algorithm with a min-heap for lexicographic tie-breaking
        queue = [name for name, degree in in_degree.items() if degree == 0]
        heapq.heapify(queue)
        result: list[str] = []

        while queue:
            current = heapq.heappop(queue)
            result.append(current)
            for dependent in dependents[current]:
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    heapq.heappush(queue, dependent)

        return result

    def transitive_dependents(self, name: str) -> set[str]:
        """All names that depend on ``name`` directly or transitively."""
        dependents = self.dependents()
        seen: set[str] = set()
        pending = list(dependents.get(name, []))
        while pending:
            current = pending.pop()
            if current in seen:
                continue
            seen.add(current)
            pending.extend(dependents.get(current, []))
        return seen

    def transitive_dependencies(self, name: str) -> set[str]:
        """All names that ``name`` depends on directly or transitively."""
        seen: set[str] = set()
        pending = list(self.nodes[name].depends_on) if name in self.nodes else []
        while pending:
            current = pending.pop()
            if current in seen or current not in self.nodes:
                continue
            seen.add(current)
            pending.extend(self.nodes[current].depends_on)
        return seen

    def get_ready(self, done: set[str]) -> list[str]:
        """Names not yet done whose dependencies are all done, sorted."""
        ready = []
        for node in self.nodes.values():
            if node.name in done:
                continue
            if all(dep in done for dep in node.depends_on if dep in self.nodes):
                ready.append(node.name)
        return sorted(ready)


def resolve(resources: Iterable[Resource]) -> list[Resource]:
    """Order resources so every resource follows everything it depends on.

    Args:
        resources: Desired resources with unique logical names.

    Returns:
        Resources in deterministic topological order.

    Raises:
        CycleDetected: If the dependency relation has a cycle.
        UnknownReference: If a resource depends on a name not in the set.
    """
    by_name = {resource.name: resource for resource in resources}
    graph = DependencyGraph.from_resources(by_name.values())
    order = graph.topological_sort()
    logger.debug(
        "Resolved dependency order",
        extra={"resource_count": len(order), "edge_count": len(graph.edges())},
    )
    return [by_name[name] for name in order]
