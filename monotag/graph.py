"""Dependency graph utilities.

Provides topological sorting for determining release order in a monorepo.
Units must be released in dependency order so that when unit A depends on
unit B, B is tagged first.
"""

from __future__ import annotations

from collections.abc import Mapping

from pydantic import BaseModel, Field

from .models import Unit


class CycleError(RuntimeError):
    """Internal units depend on each other in a cycle."""

    def __init__(self, members: list[str]) -> None:
        self.members = members
        super().__init__(f"Dependency cycle detected involving: {', '.join(members)}")


class DependencyGraph(BaseModel):
    """Directed graph of internal dependencies.

    Attributes:
        nodes: Unit names, sorted.
        edges: Unit name → names of the units it depends on. Only targets
               that are themselves nodes are kept.
    """

    nodes: list[str] = Field(default_factory=list)
    edges: dict[str, list[str]] = Field(default_factory=dict)

    def dependents(self) -> dict[str, list[str]]:
        """Reverse edges: unit name → units that depend on it."""
        reverse: dict[str, list[str]] = {n: [] for n in self.nodes}
        for name, deps in self.edges.items():
            for dep in deps:
                reverse[dep].append(name)
        return reverse


def build_graph(units: Mapping[str, Unit]) -> DependencyGraph:
    """Build the internal dependency graph of ``units``.

    Dependencies outside ``units`` are ignored: they are either external
    packages or units that are not part of this release.
    """
    nodes = sorted(units)
    edges = {
        name: sorted({d for d in units[name].deps if d in units and d != name})
        for name in nodes
    }
    return DependencyGraph(nodes=nodes, edges=edges)


def topo_sort(units: Mapping[str, Unit] | DependencyGraph) -> list[str]:
    """Topologically sort units by their internal dependencies.

    Uses Kahn's algorithm to produce a release order where dependencies
    come before dependents. Units with no ordering constraint between them
    are sorted alphabetically for deterministic output.

    Args:
        units: Map of unit name → Unit, or a prebuilt DependencyGraph.

    Returns:
        List of unit names in release order (dependencies first).

    Raises:
        CycleError: If a dependency cycle is detected.

    Example:
        If A depends on B, and B depends on C:
        topo_sort({A, B, C}) → [C, B, A]
    """
    graph = units if isinstance(units, DependencyGraph) else build_graph(units)
    in_degree = {n: len(graph.edges.get(n, [])) for n in graph.nodes}
    reverse_deps = graph.dependents()

    queue = sorted(n for n, d in in_degree.items() if d == 0)
    order: list[str] = []

    while queue:
        node = queue.pop(0)
        order.append(node)
        for dependent in sorted(reverse_deps[node]):
            in_degree[dependent] -= 1
            if in_degree[dependent] == 0:
                queue.append(dependent)
        queue.sort()

    if len(order) != len(graph.nodes):
        raise CycleError(_cycle_members(graph, set(graph.nodes) - set(order)))

    return order


def _cycle_members(graph: DependencyGraph, remaining: set[str]) -> list[str]:
    """Narrow the unsorted nodes down to those on a cycle.

    Kahn's algorithm leaves behind both the cycle and everything that
    depends on it; units nothing else in the leftover set depends on are
    peeled off until only cycle participants remain.
    """
    members = set(remaining)
    changed = True
    while changed:
        changed = False
        for node in sorted(members):
            if not any(node in graph.edges[other] for other in members):
                members.discard(node)
                changed = True
    return sorted(members)
