"""DAG construction, topological sort, and cycle detection."""

from __future__ import annotations

import heapq
from graphlib import CycleError, TopologicalSorter
from typing import Iterable

from .errors import AmbiguousDependency, CyclicDependency
from .models import Task


def build_dag(tasks: Iterable[Task]) -> dict[str, set[str]]:
    """Build dependency graph from tasks."""
    graph: dict[str, set[str]] = {}
    for task in tasks:
        graph[task.id] = set(task.depends_on)
    return graph


def topological_order(
    graph: dict[str, set[str]], position: dict[str, int] | None = None
) -> list[str]:
    """Return topologically sorted node list. Raises on cycle.

    Among nodes that are ready at the same time the one with the lowest
    ``position`` (document order) goes first, so the result is stable.
    """
    if not graph:
        return []
    if position is None:
        position = {node: i for i, node in enumerate(graph)}
    ts = TopologicalSorter(graph)
    try:
        ts.prepare()
    except CycleError as e:
        cycle = list(e.args[1]) if len(e.args) > 1 else []
        raise CyclicDependency(cycle) from e

    order: list[str] = []
    ready: list[tuple[int, str]] = []
    while ts.is_active():
        for node in ts.get_ready():
            heapq.heappush(ready, (position.get(node, len(position)), node))
        _, node = heapq.heappop(ready)
        order.append(node)
        ts.done(node)
    return order


def check_dag(graph: dict[str, set[str]]) -> None:
    """Validate DAG: check for missing dependencies and cycles."""
    known = set(graph.keys())
    for node, deps in graph.items():
        missing = sorted(deps - known)
        if missing:
            raise AmbiguousDependency(node, missing[0])
    topological_order(graph)


def dependents_of(graph: dict[str, set[str]], node: str) -> set[str]:
    """All nodes that (transitively) depend on ``node``."""
    reverse: dict[str, set[str]] = {}
    for nid, deps in graph.items():
        for dep in deps:
            reverse.setdefault(dep, set()).add(nid)

    visited: set[str] = set()
    stack = list(reverse.get(node, set()))
    while stack:
        nid = stack.pop()
        if nid in visited:
            continue
        visited.add(nid)
        stack.extend(reverse.get(nid, set()))
    return visited
