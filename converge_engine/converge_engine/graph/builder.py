"""Execution graph construction and graph operations using NetworkX.

This module merges a desired configuration graph with the current state
snapshot into a single directed graph whose topological order is a safe
execution order for the planner and reconciler.

Nodes are resource keys.  Edges point **from** the resource whose action
must finish first **to** the one that waits on it:

* For a desired resource, each desired dependency ``dep`` that is itself
  desired gives ``dep -> key`` (create/update dependencies first).
* For a resource present only in the snapshot (a *destroy node* ``D``),
  every stored record ``X`` whose stored dependencies include ``D`` gives
  ``X -> D`` (destroy dependents first).

Node data carries the :class:`DesiredResource` under ``"desired"``, the
:class:`ResourceRecord` under ``"current"``, and a ``"destroy"`` flag.
"""

from __future__ import annotations

import heapq
import logging
from collections import deque

import networkx as nx

from converge_engine.errors import CyclicDependencyError
from converge_engine.models.resource import DesiredGraph
from converge_engine.models.snapshot import StateSnapshot

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Graph construction
# ---------------------------------------------------------------------------


def build_execution_graph(desired: DesiredGraph, snapshot: StateSnapshot) -> nx.DiGraph:
    """Build the merged execution graph for *desired* against *snapshot*.

    Parameters
    ----------
    desired:
        Desired resources keyed by ``type:name``.
    snapshot:
        The committed state the plan is computed against.

    Returns
    -------
    nx.DiGraph
        An acyclic directed graph suitable for :func:`topological_sort`.

    Raises
    ------
    CyclicDependencyError
        If the merged graph contains a cycle, including a resource that
        depends on itself.
    """
    graph = nx.DiGraph()

    for key in sorted(set(desired) | set(snapshot.resources)):
        graph.add_node(
            key,
            desired=desired.get(key),
            current=snapshot.resources.get(key),
            destroy=key not in desired,
        )

    for key in sorted(desired):
        for dep in desired[key].dependencies:
            if dep in desired:
                graph.add_edge(dep, key)
            else:
                # Left for the planner to judge: either a conflict with a
                # pending destroy or a reference to something unmanaged.
                logger.warning(
                    "Resource '%s' depends on '%s' which is not declared; ignoring it for ordering",
                    key,
                    dep,
                    extra={"resource_key": key},
                )

    destroy_nodes = {key for key in snapshot.resources if key not in desired}
    for key in sorted(snapshot.resources):
        record = snapshot.resources[key]
        for dep in record.dependencies:
            if dep in destroy_nodes:
                graph.add_edge(key, dep)

    detect_cycles(graph)
    return graph


def destroy_keys(graph: nx.DiGraph) -> list[str]:
    """Return the sorted keys of destroy nodes."""
    return sorted(n for n, data in graph.nodes(data=True) if data.get("destroy"))


# ---------------------------------------------------------------------------
# Topological sort
# ---------------------------------------------------------------------------


def _lexicographic_topological_sort(graph: nx.DiGraph) -> list[str]:
    """Stable topological sort with lexicographic tie-breaking.

    Kahn's algorithm with a min-heap, so that among nodes with no ordering
    constraint the result is sorted alphabetically and identical input
    always yields an identical order.
    """
    in_degree = dict(graph.in_degree())
    heap = sorted(n for n, d in in_degree.items() if d == 0)
    heapq.heapify(heap)
    result: list[str] = []
    while heap:
        node = heapq.heappop(heap)
        result.append(node)
        for successor in sorted(graph.successors(node)):
            in_degree[successor] -= 1
            if in_degree[successor] == 0:
                heapq.heappush(heap, successor)
    if len(result) != len(graph):
        raise nx.NetworkXUnfeasible("Graph contains a cycle")
    return result


def topological_sort(graph: nx.DiGraph) -> list[str]:
    """Return a deterministic topological ordering of the graph's keys.

    Raises
    ------
    CyclicDependencyError
        If the graph contains one or more cycles.
    """
    try:
        return _lexicographic_topological_sort(graph)
    except nx.NetworkXUnfeasible:
        raise CyclicDependencyError(_sorted_cycles(graph)) from None


# ---------------------------------------------------------------------------
# Traversal helpers
# ---------------------------------------------------------------------------


def get_downstream(graph: nx.DiGraph, key: str) -> set[str]:
    """Return all keys transitively downstream of *key* (excluding *key*).

    Performs a breadth-first traversal following successor edges.
    """
    if key not in graph:
        return set()

    visited: set[str] = set()
    queue: deque[str] = deque(graph.successors(key))

    while queue:
        current = queue.popleft()
        if current in visited:
            continue
        visited.add(current)
        queue.extend(graph.successors(current))

    return visited


def get_upstream(graph: nx.DiGraph, key: str) -> set[str]:
    """Return all keys transitively upstream of *key* (excluding *key*)."""
    if key not in graph:
        return set()

    visited: set[str] = set()
    queue: deque[str] = deque(graph.predecessors(key))

    while queue:
        current = queue.popleft()
        if current in visited:
            continue
        visited.add(current)
        queue.extend(graph.predecessors(current))

    return visited


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def _sorted_cycles(graph: nx.DiGraph) -> list[list[str]]:
    """Every simple cycle, rotated to start at its smallest key, sorted."""
    cycles: list[list[str]] = []
    for cycle in nx.simple_cycles(graph):
        pivot = cycle.index(min(cycle))
        cycles.append(cycle[pivot:] + cycle[:pivot])
    return sorted(cycles)


def detect_cycles(graph: nx.DiGraph) -> None:
    """Raise :class:`CyclicDependencyError` if *graph* has any cycle."""
    if nx.is_directed_acyclic_graph(graph):
        return
    cycles = _sorted_cycles(graph)
    logger.error("Execution graph has %d cycle(s)", len(cycles))
    raise CyclicDependencyError(cycles)


def validate_dependencies(desired: DesiredGraph) -> list[str]:
    """Return warnings for desired dependencies that name undeclared keys.

    An empty list means every dependency resolves within *desired*.
    """
    warnings: list[str] = []
    for key in sorted(desired):
        for dep in desired[key].dependencies:
            if dep not in desired:
                warnings.append(f"Resource '{key}' depends on '{dep}' which is not declared.")
    return warnings
