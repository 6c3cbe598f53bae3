"""Execution graph construction and graph operations."""

from converge_engine.errors import CyclicDependencyError
from converge_engine.graph.builder import (
    build_execution_graph,
    destroy_keys,
    detect_cycles,
    get_downstream,
    get_upstream,
    topological_sort,
    validate_dependencies,
)

__all__ = [
    "CyclicDependencyError",
    "build_execution_graph",
    "destroy_keys",
    "detect_cycles",
    "get_downstream",
    "get_upstream",
    "topological_sort",
    "validate_dependencies",
]
