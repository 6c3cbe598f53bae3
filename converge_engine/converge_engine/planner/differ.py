"""Deterministic planner: execution graph + snapshot to :class:`Plan`.

Given the merged execution graph, the snapshot it was built from, the
provider's per-type schema, and optionally the live attributes gathered by
a refresh, this module decides one action per resource key.  The same
inputs always produce a byte-identical plan.

Rules, in priority order per key
--------------------------------
1. In the snapshot but not desired: ``destroy``.
2. Desired but not in the snapshot: ``create``.
3. Both: compare desired attributes with the baseline (refreshed live
   attributes when present for the key, otherwise the stored ones).  A
   differing ``force_new`` attribute gives ``replace``, any other
   difference ``update``, no difference ``no-op``.  A refreshed baseline of
   ``None`` means the resource vanished and gives ``create``.

Planning never mutates the snapshot or calls the provider for writes.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from typing import Any

import networkx as nx

from converge_engine.errors import DependencyConflictError
from converge_engine.graph.builder import destroy_keys, topological_sort
from converge_engine.models.plan import ActionKind, Plan, PlannedAction
from converge_engine.models.resource import DesiredResource, ResourceRecord
from converge_engine.models.snapshot import StateSnapshot
from converge_engine.planner.compare import diff_attributes
from converge_engine.provider.base import ResourceSchema

logger = logging.getLogger(__name__)

SchemaLookup = Callable[[str], ResourceSchema]
RefreshedAttributes = Mapping[str, dict[str, Any] | None]


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def generate_plan(
    graph: nx.DiGraph,
    snapshot: StateSnapshot,
    schema_for: SchemaLookup,
    refreshed_attributes: RefreshedAttributes | None = None,
) -> Plan:
    """Generate a deterministic plan.

    Parameters
    ----------
    graph:
        Execution graph built by
        :func:`~converge_engine.graph.builder.build_execution_graph` from the
        desired graph and *snapshot*.
    snapshot:
        The snapshot the plan is computed against.  Its lineage and serial
        become the plan's ``lineage`` and ``base_serial``.
    schema_for:
        Returns the provider schema for a resource type (typically
        ``provider.schema``).
    refreshed_attributes:
        Live attributes keyed by resource key, as produced by
        :meth:`DriftReport.refreshed_attributes`.  ``None`` values mark
        resources that no longer exist.

    Returns
    -------
    Plan
        Actions in topological order of *graph*.

    Raises
    ------
    DependencyConflictError
        If a resource to be destroyed is still listed among the desired
        dependencies of a surviving resource.
    CyclicDependencyError
        If *graph* contains a cycle.
    """
    refreshed = dict(refreshed_attributes or {})
    _check_destroy_conflicts(graph)

    actions: list[PlannedAction] = []
    for key in topological_sort(graph):
        node = graph.nodes[key]
        desired: DesiredResource | None = node.get("desired")
        current: ResourceRecord | None = node.get("current")
        depends_on = sorted(graph.predecessors(key))

        if desired is None:
            assert current is not None  # noqa: S101
            action = _destroy_action(key, current, depends_on)
        elif current is None:
            action = _create_action(key, desired, depends_on, reason="not present in state")
        elif key in refreshed and refreshed[key] is None:
            action = _create_action(key, desired, depends_on, reason="resource no longer exists; recreating")
        else:
            baseline = refreshed[key] if key in refreshed else current.attributes
            assert baseline is not None  # noqa: S101
            action = _compare_action(key, desired, current, baseline, schema_for(desired.type), depends_on)

        actions.append(action)

    plan = Plan.build(snapshot.lineage, snapshot.serial, actions)
    logger.info(
        "Generated plan %s against serial %d: %d create, %d update, %d replace, %d destroy, %d no-op",
        plan.plan_id[:12],
        plan.base_serial,
        plan.summary.create,
        plan.summary.update,
        plan.summary.replace,
        plan.summary.destroy,
        plan.summary.no_op,
        extra={"plan_id": plan.plan_id, "serial": plan.base_serial},
    )
    return plan


# ---------------------------------------------------------------------------
# Dependency safety
# ---------------------------------------------------------------------------


def _check_destroy_conflicts(graph: nx.DiGraph) -> None:
    """Refuse to destroy a resource a surviving one still declares as a dependency."""
    doomed = set(destroy_keys(graph))
    if not doomed:
        return
    for key in sorted(graph.nodes):
        desired: DesiredResource | None = graph.nodes[key].get("desired")
        if desired is None:
            continue
        for dep in desired.dependencies:
            if dep in doomed:
                raise DependencyConflictError(key, dep)


# ---------------------------------------------------------------------------
# Action builders
# ---------------------------------------------------------------------------


def _destroy_action(key: str, current: ResourceRecord, depends_on: list[str]) -> PlannedAction:
    return PlannedAction(
        resource_key=key,
        resource_type=current.type,
        action_kind=ActionKind.DESTROY,
        before=dict(current.attributes),
        after=None,
        resource_id=current.id,
        depends_on=depends_on,
        reason="no longer declared",
    )


def _create_action(
    key: str,
    desired: DesiredResource,
    depends_on: list[str],
    *,
    reason: str,
) -> PlannedAction:
    return PlannedAction(
        resource_key=key,
        resource_type=desired.type,
        action_kind=ActionKind.CREATE,
        before=None,
        after=dict(desired.attributes),
        dependencies=list(desired.dependencies),
        depends_on=depends_on,
        reason=reason,
    )


def _compare_action(
    key: str,
    desired: DesiredResource,
    current: ResourceRecord,
    baseline: dict[str, Any],
    schema: ResourceSchema,
    depends_on: list[str],
) -> PlannedAction:
    changes = diff_attributes(desired.attributes, baseline, schema)
    replace_names = [c.name for c in changes if c.requires_replacement]

    if replace_names:
        kind = ActionKind.REPLACE
        reason = f"force-new attributes changed: {', '.join(replace_names)}"
    elif changes:
        kind = ActionKind.UPDATE
        reason = f"attributes changed: {', '.join(c.name for c in changes)}"
    else:
        kind = ActionKind.NO_OP
        if current.dependencies != desired.dependencies:
            reason = "dependencies changed"
        else:
            reason = "up to date"

    return PlannedAction(
        resource_key=key,
        resource_type=desired.type,
        action_kind=kind,
        before=dict(baseline),
        after=dict(desired.attributes),
        resource_id=current.id,
        changes=changes,
        replace_order=schema.replace_strategy if kind == ActionKind.REPLACE else None,
        dependencies=list(desired.dependencies),
        depends_on=depends_on,
        reason=reason,
    )
