"""Domain models for the reconciliation engine."""

from converge_engine.models.drift import DriftEntry, DriftKind, DriftReport
from converge_engine.models.lock import LockHandle, LockInfo, OperationKind
from converge_engine.models.plan import (
    ActionKind,
    AttributeChange,
    Plan,
    PlannedAction,
    PlanSummary,
    ReplaceOrder,
)
from converge_engine.models.resource import (
    DesiredGraph,
    DesiredResource,
    ResourceRecord,
    deposed_key,
    desired_graph_from_mapping,
    make_key,
    split_key,
)
from converge_engine.models.result import ActionResult, ActionStatus, ApplyResult
from converge_engine.models.snapshot import StateSnapshot

__all__ = [
    "ActionKind",
    "ActionResult",
    "ActionStatus",
    "ApplyResult",
    "AttributeChange",
    "DesiredGraph",
    "DesiredResource",
    "DriftEntry",
    "DriftKind",
    "DriftReport",
    "LockHandle",
    "LockInfo",
    "OperationKind",
    "Plan",
    "PlanSummary",
    "PlannedAction",
    "ReplaceOrder",
    "ResourceRecord",
    "StateSnapshot",
    "deposed_key",
    "desired_graph_from_mapping",
    "make_key",
    "split_key",
]
