"""Plan models for the reconciliation planner.

Plans are **deterministic**: given the same desired graph, snapshot, and
refreshed attributes, the planner produces an identical plan every time.
``plan_id`` is derived from a content hash rather than a random UUID, and no
wall-clock timestamps are embedded in the plan itself.
"""

from __future__ import annotations

import hashlib
import json
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def compute_deterministic_id(*parts: str) -> str:
    """Derive a deterministic SHA-256 hex ID from an ordered sequence of strings."""
    hasher = hashlib.sha256()
    for part in parts:
        hasher.update(part.encode("utf-8"))
        hasher.update(b"\x00")  # Null-byte domain separator prevents collisions
    return hasher.hexdigest()


def _canonical(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), default=str)


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class ActionKind(str, Enum):
    """What the reconciler must do for one resource."""

    CREATE = "create"
    UPDATE = "update"
    REPLACE = "replace"
    DESTROY = "destroy"
    NO_OP = "no-op"


class ReplaceOrder(str, Enum):
    """Order of the destroy/create pair that makes up a replace."""

    DESTROY_BEFORE_CREATE = "destroy_before_create"
    CREATE_BEFORE_DESTROY = "create_before_destroy"


# ---------------------------------------------------------------------------
# Actions
# ---------------------------------------------------------------------------


class AttributeChange(BaseModel):
    """A single attribute whose desired value differs from the baseline."""

    name: str
    before: Any = None
    after: Any = None
    requires_replacement: bool = False


class PlannedAction(BaseModel):
    """One proposed change to one resource."""

    resource_key: str = Field(..., min_length=1, description="'type:name' of the resource.")
    resource_type: str = Field(..., min_length=1, description="Provider-side resource kind.")
    action_kind: ActionKind = Field(..., description="What the reconciler will do.")
    before: dict[str, Any] | None = Field(
        default=None,
        description="Baseline attributes (refreshed or stored); None when the resource does not exist.",
    )
    after: dict[str, Any] | None = Field(
        default=None,
        description="Desired attributes; None for destroys.",
    )
    resource_id: str | None = Field(
        default=None,
        description="Current external id of the resource, when it exists.",
    )
    changes: list[AttributeChange] = Field(
        default_factory=list,
        description="Attribute-level differences behind an update or replace.",
    )
    replace_order: ReplaceOrder | None = Field(
        default=None,
        description="Provider-declared ordering of the destroy/create pair (replace only).",
    )
    dependencies: list[str] = Field(
        default_factory=list,
        description="Desired dependencies to record on the resulting resource.",
    )
    depends_on: list[str] = Field(
        default_factory=list,
        description="Resource keys whose actions must complete before this one starts.",
    )
    reason: str = Field(default="", description="Human-readable explanation of the action.")

    @property
    def changed_attributes(self) -> list[str]:
        return [c.name for c in self.changes]

    @property
    def replace_attributes(self) -> list[str]:
        return [c.name for c in self.changes if c.requires_replacement]

    @property
    def is_change(self) -> bool:
        return self.action_kind != ActionKind.NO_OP

    def content_digest(self) -> str:
        """Stable digest of everything that affects execution."""
        return compute_deterministic_id(
            self.resource_key,
            self.action_kind.value,
            _canonical(self.before),
            _canonical(self.after),
            self.resource_id or "",
            self.replace_order.value if self.replace_order else "",
            ",".join(self.dependencies),
            ",".join(self.depends_on),
        )


# ---------------------------------------------------------------------------
# Plan
# ---------------------------------------------------------------------------


class PlanSummary(BaseModel):
    """Aggregate action counts surfaced in reports and logs."""

    create: int = Field(default=0, ge=0)
    update: int = Field(default=0, ge=0)
    replace: int = Field(default=0, ge=0)
    destroy: int = Field(default=0, ge=0)
    no_op: int = Field(default=0, ge=0)

    @classmethod
    def from_actions(cls, actions: list[PlannedAction]) -> PlanSummary:
        counts = {kind: 0 for kind in ActionKind}
        for action in actions:
            counts[action.action_kind] += 1
        return cls(
            create=counts[ActionKind.CREATE],
            update=counts[ActionKind.UPDATE],
            replace=counts[ActionKind.REPLACE],
            destroy=counts[ActionKind.DESTROY],
            no_op=counts[ActionKind.NO_OP],
        )

    @property
    def total_changes(self) -> int:
        return self.create + self.update + self.replace + self.destroy


class Plan(BaseModel):
    """An ordered, non-mutating proposal computed against one snapshot serial.

    A plan may be applied only while the store still has the same
    ``lineage`` and its ``serial`` equals ``base_serial``.
    """

    plan_id: str = Field(
        ...,
        min_length=1,
        description="Deterministic SHA-256 hex digest identifying this plan.",
    )
    lineage: str = Field(..., min_length=1, description="Lineage of the snapshot planned against.")
    base_serial: int = Field(..., ge=0, description="Serial of the snapshot planned against.")
    actions: list[PlannedAction] = Field(
        default_factory=list,
        description="Actions in execution order.",
    )
    summary: PlanSummary = Field(default_factory=PlanSummary)

    @classmethod
    def build(cls, lineage: str, base_serial: int, actions: list[PlannedAction]) -> Plan:
        plan_id = compute_deterministic_id(
            lineage,
            str(base_serial),
            *(a.content_digest() for a in actions),
        )
        return cls(
            plan_id=plan_id,
            lineage=lineage,
            base_serial=base_serial,
            actions=actions,
            summary=PlanSummary.from_actions(actions),
        )

    @property
    def has_changes(self) -> bool:
        return self.summary.total_changes > 0

    def action_for(self, resource_key: str) -> PlannedAction | None:
        for action in self.actions:
            if action.resource_key == resource_key:
                return action
        return None
