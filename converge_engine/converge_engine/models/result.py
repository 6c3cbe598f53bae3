"""Apply result models.

Every planned action ends in exactly one terminal status.  The
:class:`ApplyResult` is what a caller inspects after an apply, including a
failed or cancelled one, to learn which resources were committed.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field

from converge_engine.models.plan import ActionKind
from converge_engine.models.snapshot import StateSnapshot


class ActionStatus(str, Enum):
    """Terminal state of an individual action."""

    APPLIED = "applied"
    FAILED = "failed"
    SKIPPED = "skipped"


class ActionResult(BaseModel):
    """Outcome of a single planned action."""

    resource_key: str = Field(..., min_length=1)
    action_kind: ActionKind
    status: ActionStatus
    resource_id: str | None = Field(
        default=None,
        description="External id after the action (None once destroyed).",
    )
    error: str | None = Field(default=None, description="Failure or skip reason.")
    retryable: bool = Field(
        default=False,
        description="Whether the final provider error was marked retryable.",
    )
    started_at: datetime | None = None
    finished_at: datetime | None = None

    @property
    def duration_seconds(self) -> float | None:
        if self.started_at is None or self.finished_at is None:
            return None
        return (self.finished_at - self.started_at).total_seconds()


class ApplyResult(BaseModel):
    """Aggregate outcome of an apply.

    ``snapshot`` is the snapshot produced by the single commit, or ``None``
    when the commit itself did not happen.
    """

    plan_id: str
    snapshot: StateSnapshot | None = None
    results: list[ActionResult] = Field(default_factory=list)
    cancelled: bool = False

    def _keys(self, status: ActionStatus) -> list[str]:
        return [r.resource_key for r in self.results if r.status == status]

    @property
    def applied(self) -> list[str]:
        return self._keys(ActionStatus.APPLIED)

    @property
    def failed(self) -> list[str]:
        return self._keys(ActionStatus.FAILED)

    @property
    def skipped(self) -> list[str]:
        return self._keys(ActionStatus.SKIPPED)

    @property
    def succeeded(self) -> bool:
        return not self.cancelled and all(r.status == ActionStatus.APPLIED for r in self.results)

    def result_for(self, resource_key: str) -> ActionResult | None:
        for result in self.results:
            if result.resource_key == resource_key:
                return result
        return None
