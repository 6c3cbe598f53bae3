"""Drift report models.

A drift report compares provider-observed attributes against stored state
without consulting desired configuration.  It is consumed by the next plan
as the refreshed comparison baseline.
"""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from converge_engine.models.plan import AttributeChange


class DriftKind(str, Enum):
    """Classification of a drifted resource."""

    CHANGED = "changed"
    MISSING = "missing"


class DriftEntry(BaseModel):
    """A single drifted resource."""

    resource_key: str = Field(..., min_length=1)
    resource_type: str = Field(..., min_length=1)
    kind: DriftKind
    resource_id: str = Field(..., min_length=1, description="The stored external id that was read.")
    changes: list[AttributeChange] = Field(
        default_factory=list,
        description="Attribute differences (changed only); before=stored, after=live.",
    )
    live_attributes: dict[str, Any] | None = Field(
        default=None,
        description="Attributes reported by the provider; None when missing.",
    )


class DriftReport(BaseModel):
    """Result of one drift-detection pass over a snapshot."""

    lineage: str
    base_serial: int = Field(..., ge=0, description="Serial of the snapshot that was checked.")
    checked: int = Field(default=0, ge=0, description="Number of records read from the provider.")
    entries: list[DriftEntry] = Field(default_factory=list)
    errors: dict[str, str] = Field(
        default_factory=dict,
        description="Resource keys whose read failed for reasons other than NotFound.",
    )

    @property
    def has_drift(self) -> bool:
        return bool(self.entries)

    @property
    def changed(self) -> list[str]:
        return [e.resource_key for e in self.entries if e.kind == DriftKind.CHANGED]

    @property
    def missing(self) -> list[str]:
        return [e.resource_key for e in self.entries if e.kind == DriftKind.MISSING]

    def entry_for(self, resource_key: str) -> DriftEntry | None:
        for entry in self.entries:
            if entry.resource_key == resource_key:
                return entry
        return None

    def refreshed_attributes(self) -> dict[str, dict[str, Any] | None]:
        """Baseline overrides for the planner.

        Changed resources map to their live attributes; missing resources
        map to ``None`` so the planner treats them as gone.
        """
        refreshed: dict[str, dict[str, Any] | None] = {}
        for entry in self.entries:
            if entry.kind == DriftKind.MISSING:
                refreshed[entry.resource_key] = None
            else:
                refreshed[entry.resource_key] = dict(entry.live_attributes or {})
        return refreshed
