"""State snapshot model: the durable source of truth for managed resources.

Exactly one snapshot is authoritative at a time.  Each committed change
produces a new snapshot whose ``serial`` is one higher and whose
``lineage`` is unchanged.
"""

from __future__ import annotations

import uuid

from pydantic import BaseModel, Field

from converge_engine.models.resource import ResourceRecord

STATE_FORMAT_VERSION = 1


def new_lineage() -> str:
    """Return a fresh lineage identifier."""
    return uuid.uuid4().hex


class StateSnapshot(BaseModel):
    """Versioned mapping of resource key to :class:`ResourceRecord`."""

    version: int = Field(
        default=STATE_FORMAT_VERSION,
        description="Persisted layout version.",
    )
    lineage: str = Field(
        ...,
        min_length=1,
        description="Identifier fixed at creation; unrelated histories never share one.",
    )
    serial: int = Field(
        default=0,
        ge=0,
        description="Incremented by exactly one on every successful commit.",
    )
    resources: dict[str, ResourceRecord] = Field(
        default_factory=dict,
        description="Records keyed by 'type:name'.",
    )

    @classmethod
    def empty(cls, lineage: str | None = None) -> StateSnapshot:
        """Create the initial serial-0 snapshot."""
        return cls(lineage=lineage or new_lineage(), serial=0, resources={})

    def successor(self, resources: dict[str, ResourceRecord]) -> StateSnapshot:
        """Return the snapshot that a commit of *resources* on top of this one produces."""
        return StateSnapshot(
            version=self.version,
            lineage=self.lineage,
            serial=self.serial + 1,
            resources={key: resources[key].model_copy(deep=True) for key in sorted(resources)},
        )

    def get(self, key: str) -> ResourceRecord | None:
        return self.resources.get(key)

    def managed_keys(self) -> list[str]:
        """Keys of records that carry an external id, sorted."""
        return sorted(key for key, record in self.resources.items() if record.id)
