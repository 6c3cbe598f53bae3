"""Lock models for mutual exclusion over a state store."""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from enum import Enum

from pydantic import BaseModel, Field


class OperationKind(str, Enum):
    """The kind of operation holding the lock."""

    PLAN = "plan"
    APPLY = "apply"
    DRIFT_CHECK = "drift-check"


class LockInfo(BaseModel):
    """The persisted lock record.

    ``acquired_at`` is always timezone-aware UTC so that staleness can be
    computed across processes.
    """

    lock_id: str = Field(
        default_factory=lambda: uuid.uuid4().hex,
        min_length=1,
        description="Unique identifier of this lock acquisition.",
    )
    holder: str = Field(..., min_length=1, description="Opaque identifier of the holding operation.")
    operation_kind: OperationKind = Field(..., description="Operation the lock was taken for.")
    acquired_at: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        description="When the lock was acquired (UTC).",
    )

    def age_seconds(self, now: datetime | None = None) -> float:
        now = now or datetime.now(UTC)
        acquired = self.acquired_at
        if acquired.tzinfo is None:
            acquired = acquired.replace(tzinfo=UTC)
        return (now - acquired).total_seconds()

    def is_stale(self, expiry_seconds: float, now: datetime | None = None) -> bool:
        """Return ``True`` when the lock is older than *expiry_seconds*."""
        return self.age_seconds(now) > expiry_seconds


class LockHandle(BaseModel):
    """Token returned by ``acquire_lock`` and presented to ``commit``/``release_lock``."""

    lock_id: str
    holder: str
    operation_kind: OperationKind
    acquired_at: datetime

    @classmethod
    def from_info(cls, info: LockInfo) -> LockHandle:
        return cls(
            lock_id=info.lock_id,
            holder=info.holder,
            operation_kind=info.operation_kind,
            acquired_at=info.acquired_at,
        )
