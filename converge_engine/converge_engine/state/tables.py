"""SQLAlchemy 2.0 ORM table definitions for the database state store.

All tables use the ``Mapped`` / ``mapped_column`` declaration style.  The
``Base`` declarative base is exported for :func:`create_tables`.
"""

from __future__ import annotations

from datetime import UTC, datetime

from sqlalchemy import DateTime, Index, Integer, PrimaryKeyConstraint, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def _utcnow() -> datetime:
    """Return the current UTC timestamp (timezone-aware)."""
    return datetime.now(UTC)


# ---------------------------------------------------------------------------
# Declarative base
# ---------------------------------------------------------------------------


class Base(DeclarativeBase):
    """Shared declarative base for all state tables."""


# ---------------------------------------------------------------------------
# Snapshots
# ---------------------------------------------------------------------------


class StateSnapshotTable(Base):
    """Every committed snapshot, one row per ``(workspace, serial)``.

    The primary key makes a second commit on top of the same serial fail
    even if two writers somehow raced past the lock.
    """

    __tablename__ = "state_snapshots"

    workspace: Mapped[str] = mapped_column(String(128), nullable=False)
    serial: Mapped[int] = mapped_column(Integer, nullable=False)
    lineage: Mapped[str] = mapped_column(String(64), nullable=False)
    snapshot_json: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)

    __table_args__ = (
        PrimaryKeyConstraint("workspace", "serial", name="pk_state_snapshots"),
        Index("ix_state_snapshots_lineage", "lineage"),
    )


# ---------------------------------------------------------------------------
# Locks
# ---------------------------------------------------------------------------


class StateLockTable(Base):
    """At most one lock row per workspace."""

    __tablename__ = "state_locks"

    workspace: Mapped[str] = mapped_column(String(128), primary_key=True)
    lock_id: Mapped[str] = mapped_column(String(64), nullable=False)
    holder: Mapped[str] = mapped_column(String(256), nullable=False)
    operation_kind: Mapped[str] = mapped_column(String(32), nullable=False)
    acquired_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)
