"""Repository classes providing access to the state tables.

Each repository takes an ``AsyncSession`` at construction time and operates
within the caller's transaction boundary.  All writes call ``session.flush()``
so constraint violations surface inside the caller's ``try`` block; the
caller is responsible for committing (or relying on ``get_session``).
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from converge_engine.models.lock import LockInfo, OperationKind
from converge_engine.models.snapshot import StateSnapshot
from converge_engine.state.serializer import serialize_snapshot
from converge_engine.state.tables import StateLockTable, StateSnapshotTable

logger = logging.getLogger(__name__)


def _as_utc(value: datetime) -> datetime:
    """SQLite drops tzinfo on round-trip; every stored timestamp is UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


async def _dialect_insert_nothing(
    session: AsyncSession,
    table: Any,
    values: dict[str, Any],
    index_elements: list[str],
) -> Any:
    """Dialect-aware insert with ``ON CONFLICT DO NOTHING``.

    Returns
    -------
    The execution result from ``session.execute()``; ``rowcount`` is 1 when
    the row was inserted and 0 when it already existed.
    """
    bind = session.get_bind()
    dialect_name = getattr(getattr(bind, "dialect", None), "name", "")

    stmt: Any
    if "postgresql" in str(dialect_name):
        from sqlalchemy.dialects.postgresql import insert as _pg_insert

        stmt = _pg_insert(table).values(**values)
    else:
        from sqlalchemy.dialects.sqlite import insert as _sqlite_insert

        stmt = _sqlite_insert(table).values(**values)
    stmt = stmt.on_conflict_do_nothing(index_elements=index_elements)
    return await session.execute(stmt)


# ---------------------------------------------------------------------------
# SnapshotRepository
# ---------------------------------------------------------------------------


class SnapshotRepository:
    """Read and append rows of the ``state_snapshots`` table."""

    def __init__(self, session: AsyncSession, workspace: str = "default") -> None:
        self._session = session
        self._workspace = workspace

    async def get_latest(self) -> StateSnapshotTable | None:
        """Return the row with the highest serial."""
        stmt = (
            select(StateSnapshotTable)
            .where(StateSnapshotTable.workspace == self._workspace)
            .order_by(StateSnapshotTable.serial.desc())
            .limit(1)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_by_serial(self, serial: int) -> StateSnapshotTable | None:
        stmt = select(StateSnapshotTable).where(
            StateSnapshotTable.workspace == self._workspace,
            StateSnapshotTable.serial == serial,
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_recent(self, limit: int = 20) -> list[StateSnapshotTable]:
        stmt = (
            select(StateSnapshotTable)
            .where(StateSnapshotTable.workspace == self._workspace)
            .order_by(StateSnapshotTable.serial.desc())
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def append(self, snapshot: StateSnapshot) -> StateSnapshotTable:
        """Insert *snapshot*.  Raises ``IntegrityError`` if its serial already exists."""
        row = StateSnapshotTable(
            workspace=self._workspace,
            serial=snapshot.serial,
            lineage=snapshot.lineage,
            snapshot_json=serialize_snapshot(snapshot),
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def append_if_absent(self, snapshot: StateSnapshot) -> bool:
        """Insert *snapshot* unless its serial already exists.  Return ``True`` if inserted."""
        result = await _dialect_insert_nothing(
            self._session,
            StateSnapshotTable,
            values={
                "workspace": self._workspace,
                "serial": snapshot.serial,
                "lineage": snapshot.lineage,
                "snapshot_json": serialize_snapshot(snapshot),
                "created_at": datetime.now(UTC),
            },
            index_elements=["workspace", "serial"],
        )
        await self._session.flush()
        return (result.rowcount or 0) > 0  # type: ignore[attr-defined]


# ---------------------------------------------------------------------------
# LockRepository
# ---------------------------------------------------------------------------


class LockRepository:
    """Row-based lock on the ``state_locks`` table, one row per workspace.

    ``try_acquire`` performs an atomic insert-if-absent, eliminating the
    TOCTOU race between a SELECT check and a subsequent INSERT.
    """

    def __init__(self, session: AsyncSession, workspace: str = "default") -> None:
        self._session = session
        self._workspace = workspace

    async def get(self) -> LockInfo | None:
        stmt = select(StateLockTable).where(StateLockTable.workspace == self._workspace)
        result = await self._session.execute(stmt)
        row = result.scalar_one_or_none()
        if row is None:
            return None
        return LockInfo(
            lock_id=row.lock_id,
            holder=row.holder,
            operation_kind=OperationKind(row.operation_kind),
            acquired_at=_as_utc(row.acquired_at),
        )

    async def try_acquire(self, info: LockInfo) -> bool:
        result = await _dialect_insert_nothing(
            self._session,
            StateLockTable,
            values={
                "workspace": self._workspace,
                "lock_id": info.lock_id,
                "holder": info.holder,
                "operation_kind": info.operation_kind.value,
                "acquired_at": info.acquired_at,
            },
            index_elements=["workspace"],
        )
        await self._session.flush()
        return (result.rowcount or 0) > 0  # type: ignore[attr-defined]

    async def replace(self, expected_lock_id: str, info: LockInfo) -> bool:
        stmt = (
            update(StateLockTable)
            .where(
                StateLockTable.workspace == self._workspace,
                StateLockTable.lock_id == expected_lock_id,
            )
            .values(
                lock_id=info.lock_id,
                holder=info.holder,
                operation_kind=info.operation_kind.value,
                acquired_at=info.acquired_at,
            )
        )
        result = await self._session.execute(stmt)
        await self._session.flush()
        return (result.rowcount or 0) > 0  # type: ignore[attr-defined]

    async def release(self, lock_id: str) -> bool:
        stmt = delete(StateLockTable).where(
            StateLockTable.workspace == self._workspace,
            StateLockTable.lock_id == lock_id,
        )
        result = await self._session.execute(stmt)
        await self._session.flush()
        return (result.rowcount or 0) > 0  # type: ignore[attr-defined]
