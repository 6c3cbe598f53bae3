"""Database-backed state store (PostgreSQL or SQLite via SQLAlchemy async).

Every committed snapshot is kept as a row, so the full serial history of a
workspace remains queryable.  A commit inserts the successor row and deletes
the lock row in a single transaction: either both happen or neither does.
"""

from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncEngine

from converge_engine.errors import StaleSerialError
from converge_engine.models.lock import LockHandle, LockInfo
from converge_engine.models.resource import ResourceRecord
from converge_engine.models.snapshot import StateSnapshot
from converge_engine.state.base import StateStore
from converge_engine.state.database import create_tables, forget_engine, get_engine, get_session
from converge_engine.state.repository import LockRepository, SnapshotRepository, _as_utc
from converge_engine.state.serializer import deserialize_snapshot

logger = logging.getLogger(__name__)


class DatabaseStateStore(StateStore):
    """State store persisted in the ``state_snapshots`` and ``state_locks`` tables.

    Parameters
    ----------
    engine:
        Async engine to use.  Tables are created on first use.
    workspace:
        Identity of the state within the database; each workspace has its
        own lineage, serial history, and lock.
    owns_engine:
        Dispose of *engine* on :meth:`close`.
    """

    def __init__(
        self,
        engine: AsyncEngine,
        *,
        workspace: str = "default",
        owns_engine: bool = False,
        lock_expiry_seconds: float = 3600.0,
        lock_poll_interval: float = 0.5,
        default_lock_timeout: float = 0.0,
    ) -> None:
        super().__init__(
            lock_expiry_seconds=lock_expiry_seconds,
            lock_poll_interval=lock_poll_interval,
            default_lock_timeout=default_lock_timeout,
        )
        self._engine = engine
        self._workspace = workspace
        self._owns_engine = owns_engine
        self._tables_ready = False

    @classmethod
    def from_url(
        cls,
        database_url: str,
        *,
        pool_size: int = 10,
        max_overflow: int = 20,
        **kwargs: object,
    ) -> DatabaseStateStore:
        engine = get_engine(database_url, pool_size=pool_size, max_overflow=max_overflow)
        return cls(engine, owns_engine=True, **kwargs)  # type: ignore[arg-type]

    @property
    def workspace(self) -> str:
        return self._workspace

    async def _ensure_tables(self) -> None:
        if not self._tables_ready:
            await create_tables(self._engine)
            self._tables_ready = True

    # -- Snapshot -------------------------------------------------------------

    async def _load_snapshot(self) -> StateSnapshot | None:
        await self._ensure_tables()
        async with get_session(self._engine) as session:
            row = await SnapshotRepository(session, self._workspace).get_latest()
            if row is None:
                return None
            return deserialize_snapshot(row.snapshot_json)

    async def _create_initial(self, snapshot: StateSnapshot) -> StateSnapshot:
        await self._ensure_tables()
        async with get_session(self._engine) as session:
            inserted = await SnapshotRepository(session, self._workspace).append_if_absent(snapshot)
        if inserted:
            return snapshot
        existing = await self._load_snapshot()
        assert existing is not None  # noqa: S101
        return existing

    # -- Lock -----------------------------------------------------------------

    async def _read_lock(self) -> LockInfo | None:
        await self._ensure_tables()
        async with get_session(self._engine) as session:
            return await LockRepository(session, self._workspace).get()

    async def _try_create_lock(self, info: LockInfo) -> bool:
        await self._ensure_tables()
        async with get_session(self._engine) as session:
            return await LockRepository(session, self._workspace).try_acquire(info)

    async def _replace_lock(self, expected_lock_id: str, info: LockInfo) -> bool:
        async with get_session(self._engine) as session:
            return await LockRepository(session, self._workspace).replace(expected_lock_id, info)

    async def _delete_lock(self, lock_id: str) -> bool:
        await self._ensure_tables()
        async with get_session(self._engine) as session:
            return await LockRepository(session, self._workspace).release(lock_id)

    # -- Commit ---------------------------------------------------------------

    async def _commit(
        self,
        handle: LockHandle,
        base_serial: int,
        resources: dict[str, ResourceRecord],
        lineage: str,
    ) -> StateSnapshot:
        async with get_session(self._engine) as session:
            snapshots = SnapshotRepository(session, self._workspace)
            locks = LockRepository(session, self._workspace)

            current_row = await snapshots.get_latest()
            assert current_row is not None  # noqa: S101
            current = deserialize_snapshot(current_row.snapshot_json)
            self._check_commit(handle, await locks.get(), current, base_serial, lineage)

            successor = current.successor(resources)
            try:
                await snapshots.append(successor)
            except IntegrityError as exc:
                # Another writer inserted this serial concurrently.
                raise StaleSerialError(base_serial, successor.serial) from exc
            await locks.release(handle.lock_id)
        return successor

    # -- History --------------------------------------------------------------

    async def history(self, limit: int = 20) -> list[tuple[int, datetime]]:
        """Return ``(serial, created_at)`` pairs, newest first."""
        await self._ensure_tables()
        async with get_session(self._engine) as session:
            rows = await SnapshotRepository(session, self._workspace).list_recent(limit)
            return [(row.serial, _as_utc(row.created_at)) for row in rows]

    async def read_serial(self, serial: int) -> StateSnapshot | None:
        """Return the snapshot committed at *serial*, if it exists."""
        await self._ensure_tables()
        async with get_session(self._engine) as session:
            row = await SnapshotRepository(session, self._workspace).get_by_serial(serial)
            if row is None:
                return None
            return deserialize_snapshot(row.snapshot_json)

    async def close(self) -> None:
        if self._owns_engine:
            forget_engine(self._engine)
            await self._engine.dispose()
