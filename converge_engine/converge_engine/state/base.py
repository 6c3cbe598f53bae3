"""State store contract shared by every backend.

:class:`StateStore` implements the locking protocol (wait up to a timeout,
refuse stale locks unless a steal is explicitly requested) and the commit
preconditions once; backends supply the storage primitives.  Backends must
perform the commit checks and the write inside one critical section so
that a failed commit never mutates the store.
"""

from __future__ import annotations

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from converge_engine.errors import (
    LineageMismatchError,
    LockHeldError,
    LockNotHeldError,
    LockStaleError,
    StaleSerialError,
)
from converge_engine.models.lock import LockHandle, LockInfo, OperationKind
from converge_engine.models.resource import ResourceRecord
from converge_engine.models.snapshot import StateSnapshot

logger = logging.getLogger(__name__)


class StateStore(ABC):
    """Durable, versioned snapshot with an embedded mutual-exclusion lock.

    Parameters
    ----------
    lock_expiry_seconds:
        Age after which a recorded lock is considered stale.
    lock_poll_interval:
        Seconds between acquisition attempts while waiting on a held lock.
    default_lock_timeout:
        Timeout used by :meth:`acquire_lock` when none is passed.  ``0``
        fails immediately when the lock is held.
    """

    def __init__(
        self,
        *,
        lock_expiry_seconds: float = 3600.0,
        lock_poll_interval: float = 0.5,
        default_lock_timeout: float = 0.0,
    ) -> None:
        self._lock_expiry_seconds = lock_expiry_seconds
        self._lock_poll_interval = lock_poll_interval
        self._default_lock_timeout = default_lock_timeout

    @property
    def lock_expiry_seconds(self) -> float:
        return self._lock_expiry_seconds

    # -- Storage primitives ---------------------------------------------------

    @abstractmethod
    async def _load_snapshot(self) -> StateSnapshot | None:
        """Return the latest committed snapshot, or ``None`` if the store is empty."""

    @abstractmethod
    async def _create_initial(self, snapshot: StateSnapshot) -> StateSnapshot:
        """Persist *snapshot* only if the store is empty; return whichever snapshot won."""

    @abstractmethod
    async def _read_lock(self) -> LockInfo | None:
        """Return the recorded lock, if any."""

    @abstractmethod
    async def _try_create_lock(self, info: LockInfo) -> bool:
        """Atomically record *info* if no lock exists.  Return ``True`` on success."""

    @abstractmethod
    async def _replace_lock(self, expected_lock_id: str, info: LockInfo) -> bool:
        """Swap the lock with id *expected_lock_id* for *info*.  Return ``True`` on success."""

    @abstractmethod
    async def _delete_lock(self, lock_id: str) -> bool:
        """Delete the lock if its id is *lock_id*.  Return ``True`` if a lock was removed."""

    @abstractmethod
    async def _commit(
        self,
        handle: LockHandle,
        base_serial: int,
        resources: dict[str, ResourceRecord],
        lineage: str,
    ) -> StateSnapshot:
        """Check preconditions, write the successor snapshot, and drop the lock atomically."""

    # -- Public contract ------------------------------------------------------

    async def read(self) -> StateSnapshot:
        """Return the current committed snapshot without taking the lock.

        An empty store is initialised with a serial-0 snapshot and a fresh
        lineage on first read.
        """
        snapshot = await self._load_snapshot()
        if snapshot is None:
            snapshot = await self._create_initial(StateSnapshot.empty())
            logger.info("Initialised empty state with lineage %s", snapshot.lineage)
        return snapshot

    async def lock_info(self) -> LockInfo | None:
        """Return the currently recorded lock, if any."""
        return await self._read_lock()

    async def acquire_lock(
        self,
        operation_kind: OperationKind,
        holder: str,
        timeout: float | None = None,
        *,
        steal: bool = False,
    ) -> LockHandle:
        """Acquire the state lock.

        Parameters
        ----------
        operation_kind:
            The operation the lock is taken for.
        holder:
            Opaque identifier of the caller, recorded in the lock.
        timeout:
            Seconds to wait for a held lock; defaults to the store's
            ``default_lock_timeout``.
        steal:
            Replace a lock that is older than the expiry.  A lock that is
            not stale is never stolen.

        Raises
        ------
        LockHeldError
            If another holder still holds the lock when *timeout* elapses.
        LockStaleError
            If the recorded lock is stale and *steal* is false.
        """
        wait = self._default_lock_timeout if timeout is None else timeout
        deadline = time.monotonic() + wait

        while True:
            info = LockInfo(holder=holder, operation_kind=operation_kind)
            if await self._try_create_lock(info):
                logger.info(
                    "Acquired %s lock %s for %s",
                    operation_kind.value,
                    info.lock_id,
                    holder,
                    extra={"lock_id": info.lock_id, "holder": holder},
                )
                return LockHandle.from_info(info)

            existing = await self._read_lock()
            if existing is None:
                # Released between our attempt and the read; try again at once.
                continue

            if existing.is_stale(self._lock_expiry_seconds):
                if not steal:
                    raise LockStaleError(existing, self._lock_expiry_seconds)
                if await self._replace_lock(existing.lock_id, info):
                    logger.warning(
                        "Stole stale %s lock %s held by %s since %s",
                        existing.operation_kind.value,
                        existing.lock_id,
                        existing.holder,
                        existing.acquired_at.isoformat(),
                        extra={"lock_id": info.lock_id, "holder": holder},
                    )
                    return LockHandle.from_info(info)
                continue

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise LockHeldError(existing)
            await asyncio.sleep(min(self._lock_poll_interval, remaining))

    async def release_lock(self, handle: LockHandle) -> None:
        """Release the lock held by *handle*.  Idempotent."""
        if await self._delete_lock(handle.lock_id):
            logger.info(
                "Released %s lock %s",
                handle.operation_kind.value,
                handle.lock_id,
                extra={"lock_id": handle.lock_id, "holder": handle.holder},
            )

    async def commit(
        self,
        handle: LockHandle,
        base_serial: int,
        resources: dict[str, ResourceRecord],
        *,
        lineage: str,
    ) -> StateSnapshot:
        """Durably write *resources* as the successor of serial *base_serial*.

        On success the serial is incremented by one and the lock is
        released.  On failure nothing is written and the lock is kept.

        Raises
        ------
        LockNotHeldError
            If *handle* no longer owns the lock.
        LineageMismatchError
            If the store's lineage is not *lineage*.
        StaleSerialError
            If the store's serial is not *base_serial*.
        """
        await self.read()
        snapshot = await self._commit(handle, base_serial, resources, lineage)
        logger.info(
            "Committed state serial %d (%d resources)",
            snapshot.serial,
            len(snapshot.resources),
            extra={"lock_id": handle.lock_id, "serial": snapshot.serial},
        )
        return snapshot

    async def force_unlock(self, lock_id: str, released_by: str, reason: str) -> bool:
        """Forcibly remove a lock with an audit trail.  Returns ``True`` if a lock was removed.

        This is the explicit operator path for recovering a lock stranded by
        a crashed process; it is never invoked automatically.
        """
        existing = await self._read_lock()
        if existing is None or existing.lock_id != lock_id:
            return False
        if not await self._delete_lock(lock_id):
            return False
        logger.warning(
            "lock.force_release: lock %s (holder=%s, operation=%s, acquired_at=%s) released by %s: %s",
            lock_id,
            existing.holder,
            existing.operation_kind.value,
            existing.acquired_at.isoformat(),
            released_by,
            reason,
            extra={"lock_id": lock_id, "holder": released_by},
        )
        return True

    @asynccontextmanager
    async def locked(
        self,
        operation_kind: OperationKind,
        holder: str,
        timeout: float | None = None,
        *,
        steal: bool = False,
    ) -> AsyncIterator[LockHandle]:
        """Hold the lock for the duration of a ``async with`` block."""
        handle = await self.acquire_lock(operation_kind, holder, timeout, steal=steal)
        try:
            yield handle
        finally:
            await self.release_lock(handle)

    async def close(self) -> None:  # noqa: B027
        """Release backend resources."""

    # -- Shared helpers -------------------------------------------------------

    @staticmethod
    def _check_commit(
        handle: LockHandle,
        current_lock: LockInfo | None,
        current: StateSnapshot,
        base_serial: int,
        lineage: str,
    ) -> None:
        if current_lock is None or current_lock.lock_id != handle.lock_id:
            raise LockNotHeldError(handle.lock_id)
        if current.lineage != lineage:
            raise LineageMismatchError(lineage, current.lineage)
        if current.serial != base_serial:
            raise StaleSerialError(base_serial, current.serial)
