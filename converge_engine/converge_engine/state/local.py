"""Local file state store.

The snapshot lives in a single JSON file (``state.json`` by default) and the
lock in a sibling ``<state file>.lock`` file.

Key properties:

* Snapshot writes are atomic: temp file, ``fsync``, ``os.replace``, then a
  directory ``fsync``, so an acknowledged commit survives a crash.  The
  previous snapshot is kept as ``<state file>.backup``.
* The lock file is created with ``O_CREAT | O_EXCL`` so two processes can
  never both create it.  Stealing and releasing first ``rename`` the lock
  file to a unique claim path, so only one process can take over a given
  lock.
* A crash between the snapshot write and lock removal leaves the lock file
  behind; it becomes stale after the expiry and is recovered through an
  explicit steal or :meth:`StateStore.force_unlock`.

Blocking file I/O runs in worker threads via :func:`asyncio.to_thread`; an
in-process :class:`asyncio.Lock` serialises commits and lock swaps issued
from the same event loop.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import tempfile
import uuid
from datetime import UTC, datetime
from pathlib import Path

from pydantic import ValidationError

from converge_engine.models.lock import LockHandle, LockInfo, OperationKind
from converge_engine.models.resource import ResourceRecord
from converge_engine.models.snapshot import StateSnapshot
from converge_engine.state.base import StateStore
from converge_engine.state.serializer import deserialize_snapshot, serialize_snapshot

logger = logging.getLogger(__name__)


def _fsync_dir(directory: Path) -> None:
    """Flush a directory entry so a rename within it is durable."""
    try:
        fd = os.open(directory, os.O_RDONLY)
    except OSError:
        # Directories cannot be opened on every platform (e.g. Windows).
        return
    try:
        os.fsync(fd)
    finally:
        os.close(fd)


def _write_temp(path: Path, content: str) -> Path:
    fd, tmp_path = tempfile.mkstemp(prefix=f".{path.name}.", dir=str(path.parent))
    with os.fdopen(fd, "w", encoding="utf-8") as f:
        f.write(content)
        f.flush()
        os.fsync(f.fileno())
    return Path(tmp_path)


def _atomic_write(path: Path, content: str) -> None:
    """Replace *path* with *content* atomically and durably."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_file = _write_temp(path, content)
    try:
        tmp_file.replace(path)
        _fsync_dir(path.parent)
    finally:
        with contextlib.suppress(FileNotFoundError):
            tmp_file.unlink()


def _atomic_create(path: Path, content: str) -> bool:
    """Create *path* with *content* only if it does not exist.  Return ``True`` if created."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_file = _write_temp(path, content)
    try:
        os.link(tmp_file, path)
    except FileExistsError:
        return False
    finally:
        with contextlib.suppress(FileNotFoundError):
            tmp_file.unlink()
    _fsync_dir(path.parent)
    return True


class LocalStateStore(StateStore):
    """State store backed by a JSON file on the local filesystem.

    Parameters
    ----------
    path:
        Path of the state file.  Parent directories are created on demand.
    """

    def __init__(
        self,
        path: Path | str = Path(".converge/state.json"),
        *,
        lock_expiry_seconds: float = 3600.0,
        lock_poll_interval: float = 0.5,
        default_lock_timeout: float = 0.0,
    ) -> None:
        super().__init__(
            lock_expiry_seconds=lock_expiry_seconds,
            lock_poll_interval=lock_poll_interval,
            default_lock_timeout=default_lock_timeout,
        )
        self._path = Path(path)
        self._lock_path = self._path.with_name(self._path.name + ".lock")
        self._backup_path = self._path.with_name(self._path.name + ".backup")
        self._mutex = asyncio.Lock()

    @property
    def path(self) -> Path:
        return self._path

    @property
    def lock_path(self) -> Path:
        return self._lock_path

    # -- Snapshot -------------------------------------------------------------

    def _load_snapshot_sync(self) -> StateSnapshot | None:
        try:
            text = self._path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        return deserialize_snapshot(text)

    async def _load_snapshot(self) -> StateSnapshot | None:
        return await asyncio.to_thread(self._load_snapshot_sync)

    async def _create_initial(self, snapshot: StateSnapshot) -> StateSnapshot:
        created = await asyncio.to_thread(_atomic_create, self._path, serialize_snapshot(snapshot))
        if created:
            return snapshot
        existing = await self._load_snapshot()
        assert existing is not None  # noqa: S101
        return existing

    # -- Lock -----------------------------------------------------------------

    def _read_lock_sync(self) -> LockInfo | None:
        return self._read_lock_file(self._lock_path)

    def _read_lock_file(self, path: Path) -> LockInfo | None:
        try:
            text = path.read_text(encoding="utf-8")
            mtime = path.stat().st_mtime
        except FileNotFoundError:
            return None
        try:
            return LockInfo.model_validate_json(text)
        except ValidationError:
            # A writer died between creating and filling the lock file.  The
            # lock still counts as held and ages from the file's mtime.
            logger.warning("Unreadable lock file %s; treating it as held", path)
            return LockInfo(
                lock_id=f"unreadable-{int(mtime)}",
                holder="unknown",
                operation_kind=OperationKind.APPLY,
                acquired_at=datetime.fromtimestamp(mtime, tz=UTC),
            )

    async def _read_lock(self) -> LockInfo | None:
        return await asyncio.to_thread(self._read_lock_sync)

    def _try_create_lock_sync(self, info: LockInfo) -> bool:
        self._lock_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            fd = os.open(self._lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            return False
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(info.model_dump_json())
            f.flush()
            os.fsync(f.fileno())
        return True

    async def _try_create_lock(self, info: LockInfo) -> bool:
        return await asyncio.to_thread(self._try_create_lock_sync, info)

    def _claim_lock_sync(self, expected_lock_id: str) -> bool:
        """Move the lock file aside if it still records *expected_lock_id*.

        ``rename`` succeeds for exactly one caller per lock file, so two
        processes racing for the same lock cannot both claim it.  A claimed
        file that turns out to hold a different lock is put back.
        """
        seen = self._read_lock_sync()
        if seen is None or seen.lock_id != expected_lock_id:
            return False
        claim = self._lock_path.with_name(f".{self._lock_path.name}.{uuid.uuid4().hex}.claim")
        try:
            os.rename(self._lock_path, claim)
        except FileNotFoundError:
            return False
        try:
            current = self._read_lock_file(claim)
            if current is not None and current.lock_id == expected_lock_id:
                return True
            try:
                os.link(claim, self._lock_path)
            except FileExistsError:
                logger.warning(
                    "Lock %s was replaced while being restored; dropping it",
                    current.lock_id if current else "unknown",
                )
            return False
        finally:
            with contextlib.suppress(FileNotFoundError):
                claim.unlink()

    def _replace_lock_sync(self, expected_lock_id: str, info: LockInfo) -> bool:
        if not self._claim_lock_sync(expected_lock_id):
            return False
        return self._try_create_lock_sync(info)

    async def _replace_lock(self, expected_lock_id: str, info: LockInfo) -> bool:
        async with self._mutex:
            return await asyncio.to_thread(self._replace_lock_sync, expected_lock_id, info)

    def _delete_lock_sync(self, lock_id: str) -> bool:
        if not self._claim_lock_sync(lock_id):
            return False
        _fsync_dir(self._lock_path.parent)
        return True

    async def _delete_lock(self, lock_id: str) -> bool:
        async with self._mutex:
            return await asyncio.to_thread(self._delete_lock_sync, lock_id)

    # -- Commit ---------------------------------------------------------------

    def _commit_sync(
        self,
        handle: LockHandle,
        base_serial: int,
        resources: dict[str, ResourceRecord],
        lineage: str,
    ) -> StateSnapshot:
        current = self._load_snapshot_sync()
        assert current is not None  # noqa: S101
        self._check_commit(handle, self._read_lock_sync(), current, base_serial, lineage)

        successor = current.successor(resources)
        with contextlib.suppress(FileNotFoundError):
            _atomic_write(self._backup_path, self._path.read_text(encoding="utf-8"))
        _atomic_write(self._path, serialize_snapshot(successor))
        self._delete_lock_sync(handle.lock_id)
        return successor

    async def _commit(
        self,
        handle: LockHandle,
        base_serial: int,
        resources: dict[str, ResourceRecord],
        lineage: str,
    ) -> StateSnapshot:
        async with self._mutex:
            return await asyncio.to_thread(self._commit_sync, handle, base_serial, resources, lineage)

    # -- Extras ---------------------------------------------------------------

    async def read_backup(self) -> StateSnapshot | None:
        """Return the snapshot that preceded the last commit, if kept."""

        def _load() -> StateSnapshot | None:
            try:
                return deserialize_snapshot(self._backup_path.read_text(encoding="utf-8"))
            except FileNotFoundError:
                return None

        return await asyncio.to_thread(_load)
