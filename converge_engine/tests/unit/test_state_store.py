"""Behaviour shared by every state store backend.

Each test runs against both :class:`LocalStateStore` and
:class:`DatabaseStateStore` (SQLite via aiosqlite).
"""

from __future__ import annotations

import asyncio
import logging

import pytest
import pytest_asyncio

from converge_engine.errors import (
    LineageMismatchError,
    LockHeldError,
    LockNotHeldError,
    LockStaleError,
    StaleSerialError,
)
from converge_engine.models.lock import OperationKind
from converge_engine.models.resource import ResourceRecord
from converge_engine.state.local import LocalStateStore
from converge_engine.state.sql_store import DatabaseStateStore

# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(params=["local", "database"])
def backend(request):
    return request.param


@pytest_asyncio.fixture
async def make_store(backend, tmp_path):
    """Factory creating stores of the parametrized backend that share one location."""
    created = []

    def _make(**kwargs):
        kwargs.setdefault("lock_poll_interval", 0.01)
        if backend == "local":
            store = LocalStateStore(tmp_path / "state.json", **kwargs)
        else:
            store = DatabaseStateStore.from_url(f"sqlite+aiosqlite:///{tmp_path}/state.db", **kwargs)
        created.append(store)
        return store

    yield _make
    for store in created:
        await store.close()


@pytest_asyncio.fixture
async def store(make_store):
    return make_store()


def _records(*keys: str) -> dict[str, ResourceRecord]:
    records = {}
    for key in keys:
        rtype, name = key.split(":", 1)
        records[key] = ResourceRecord(type=rtype, name=name, id=f"{name}-1", attributes={"k": name})
    return records


# ---------------------------------------------------------------------------
# read
# ---------------------------------------------------------------------------


class TestRead:
    @pytest.mark.asyncio
    async def test_empty_store_initialised(self, store):
        snapshot = await store.read()
        assert snapshot.serial == 0
        assert snapshot.resources == {}
        assert snapshot.lineage

    @pytest.mark.asyncio
    async def test_lineage_stable_across_reads(self, store):
        first = await store.read()
        second = await store.read()
        assert first.lineage == second.lineage

    @pytest.mark.asyncio
    async def test_lineage_shared_between_instances(self, make_store):
        first = await make_store().read()
        second = await make_store().read()
        assert first.lineage == second.lineage

    @pytest.mark.asyncio
    async def test_read_ignores_lock(self, store):
        await store.acquire_lock(OperationKind.APPLY, "holder-a")
        snapshot = await store.read()
        assert snapshot.serial == 0


# ---------------------------------------------------------------------------
# Locking
# ---------------------------------------------------------------------------


class TestLocking:
    @pytest.mark.asyncio
    async def test_acquire_records_lock(self, store):
        handle = await store.acquire_lock(OperationKind.APPLY, "holder-a")
        info = await store.lock_info()
        assert info.lock_id == handle.lock_id
        assert info.holder == "holder-a"
        assert info.operation_kind == OperationKind.APPLY
        assert info.acquired_at.tzinfo is not None

    @pytest.mark.asyncio
    async def test_second_acquire_fails(self, store):
        await store.acquire_lock(OperationKind.APPLY, "holder-a")
        with pytest.raises(LockHeldError) as exc_info:
            await store.acquire_lock(OperationKind.PLAN, "holder-b", timeout=0)
        assert exc_info.value.lock.holder == "holder-a"

    @pytest.mark.asyncio
    async def test_concurrent_acquire_single_winner(self, make_store):
        stores = [make_store(), make_store()]
        await stores[0].read()
        outcomes = await asyncio.gather(
            *(s.acquire_lock(OperationKind.APPLY, f"holder-{i}", timeout=0) for i, s in enumerate(stores)),
            return_exceptions=True,
        )
        winners = [o for o in outcomes if not isinstance(o, BaseException)]
        losers = [o for o in outcomes if isinstance(o, LockHeldError)]
        assert len(winners) == 1
        assert len(losers) == 1

    @pytest.mark.asyncio
    async def test_waits_for_release(self, store):
        handle = await store.acquire_lock(OperationKind.APPLY, "holder-a")

        async def _release_later():
            await asyncio.sleep(0.05)
            await store.release_lock(handle)

        releaser = asyncio.create_task(_release_later())
        second = await store.acquire_lock(OperationKind.APPLY, "holder-b", timeout=2.0)
        await releaser
        assert second.holder == "holder-b"

    @pytest.mark.asyncio
    async def test_release_is_idempotent(self, store):
        handle = await store.acquire_lock(OperationKind.APPLY, "holder-a")
        await store.release_lock(handle)
        await store.release_lock(handle)
        assert await store.lock_info() is None

    @pytest.mark.asyncio
    async def test_release_does_not_remove_foreign_lock(self, store):
        stale_handle = await store.acquire_lock(OperationKind.APPLY, "holder-a")
        await store.release_lock(stale_handle)
        current = await store.acquire_lock(OperationKind.APPLY, "holder-b")
        await store.release_lock(stale_handle)
        assert (await store.lock_info()).lock_id == current.lock_id

    @pytest.mark.asyncio
    async def test_stale_lock_refused_without_steal(self, make_store):
        store = make_store(lock_expiry_seconds=0.05)
        await store.acquire_lock(OperationKind.APPLY, "crashed")
        await asyncio.sleep(0.1)
        with pytest.raises(LockStaleError) as exc_info:
            await store.acquire_lock(OperationKind.APPLY, "holder-b")
        assert exc_info.value.lock.holder == "crashed"

    @pytest.mark.asyncio
    async def test_stale_lock_stolen_on_request(self, make_store, caplog):
        store = make_store(lock_expiry_seconds=0.05)
        old = await store.acquire_lock(OperationKind.APPLY, "crashed")
        await asyncio.sleep(0.1)

        with caplog.at_level(logging.WARNING, logger="converge_engine.state.base"):
            new = await store.acquire_lock(OperationKind.APPLY, "holder-b", steal=True)

        assert new.lock_id != old.lock_id
        assert (await store.lock_info()).holder == "holder-b"
        assert any("Stole stale" in r.getMessage() for r in caplog.records)

    @pytest.mark.asyncio
    async def test_fresh_lock_never_stolen(self, store):
        await store.acquire_lock(OperationKind.APPLY, "holder-a")
        with pytest.raises(LockHeldError):
            await store.acquire_lock(OperationKind.APPLY, "holder-b", timeout=0, steal=True)

    @pytest.mark.asyncio
    async def test_force_unlock(self, store, caplog):
        handle = await store.acquire_lock(OperationKind.APPLY, "holder-a")
        with caplog.at_level(logging.WARNING, logger="converge_engine.state.base"):
            removed = await store.force_unlock(handle.lock_id, released_by="operator", reason="crashed runner")
        assert removed is True
        assert await store.lock_info() is None
        assert any("crashed runner" in r.getMessage() for r in caplog.records)

    @pytest.mark.asyncio
    async def test_force_unlock_wrong_id(self, store):
        await store.acquire_lock(OperationKind.APPLY, "holder-a")
        assert await store.force_unlock("not-the-id", released_by="operator", reason="oops") is False
        assert await store.lock_info() is not None

    @pytest.mark.asyncio
    async def test_locked_context_manager_releases(self, store):
        with pytest.raises(RuntimeError):
            async with store.locked(OperationKind.DRIFT_CHECK, "holder-a"):
                assert (await store.lock_info()).operation_kind == OperationKind.DRIFT_CHECK
                raise RuntimeError("boom")
        assert await store.lock_info() is None


# ---------------------------------------------------------------------------
# commit
# ---------------------------------------------------------------------------


class TestCommit:
    @pytest.mark.asyncio
    async def test_commit_increments_serial_and_releases(self, store):
        base = await store.read()
        handle = await store.acquire_lock(OperationKind.APPLY, "holder-a")

        committed = await store.commit(handle, base.serial, _records("db:main"), lineage=base.lineage)

        assert committed.serial == 1
        assert committed.lineage == base.lineage
        assert await store.lock_info() is None
        reread = await store.read()
        assert reread == committed
        assert reread.resources["db:main"].id == "main-1"

    @pytest.mark.asyncio
    async def test_successive_commits(self, store):
        base = await store.read()
        for expected in (1, 2, 3):
            handle = await store.acquire_lock(OperationKind.APPLY, "holder-a")
            snapshot = await store.commit(handle, expected - 1, _records(f"db:n{expected}"), lineage=base.lineage)
            assert snapshot.serial == expected

    @pytest.mark.asyncio
    async def test_stale_serial_rejected_and_store_unchanged(self, store):
        base = await store.read()
        handle = await store.acquire_lock(OperationKind.APPLY, "holder-a")
        await store.commit(handle, base.serial, _records("db:main"), lineage=base.lineage)

        handle = await store.acquire_lock(OperationKind.APPLY, "holder-b")
        with pytest.raises(StaleSerialError) as exc_info:
            await store.commit(handle, base.serial, _records("db:other"), lineage=base.lineage)

        assert exc_info.value.current_serial == 1
        current = await store.read()
        assert current.serial == 1
        assert sorted(current.resources) == ["db:main"]
        assert (await store.lock_info()).lock_id == handle.lock_id

    @pytest.mark.asyncio
    async def test_lineage_mismatch(self, store):
        base = await store.read()
        handle = await store.acquire_lock(OperationKind.APPLY, "holder-a")
        with pytest.raises(LineageMismatchError):
            await store.commit(handle, base.serial, {}, lineage="other-lineage")
        assert (await store.read()).serial == 0

    @pytest.mark.asyncio
    async def test_commit_without_lock(self, store):
        base = await store.read()
        handle = await store.acquire_lock(OperationKind.APPLY, "holder-a")
        await store.release_lock(handle)
        with pytest.raises(LockNotHeldError):
            await store.commit(handle, base.serial, {}, lineage=base.lineage)

    @pytest.mark.asyncio
    async def test_commit_after_lock_stolen(self, make_store):
        store = make_store(lock_expiry_seconds=0.05)
        base = await store.read()
        old = await store.acquire_lock(OperationKind.APPLY, "slow")
        await asyncio.sleep(0.1)
        await store.acquire_lock(OperationKind.APPLY, "rescuer", steal=True)

        with pytest.raises(LockNotHeldError):
            await store.commit(old, base.serial, _records("db:main"), lineage=base.lineage)
        assert (await store.read()).serial == 0

    @pytest.mark.asyncio
    async def test_visible_to_other_instance(self, make_store):
        writer, reader = make_store(), make_store()
        base = await writer.read()
        handle = await writer.acquire_lock(OperationKind.APPLY, "holder-a")
        await writer.commit(handle, base.serial, _records("db:main", "web:app"), lineage=base.lineage)

        snapshot = await reader.read()
        assert snapshot.serial == 1
        assert sorted(snapshot.resources) == ["db:main", "web:app"]
