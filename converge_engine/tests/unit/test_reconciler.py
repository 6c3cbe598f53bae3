"""Unit tests for converge_engine.reconciler.applier."""

from __future__ import annotations

import asyncio
from typing import Any
from unittest.mock import patch

import pytest

from converge_engine.errors import (
    ConcurrentModificationError,
    LineageMismatchError,
    LockHeldError,
    OperationCancelledError,
    StaleSerialError,
)
from converge_engine.graph.builder import build_execution_graph
from converge_engine.models.lock import OperationKind
from converge_engine.models.plan import ActionKind, Plan, PlannedAction
from converge_engine.models.resource import DesiredGraph, DesiredResource, deposed_key
from converge_engine.models.result import ActionStatus
from converge_engine.planner.differ import generate_plan
from converge_engine.provider.memory import InMemoryProvider
from converge_engine.reconciler.applier import CANCELLED_REASON, Reconciler

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _desired(key: str, attributes: dict[str, Any] | None = None, deps: list[str] | None = None) -> DesiredResource:
    rtype, name = key.split(":", 1)
    return DesiredResource(type=rtype, name=name, attributes=attributes or {}, dependencies=deps or [])


def _graph(*resources: DesiredResource) -> DesiredGraph:
    return {r.key: r for r in resources}


async def _plan(store, provider, desired: DesiredGraph) -> Plan:
    snapshot = await store.read()
    return generate_plan(build_execution_graph(desired, snapshot), snapshot, provider.schema)


async def _converge(store, provider, desired: DesiredGraph):
    """Plan and apply *desired* so a test starts from a populated state."""
    plan = await _plan(store, provider, desired)
    return await Reconciler(provider).apply(plan, store, holder="setup")


class _RaisingProvider(InMemoryProvider):
    """Raises an unwrapped ``RuntimeError`` when creating one resource type."""

    def __init__(self, schemas, broken_type: str) -> None:
        super().__init__(schemas)
        self._broken_type = broken_type

    async def create(self, resource_type, attributes):
        if resource_type == self._broken_type:
            raise RuntimeError("SDK connection reset")
        return await super().create(resource_type, attributes)


_STACK = _graph(
    _desired("db:main", {"engine": "postgres"}),
    _desired("web:app", {"image": "nginx:1", "region": "us-east"}, ["db:main"]),
)


# ---------------------------------------------------------------------------
# Happy path
# ---------------------------------------------------------------------------


class TestApply:
    @pytest.mark.asyncio
    async def test_creates_and_commits(self, local_store, provider):
        plan = await _plan(local_store, provider, _STACK)
        result = await Reconciler(provider).apply(plan, local_store, holder="t")

        assert result.succeeded
        assert result.applied == ["db:main", "web:app"]
        assert result.snapshot is not None
        assert result.snapshot.serial == plan.base_serial + 1

        stored = await local_store.read()
        assert stored.serial == 1
        assert stored.resources["db:main"].id == "db-0001"
        assert stored.resources["db:main"].attributes == {"engine": "postgres", "size": "small"}
        assert stored.resources["web:app"].dependencies == ["db:main"]
        assert provider.exists("web", stored.resources["web:app"].id)

    @pytest.mark.asyncio
    async def test_results_in_plan_order(self, local_store, provider):
        plan = await _plan(local_store, provider, _STACK)
        result = await Reconciler(provider).apply(plan, local_store, holder="t")
        assert [r.resource_key for r in result.results] == [a.resource_key for a in plan.actions]
        assert all(r.started_at is not None and r.finished_at is not None for r in result.results)

    @pytest.mark.asyncio
    async def test_update_in_place(self, local_store, provider):
        await _converge(local_store, provider, _STACK)
        desired = _graph(
            _desired("db:main", {"engine": "postgres", "size": "large"}),
            _desired("web:app", {"image": "nginx:1", "region": "us-east"}, ["db:main"]),
        )
        plan = await _plan(local_store, provider, desired)
        assert plan.action_for("db:main").action_kind == ActionKind.UPDATE

        await Reconciler(provider).apply(plan, local_store, holder="t")
        stored = await local_store.read()
        assert stored.resources["db:main"].id == "db-0001"
        assert stored.resources["db:main"].attributes["size"] == "large"
        assert provider.attributes_of("db", "db-0001")["size"] == "large"

    @pytest.mark.asyncio
    async def test_no_op_commits_without_provider_calls(self, local_store, provider):
        await _converge(local_store, provider, _STACK)
        calls_before = len(provider.calls)

        plan = await _plan(local_store, provider, _STACK)
        result = await Reconciler(provider).apply(plan, local_store, holder="t")

        assert len(provider.calls) == calls_before
        assert result.snapshot.serial == 2
        assert all(r.status == ActionStatus.APPLIED for r in result.results)

    @pytest.mark.asyncio
    async def test_destroy_in_reverse_dependency_order(self, local_store, provider):
        await _converge(local_store, provider, _STACK)
        plan = await _plan(local_store, provider, {})
        result = await Reconciler(provider).apply(plan, local_store, holder="t")

        deletes = [c for c in provider.calls if c[0] == "delete"]
        assert [c[1] for c in deletes] == ["web", "db"]
        assert result.succeeded
        assert (await local_store.read()).resources == {}
        assert provider.count() == 0

    @pytest.mark.asyncio
    async def test_destroy_of_missing_resource_succeeds(self, local_store, provider):
        await _converge(local_store, provider, _graph(_desired("db:main", {"engine": "postgres"})))
        provider.remove("db", "db-0001")

        plan = await _plan(local_store, provider, {})
        result = await Reconciler(provider).apply(plan, local_store, holder="t")

        assert result.result_for("db:main").status == ActionStatus.APPLIED
        assert "db:main" not in (await local_store.read()).resources


# ---------------------------------------------------------------------------
# Replace ordering
# ---------------------------------------------------------------------------


class TestReplace:
    @pytest.mark.asyncio
    async def test_destroy_before_create(self, local_store, provider):
        await _converge(local_store, provider, _graph(_desired("db:main", {"engine": "postgres"})))
        provider.calls.clear()

        plan = await _plan(local_store, provider, _graph(_desired("db:main", {"engine": "mysql"})))
        assert plan.action_for("db:main").action_kind == ActionKind.REPLACE
        result = await Reconciler(provider).apply(plan, local_store, holder="t")

        assert [c[0] for c in provider.calls] == ["delete", "create"]
        assert result.result_for("db:main").resource_id == "db-0002"
        assert not provider.exists("db", "db-0001")
        assert (await local_store.read()).resources["db:main"].id == "db-0002"

    @pytest.mark.asyncio
    async def test_create_before_destroy(self, local_store, provider):
        await _converge(local_store, provider, _graph(_desired("web:app", {"region": "us-east"})))
        provider.calls.clear()

        plan = await _plan(local_store, provider, _graph(_desired("web:app", {"region": "eu-west"})))
        await Reconciler(provider).apply(plan, local_store, holder="t")

        assert [c[0] for c in provider.calls] == ["create", "delete"]
        assert provider.calls[1][2] == "web-0001"
        assert (await local_store.read()).resources["web:app"].id == "web-0002"

    @pytest.mark.asyncio
    async def test_failed_create_after_destroy_drops_record(self, local_store, provider):
        await _converge(local_store, provider, _graph(_desired("db:main", {"engine": "postgres"})))
        provider.fail_next("create", "db")

        plan = await _plan(local_store, provider, _graph(_desired("db:main", {"engine": "mysql"})))
        result = await Reconciler(provider).apply(plan, local_store, holder="t")

        assert result.failed == ["db:main"]
        assert "db:main" not in (await local_store.read()).resources

    @pytest.mark.asyncio
    async def test_failed_delete_keeps_old_instance_tracked(self, local_store, provider):
        await _converge(local_store, provider, _graph(_desired("web:app", {"region": "us-east"})))
        provider.fail_next("delete", "web", message="instance busy")

        desired = _graph(_desired("web:app", {"region": "eu-west"}))
        plan = await _plan(local_store, provider, desired)
        result = await Reconciler(provider).apply(plan, local_store, holder="t")

        assert result.failed == ["web:app"]
        assert "instance busy" in result.result_for("web:app").error
        old_key = deposed_key("web:app", "web-0001")
        stored = (await local_store.read()).resources
        assert stored["web:app"].id == "web-0002"
        assert stored[old_key].id == "web-0001"
        assert stored[old_key].type == "web"
        assert provider.exists("web", "web-0001")

        followup = await _plan(local_store, provider, desired)
        assert followup.action_for(old_key).action_kind == ActionKind.DESTROY
        assert followup.action_for("web:app").action_kind == ActionKind.NO_OP

        await Reconciler(provider).apply(followup, local_store, holder="t")
        assert not provider.exists("web", "web-0001")
        assert sorted((await local_store.read()).resources) == ["web:app"]


# ---------------------------------------------------------------------------
# Failure handling
# ---------------------------------------------------------------------------


class TestFailures:
    @pytest.mark.asyncio
    async def test_failure_skips_dependents_and_commits_siblings(self, local_store, provider):
        desired = _graph(
            _desired("db:main", {"engine": "postgres"}),
            _desired("web:app", {"image": "nginx:1"}, ["db:main"]),
            _desired("web:docs", {"image": "docs:1"}),
        )
        provider.fail_next("create", "db", message="quota exceeded")
        plan = await _plan(local_store, provider, desired)
        result = await Reconciler(provider).apply(plan, local_store, holder="t")

        assert result.failed == ["db:main"]
        assert result.skipped == ["web:app"]
        assert result.applied == ["web:docs"]
        assert "quota exceeded" in result.result_for("db:main").error
        assert "db:main" in result.result_for("web:app").error

        stored = await local_store.read()
        assert stored.serial == 1
        assert sorted(stored.resources) == ["web:docs"]

    @pytest.mark.asyncio
    async def test_skip_is_transitive(self, local_store, provider):
        desired = _graph(
            _desired("x:a"),
            _desired("x:b", {}, ["x:a"]),
            _desired("x:c", {}, ["x:b"]),
        )
        provider.fail_next("create", "x")
        plan = await _plan(local_store, provider, desired)
        result = await Reconciler(provider).apply(plan, local_store, holder="t")

        assert result.failed == ["x:a"]
        assert result.skipped == ["x:b", "x:c"]
        assert [c for c in provider.calls if c[0] == "create"] == [("create", "x", None)]

    @pytest.mark.asyncio
    async def test_retryable_flag_reported(self, local_store, provider):
        provider.fail_next("create", "db", retryable=True)
        plan = await _plan(local_store, provider, _graph(_desired("db:main", {"engine": "postgres"})))
        result = await Reconciler(provider).apply(plan, local_store, holder="t")
        assert result.result_for("db:main").retryable is True

    @pytest.mark.asyncio
    async def test_provider_timeout(self, local_store, schemas):
        slow = InMemoryProvider(schemas, delay=0.5)
        plan = await _plan(local_store, slow, _graph(_desired("db:main", {"engine": "postgres"})))
        result = await Reconciler(slow, provider_timeout=0.05).apply(plan, local_store, holder="t")

        outcome = result.result_for("db:main")
        assert outcome.status == ActionStatus.FAILED
        assert outcome.retryable is True
        assert "timed out" in outcome.error

    @pytest.mark.asyncio
    async def test_lock_released_after_partial_failure(self, local_store, provider):
        provider.fail_next("create", "db")
        plan = await _plan(local_store, provider, _STACK)
        await Reconciler(provider).apply(plan, local_store, holder="t")
        assert await local_store.lock_info() is None

    @pytest.mark.asyncio
    async def test_unexpected_exception_fails_only_its_action(self, local_store, schemas):
        broken = _RaisingProvider(schemas, "web")
        desired = _graph(
            _desired("db:a", {"engine": "postgres"}),
            _desired("web:b", {"image": "nginx:1"}),
            _desired("web:c", {"image": "nginx:1"}, ["web:b"]),
        )
        plan = await _plan(local_store, broken, desired)
        result = await Reconciler(broken).apply(plan, local_store, holder="t")

        assert result.applied == ["db:a"]
        assert result.failed == ["web:b"]
        assert result.skipped == ["web:c"]
        outcome = result.result_for("web:b")
        assert "RuntimeError" in outcome.error
        assert outcome.retryable is False

        stored = await local_store.read()
        assert stored.serial == 1
        assert sorted(stored.resources) == ["db:a"]
        assert broken.exists("db", stored.resources["db:a"].id)
        assert await local_store.lock_info() is None

    @pytest.mark.asyncio
    async def test_update_without_recorded_id_fails(self, local_store, provider):
        snapshot = await local_store.read()
        action = PlannedAction(
            resource_key="db:main",
            resource_type="db",
            action_kind=ActionKind.UPDATE,
            before={"engine": "postgres"},
            after={"engine": "postgres", "size": "large"},
        )
        plan = Plan.build(snapshot.lineage, snapshot.serial, [action])
        result = await Reconciler(provider).apply(plan, local_store, holder="t")

        outcome = result.result_for("db:main")
        assert outcome.status == ActionStatus.FAILED
        assert "without an external id" in outcome.error
        assert [c for c in provider.calls if c[0] == "update"] == []


# ---------------------------------------------------------------------------
# Refreshed baselines
# ---------------------------------------------------------------------------


class TestRefreshedBaseline:
    @pytest.mark.asyncio
    async def test_no_op_records_live_attributes(self, local_store, provider):
        await _converge(local_store, provider, _graph(_desired("web:app", {"image": "v1"})))
        snapshot = await local_store.read()
        resource_id = snapshot.resources["web:app"].id
        provider.mutate("web", resource_id, image="v2")

        desired = _graph(_desired("web:app", {"image": "v2"}))
        refreshed = {"web:app": provider.attributes_of("web", resource_id)}
        plan = generate_plan(build_execution_graph(desired, snapshot), snapshot, provider.schema, refreshed)
        assert plan.action_for("web:app").action_kind == ActionKind.NO_OP

        await Reconciler(provider).apply(plan, local_store, holder="t")

        assert (await local_store.read()).resources["web:app"].attributes["image"] == "v2"
        followup = await _plan(local_store, provider, desired)
        assert followup.action_for("web:app").action_kind == ActionKind.NO_OP


# ---------------------------------------------------------------------------
# Preconditions
# ---------------------------------------------------------------------------


class TestPreconditions:
    @pytest.mark.asyncio
    async def test_stale_plan_rejected_before_provider_calls(self, local_store, provider):
        stale = await _plan(local_store, provider, _STACK)
        await _converge(local_store, provider, _graph(_desired("web:docs", {"image": "docs:1"})))
        calls_before = len(provider.calls)

        with pytest.raises(ConcurrentModificationError):
            await Reconciler(provider).apply(stale, local_store, holder="t")

        assert len(provider.calls) == calls_before
        assert (await local_store.read()).serial == 1
        assert await local_store.lock_info() is None

    @pytest.mark.asyncio
    async def test_lineage_mismatch(self, local_store, provider):
        plan = await _plan(local_store, provider, _STACK)
        foreign = plan.model_copy(update={"lineage": "someone-else"})
        with pytest.raises(LineageMismatchError):
            await Reconciler(provider).apply(foreign, local_store, holder="t")
        assert provider.calls == []

    @pytest.mark.asyncio
    async def test_lock_held_by_other_holder(self, local_store, provider):
        plan = await _plan(local_store, provider, _STACK)
        handle = await local_store.acquire_lock(OperationKind.APPLY, "other-process")

        with pytest.raises(LockHeldError) as exc_info:
            await Reconciler(provider).apply(plan, local_store, holder="t", lock_timeout=0)

        assert exc_info.value.lock.holder == "other-process"
        assert provider.calls == []
        assert (await local_store.lock_info()).lock_id == handle.lock_id

    @pytest.mark.asyncio
    async def test_stale_serial_at_commit(self, local_store, provider):
        plan = await _plan(local_store, provider, _STACK)
        with patch.object(local_store, "commit", side_effect=StaleSerialError(0, 1)):
            with pytest.raises(ConcurrentModificationError) as exc_info:
                await Reconciler(provider).apply(plan, local_store, holder="t")

        assert exc_info.value.result is not None
        assert exc_info.value.result.applied == ["db:main", "web:app"]
        assert await local_store.lock_info() is None
        assert (await local_store.read()).serial == 0


# ---------------------------------------------------------------------------
# Concurrency
# ---------------------------------------------------------------------------


class _CancellingProvider(InMemoryProvider):
    """Sets the cancel event as soon as the first create completes."""

    def __init__(self, schemas, event: asyncio.Event) -> None:
        super().__init__(schemas)
        self._event = event

    async def create(self, resource_type, attributes):
        created = await super().create(resource_type, attributes)
        self._event.set()
        return created


class TestConcurrency:
    @pytest.mark.asyncio
    async def test_parallelism_bounded(self, local_store, schemas):
        slow = InMemoryProvider(schemas, delay=0.02)
        desired = _graph(*(_desired(f"web:app{i}", {"image": "x"}) for i in range(6)))
        plan = await _plan(local_store, slow, desired)

        result = await Reconciler(slow).apply(plan, local_store, holder="t", max_parallelism=2)

        assert result.succeeded
        assert slow.max_in_flight == 2

    @pytest.mark.asyncio
    async def test_independent_branches_run_concurrently(self, local_store, schemas):
        slow = InMemoryProvider(schemas, delay=0.02)
        desired = _graph(*(_desired(f"web:app{i}", {"image": "x"}) for i in range(4)))
        plan = await _plan(local_store, slow, desired)
        await Reconciler(slow).apply(plan, local_store, holder="t", max_parallelism=10)
        assert slow.max_in_flight == 4

    @pytest.mark.asyncio
    async def test_dependents_wait_for_dependencies(self, local_store, schemas):
        slow = InMemoryProvider(schemas, delay=0.01)
        plan = await _plan(local_store, slow, _STACK)
        await Reconciler(slow).apply(plan, local_store, holder="t")
        assert slow.max_in_flight == 1

    @pytest.mark.asyncio
    async def test_cancel_commits_completed_work(self, local_store, schemas):
        cancel = asyncio.Event()
        provider = _CancellingProvider(schemas, cancel)
        desired = _graph(*(_desired(f"web:app{i}", {"image": "x"}) for i in range(3)))
        plan = await _plan(local_store, provider, desired)

        with pytest.raises(OperationCancelledError) as exc_info:
            await Reconciler(provider).apply(plan, local_store, holder="t", max_parallelism=1, cancel_event=cancel)

        result = exc_info.value.result
        assert result.cancelled
        assert result.applied == ["web:app0"]
        assert result.skipped == ["web:app1", "web:app2"]
        assert all(result.result_for(k).error == CANCELLED_REASON for k in result.skipped)

        stored = await local_store.read()
        assert stored.serial == 1
        assert sorted(stored.resources) == ["web:app0"]
        assert await local_store.lock_info() is None

    def test_parallelism_must_be_positive(self, provider):
        with pytest.raises(ValueError):
            Reconciler(provider, max_parallelism=0)
