"""Plan application: a dependency-respecting, bounded-parallel walk.

The :class:`Reconciler` takes the apply lock, verifies that the store still
matches the plan's lineage and serial, executes every action through the
provider with at most ``max_parallelism`` calls in flight, and finally
commits the accumulated working copy **once**.  Actions whose dependencies
did not succeed are skipped; sibling branches keep running.

Cancellation is cooperative: once ``cancel_event`` is set no new action is
dispatched, in-flight calls run to completion, completed work is committed,
and :class:`~converge_engine.errors.OperationCancelledError` is raised.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import TypeVar

from converge_engine.errors import (
    ConcurrentModificationError,
    ConvergeError,
    LineageMismatchError,
    OperationCancelledError,
    ProviderError,
    ResourceNotFoundError,
    StaleSerialError,
    StateCorruptedError,
)
from converge_engine.models.lock import OperationKind
from converge_engine.models.plan import ActionKind, Plan, PlannedAction, ReplaceOrder
from converge_engine.models.resource import ResourceRecord, deposed_key, split_key
from converge_engine.models.result import ActionResult, ActionStatus, ApplyResult
from converge_engine.provider.base import Provider
from converge_engine.state.base import StateStore

logger = logging.getLogger(__name__)

T = TypeVar("T")

CANCELLED_REASON = "cancelled"


class Reconciler:
    """Applies plans against a provider and a state store.

    Parameters
    ----------
    provider:
        The provider to mutate resources through.  Wrap it in
        :class:`~converge_engine.provider.retry.RetryingProvider` to retry
        transient failures.
    max_parallelism:
        Default upper bound on concurrent provider calls.
    provider_timeout:
        Seconds each provider call may take before it is abandoned and
        reported as a retryable :class:`ProviderError`.  ``None`` disables
        the bound.
    """

    def __init__(
        self,
        provider: Provider,
        *,
        max_parallelism: int = 10,
        provider_timeout: float | None = 300.0,
    ) -> None:
        if max_parallelism < 1:
            raise ValueError("max_parallelism must be at least 1")
        self._provider = provider
        self._max_parallelism = max_parallelism
        self._provider_timeout = provider_timeout

    async def apply(
        self,
        plan: Plan,
        store: StateStore,
        *,
        holder: str,
        max_parallelism: int | None = None,
        cancel_event: asyncio.Event | None = None,
        lock_timeout: float | None = None,
        steal_lock: bool = False,
    ) -> ApplyResult:
        """Execute *plan* and commit the outcome to *store*.

        Returns
        -------
        ApplyResult
            One :class:`ActionResult` per planned action, in plan order, and
            the committed snapshot.

        Raises
        ------
        LockHeldError, LockStaleError
            If the apply lock cannot be acquired.
        LineageMismatchError
            If the store's lineage is not the plan's.
        ConcurrentModificationError
            If the store's serial moved away from ``plan.base_serial``,
            either before execution or at commit time.
        OperationCancelledError
            After a cancelled apply has committed its completed work.
        """
        parallelism = max_parallelism or self._max_parallelism
        cancel = cancel_event or asyncio.Event()

        handle = await store.acquire_lock(OperationKind.APPLY, holder, lock_timeout, steal=steal_lock)
        try:
            snapshot = await store.read()
            if snapshot.lineage != plan.lineage:
                raise LineageMismatchError(plan.lineage, snapshot.lineage)
            if snapshot.serial != plan.base_serial:
                raise ConcurrentModificationError(
                    f"Plan {plan.plan_id[:12]} was computed against serial {plan.base_serial} "
                    f"but the state is at serial {snapshot.serial}; re-plan before applying"
                )

            logger.info(
                "Applying plan %s (%d actions, parallelism=%d)",
                plan.plan_id[:12],
                len(plan.actions),
                parallelism,
                extra={"plan_id": plan.plan_id, "lock_id": handle.lock_id},
            )

            working = {key: record.model_copy(deep=True) for key, record in snapshot.resources.items()}
            outcomes = await self._walk(plan, working, parallelism, cancel)
            result = ApplyResult(
                plan_id=plan.plan_id,
                results=[outcomes[a.resource_key] for a in plan.actions],
                cancelled=cancel.is_set(),
            )

            try:
                committed = await store.commit(handle, plan.base_serial, working, lineage=plan.lineage)
            except StaleSerialError as exc:
                raise ConcurrentModificationError(
                    f"State changed during apply of plan {plan.plan_id[:12]}: {exc}",
                    result=result,
                ) from exc
            result.snapshot = committed

            logger.info(
                "Plan %s finished: %d applied, %d failed, %d skipped; state at serial %d",
                plan.plan_id[:12],
                len(result.applied),
                len(result.failed),
                len(result.skipped),
                committed.serial,
                extra={"plan_id": plan.plan_id, "serial": committed.serial},
            )
            if result.cancelled:
                raise OperationCancelledError(result)
            return result
        finally:
            await store.release_lock(handle)

    # -- Scheduling -----------------------------------------------------------

    async def _walk(
        self,
        plan: Plan,
        working: dict[str, ResourceRecord],
        parallelism: int,
        cancel: asyncio.Event,
    ) -> dict[str, ActionResult]:
        planned_keys = {a.resource_key for a in plan.actions}
        pending: list[PlannedAction] = list(plan.actions)
        outcomes: dict[str, ActionResult] = {}
        succeeded: set[str] = set()
        in_flight: dict[asyncio.Task[ActionResult], PlannedAction] = {}
        cancel_waiter = asyncio.ensure_future(cancel.wait())

        try:
            while pending or in_flight:
                if cancel.is_set() and pending:
                    logger.warning(
                        "Apply of plan %s cancelled; %d actions not dispatched",
                        plan.plan_id[:12],
                        len(pending),
                        extra={"plan_id": plan.plan_id},
                    )
                    for action in pending:
                        outcomes[action.resource_key] = _skipped(action, CANCELLED_REASON)
                    pending = []

                for action in list(pending):
                    deps = [d for d in action.depends_on if d in planned_keys]
                    blocked = [d for d in deps if d in outcomes and d not in succeeded]
                    if blocked:
                        outcomes[action.resource_key] = _skipped(action, f"dependency '{blocked[0]}' did not succeed")
                        pending.remove(action)
                        continue
                    if len(in_flight) >= parallelism:
                        continue
                    if all(d in succeeded for d in deps):
                        task = asyncio.create_task(self._execute(action, working))
                        in_flight[task] = action
                        pending.remove(action)

                if not in_flight:
                    if pending:
                        # Unreachable for plans built from an acyclic graph.
                        for action in pending:
                            outcomes[action.resource_key] = _skipped(action, "unsatisfiable dependencies")
                        pending = []
                    break

                waitables: set[asyncio.Future[object]] = set(in_flight)  # type: ignore[arg-type]
                if not cancel.is_set():
                    waitables.add(cancel_waiter)
                done, _ = await asyncio.wait(waitables, return_when=asyncio.FIRST_COMPLETED)

                for task in done:
                    if task is cancel_waiter:
                        continue
                    action = in_flight.pop(task)  # type: ignore[call-overload]
                    outcome = task.result()
                    outcomes[action.resource_key] = outcome
                    if outcome.status == ActionStatus.APPLIED:
                        succeeded.add(action.resource_key)
        finally:
            cancel_waiter.cancel()
            if in_flight:
                # Provider calls already issued finish before control leaves.
                await asyncio.gather(*in_flight, return_exceptions=True)

        return outcomes

    # -- Execution ------------------------------------------------------------

    async def _call(self, fn: Callable[[], Awaitable[T]], operation: str) -> T:
        """Await one provider call bounded by the configured timeout."""
        if self._provider_timeout is None:
            return await fn()
        try:
            return await asyncio.wait_for(fn(), timeout=self._provider_timeout)
        except TimeoutError:
            raise ProviderError(
                f"{operation} timed out after {self._provider_timeout:g}s",
                retryable=True,
            ) from None

    async def _execute(self, action: PlannedAction, working: dict[str, ResourceRecord]) -> ActionResult:
        started = datetime.now(UTC)
        key = action.resource_key
        try:
            resource_id = await self._dispatch(action, working)
        except ConvergeError as exc:
            logger.error(
                "%s of %s failed: %s",
                action.action_kind.value,
                key,
                exc,
                extra={"resource_key": key},
            )
            return _failed(action, working, exc, started)
        except Exception as exc:
            # Anything the provider did not wrap still ends this one action
            # only; sibling branches and the final commit proceed.
            logger.exception(
                "%s of %s raised %s",
                action.action_kind.value,
                key,
                type(exc).__name__,
                extra={"resource_key": key},
            )
            wrapped = ProviderError(f"{action.action_kind.value} {key}: unexpected {type(exc).__name__}: {exc}")
            return _failed(action, working, wrapped, started)

        if action.action_kind != ActionKind.NO_OP:
            logger.info(
                "%s %s -> %s",
                action.action_kind.value,
                key,
                resource_id or "(gone)",
                extra={"resource_key": key},
            )
        return ActionResult(
            resource_key=key,
            action_kind=action.action_kind,
            status=ActionStatus.APPLIED,
            resource_id=resource_id,
            started_at=started,
            finished_at=datetime.now(UTC),
        )

    async def _dispatch(self, action: PlannedAction, working: dict[str, ResourceRecord]) -> str | None:
        """Run the provider calls for *action*, updating *working* after each success.

        Returns the resource id the record ends up with (``None`` once destroyed).
        """
        kind = action.action_kind
        key = action.resource_key

        if kind == ActionKind.CREATE:
            return await self._create(action, working)

        if kind == ActionKind.UPDATE:
            rtype, rid = action.resource_type, _require_id(action)
            attributes = await self._call(
                lambda: self._provider.update(rtype, rid, dict(action.after or {})),
                f"update {key}",
            )
            working[key] = _record(action, rid, attributes)
            return rid

        if kind == ActionKind.REPLACE:
            if action.replace_order == ReplaceOrder.CREATE_BEFORE_DESTROY:
                return await self._create_before_destroy(action, working)
            await self._destroy(action, working)
            return await self._create(action, working)

        if kind == ActionKind.DESTROY:
            await self._destroy(action, working)
            return None

        # No-op: the baseline may be refreshed live attributes, and the
        # recorded dependencies may have changed.
        record = working.get(key)
        if record is None:
            return None
        update: dict[str, object] = {}
        if action.before is not None and record.attributes != action.before:
            update["attributes"] = dict(action.before)
        if record.dependencies != action.dependencies:
            update["dependencies"] = list(action.dependencies)
        if update:
            working[key] = record.model_copy(update=update)
        return record.id

    async def _create_before_destroy(self, action: PlannedAction, working: dict[str, ResourceRecord]) -> str:
        key = action.resource_key
        previous = working.get(key)
        old_id = action.resource_id
        new_id = await self._create(action, working)
        if old_id is None:
            return new_id
        try:
            await self._delete(action.resource_type, old_id, key)
        except Exception:
            # The new instance now owns the key; keep the old one tracked so
            # the next plan destroys it.
            deposed = deposed_key(key, old_id)
            outgoing = previous or _record(action, old_id, action.before or {})
            _, name = split_key(deposed)
            working[deposed] = outgoing.model_copy(update={"name": name, "id": old_id})
            logger.warning(
                "Delete of replaced %s %s failed; kept it in state as %s",
                key,
                old_id,
                deposed,
                extra={"resource_key": key},
            )
            raise
        return new_id

    async def _create(self, action: PlannedAction, working: dict[str, ResourceRecord]) -> str:
        rtype = action.resource_type
        resource_id, attributes = await self._call(
            lambda: self._provider.create(rtype, dict(action.after or {})),
            f"create {action.resource_key}",
        )
        working[action.resource_key] = _record(action, resource_id, attributes)
        return resource_id

    async def _destroy(self, action: PlannedAction, working: dict[str, ResourceRecord]) -> None:
        if action.resource_id is not None:
            await self._delete(action.resource_type, action.resource_id, action.resource_key)
        working.pop(action.resource_key, None)

    async def _delete(self, resource_type: str, resource_id: str, key: str) -> None:
        try:
            await self._call(lambda: self._provider.delete(resource_type, resource_id), f"delete {key}")
        except ResourceNotFoundError:
            logger.info("%s %s already gone; treating delete as done", key, resource_id, extra={"resource_key": key})


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _record(action: PlannedAction, resource_id: str, attributes: dict[str, object]) -> ResourceRecord:
    _, name = split_key(action.resource_key)
    return ResourceRecord(
        type=action.resource_type,
        name=name,
        id=resource_id,
        attributes=dict(attributes),
        dependencies=list(action.dependencies),
    )


def _skipped(action: PlannedAction, reason: str) -> ActionResult:
    return ActionResult(
        resource_key=action.resource_key,
        action_kind=action.action_kind,
        status=ActionStatus.SKIPPED,
        error=reason,
    )


def _failed(
    action: PlannedAction,
    working: dict[str, ResourceRecord],
    exc: Exception,
    started: datetime,
) -> ActionResult:
    key = action.resource_key
    return ActionResult(
        resource_key=key,
        action_kind=action.action_kind,
        status=ActionStatus.FAILED,
        resource_id=working[key].id if key in working else None,
        error=str(exc),
        retryable=isinstance(exc, ProviderError) and exc.retryable,
        started_at=started,
        finished_at=datetime.now(UTC),
    )


def _require_id(action: PlannedAction) -> str:
    if action.resource_id is None:
        raise StateCorruptedError(
            f"{action.resource_key} is recorded without an external id; cannot {action.action_kind.value} it"
        )
    return action.resource_id
