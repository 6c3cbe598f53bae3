"""Engine facade wiring settings, state store, provider, and components.

:class:`ReconciliationEngine` is the entry point for embedding processes::

    settings = load_settings()
    async with ReconciliationEngine.from_settings(provider, settings) as engine:
        plan = await engine.plan(desired, refresh=True)
        result = await engine.apply(plan)
"""

from __future__ import annotations

import asyncio
import logging
import os
import socket
from types import TracebackType

from converge_engine.config import Settings, load_settings
from converge_engine.drift.detector import DriftDetector
from converge_engine.errors import ProviderError
from converge_engine.graph.builder import build_execution_graph
from converge_engine.models.drift import DriftKind, DriftReport
from converge_engine.models.lock import OperationKind
from converge_engine.models.plan import Plan
from converge_engine.models.resource import DesiredGraph
from converge_engine.models.result import ApplyResult
from converge_engine.models.snapshot import StateSnapshot
from converge_engine.planner.differ import generate_plan
from converge_engine.provider.base import Provider
from converge_engine.provider.retry import RetryConfig, RetryingProvider
from converge_engine.reconciler.applier import Reconciler
from converge_engine.state.base import StateStore
from converge_engine.state.local import LocalStateStore
from converge_engine.state.sql_store import DatabaseStateStore

logger = logging.getLogger(__name__)


def default_holder() -> str:
    """Identify the current process as ``host:pid``."""
    return f"{socket.gethostname()}:{os.getpid()}"


def build_state_store(settings: Settings) -> StateStore:
    """Create the state store selected by ``settings.state_store_type``."""
    lock_kwargs = {
        "lock_expiry_seconds": settings.lock_expiry_seconds,
        "lock_poll_interval": settings.lock_poll_interval,
        "default_lock_timeout": settings.lock_timeout_seconds,
    }
    if settings.is_database_backend():
        logger.info("Using database state store (workspace=%s)", settings.workspace)
        return DatabaseStateStore.from_url(
            settings.database_url,
            pool_size=settings.database_pool_size,
            max_overflow=settings.database_max_overflow,
            workspace=settings.workspace,
            **lock_kwargs,
        )
    logger.info("Using local state store at %s", settings.state_path)
    return LocalStateStore(settings.state_path, **lock_kwargs)


class ReconciliationEngine:
    """Plan, apply, drift-check, and refresh against one state store.

    Parameters
    ----------
    provider:
        The provider to reconcile through.  Unless ``max_retries`` is 0 it
        is wrapped in a :class:`RetryingProvider`.
    store:
        The state store to read and commit.
    settings:
        Engine settings; loaded from the environment when omitted.
    """

    def __init__(
        self,
        provider: Provider,
        store: StateStore,
        settings: Settings | None = None,
    ) -> None:
        self._settings = settings or load_settings()
        if self._settings.max_retries > 0:
            provider = RetryingProvider(provider, RetryConfig.from_settings(self._settings))
        self._provider = provider
        self._store = store
        self._reconciler = Reconciler(
            provider,
            max_parallelism=self._settings.max_parallelism,
            provider_timeout=self._settings.provider_timeout_seconds,
        )
        self._detector = DriftDetector(
            provider,
            max_parallelism=self._settings.max_parallelism,
            provider_timeout=self._settings.provider_timeout_seconds,
        )

    @classmethod
    def from_settings(cls, provider: Provider, settings: Settings | None = None) -> ReconciliationEngine:
        settings = settings or load_settings()
        return cls(provider, build_state_store(settings), settings)

    @property
    def provider(self) -> Provider:
        return self._provider

    @property
    def store(self) -> StateStore:
        return self._store

    @property
    def settings(self) -> Settings:
        return self._settings

    async def __aenter__(self) -> ReconciliationEngine:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.close()

    async def close(self) -> None:
        await self._store.close()

    # -- Operations -----------------------------------------------------------

    async def plan(
        self,
        desired: DesiredGraph,
        *,
        refresh: bool = False,
        holder: str | None = None,
    ) -> Plan:
        """Compute a plan for *desired* against the current snapshot.

        With ``refresh=True`` the snapshot is read and every managed
        resource re-read from the provider under a ``plan`` lock; live
        attributes then serve as the comparison baseline.

        Raises
        ------
        ProviderError
            If the refresh could not read some resources.
        CyclicDependencyError, DependencyConflictError
            If the desired graph cannot be ordered or would strand a
            dependent resource.
        """
        refreshed = None
        if refresh:
            holder = holder or default_holder()
            async with self._store.locked(OperationKind.PLAN, holder):
                snapshot = await self._store.read()
                report = await self._detector.detect(snapshot)
            if report.errors:
                failed = ", ".join(f"{key} ({msg})" for key, msg in report.errors.items())
                raise ProviderError(f"Refresh failed for {len(report.errors)} resource(s): {failed}")
            refreshed = report.refreshed_attributes()
        else:
            snapshot = await self._store.read()

        graph = build_execution_graph(desired, snapshot)
        return generate_plan(graph, snapshot, self._provider.schema, refreshed)

    async def apply(
        self,
        plan: Plan,
        *,
        holder: str | None = None,
        cancel_event: asyncio.Event | None = None,
        steal_lock: bool = False,
    ) -> ApplyResult:
        """Apply *plan*; see :meth:`Reconciler.apply`."""
        return await self._reconciler.apply(
            plan,
            self._store,
            holder=holder or default_holder(),
            cancel_event=cancel_event,
            steal_lock=steal_lock,
        )

    async def detect_drift(self, *, holder: str | None = None, locked: bool = False) -> DriftReport:
        """Compare live resources with the committed snapshot.  Never writes state."""
        return await self._detector.detect_from_store(self._store, holder or default_holder(), locked=locked)

    async def refresh(self, *, holder: str | None = None) -> tuple[StateSnapshot, DriftReport]:
        """Write live attributes into state without changing any resource.

        Under the apply lock every managed record is re-read; changed records
        take their live attributes and missing ones are dropped, all in one
        commit.  Records whose read failed are left untouched and listed in
        the returned report.  Nothing is committed when nothing drifted.

        Returns
        -------
        tuple[StateSnapshot, DriftReport]
            The resulting snapshot and the drift found.
        """
        handle = await self._store.acquire_lock(OperationKind.APPLY, holder or default_holder())
        try:
            snapshot = await self._store.read()
            report = await self._detector.detect(snapshot)
            if not report.has_drift:
                return snapshot, report

            resources = {key: record.model_copy(deep=True) for key, record in snapshot.resources.items()}
            for entry in report.entries:
                if entry.kind == DriftKind.MISSING:
                    resources.pop(entry.resource_key, None)
                else:
                    record = resources[entry.resource_key]
                    resources[entry.resource_key] = record.model_copy(
                        update={"attributes": dict(entry.live_attributes or {})}
                    )
            committed = await self._store.commit(handle, snapshot.serial, resources, lineage=snapshot.lineage)
            logger.info(
                "Refreshed state: %d changed, %d removed; now at serial %d",
                len(report.changed),
                len(report.missing),
                committed.serial,
                extra={"serial": committed.serial},
            )
            return committed, report
        finally:
            await self._store.release_lock(handle)
