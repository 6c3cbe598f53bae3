"""Drift detection: compare provider-observed attributes with stored state.

Drift detection is strictly read-only.  It never calls a mutating provider
method and never writes the state store; its :class:`DriftReport` is fed to
the next plan as the refreshed comparison baseline.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from converge_engine.errors import ProviderError, ResourceNotFoundError, StateCorruptedError
from converge_engine.models.drift import DriftEntry, DriftKind, DriftReport
from converge_engine.models.lock import OperationKind
from converge_engine.models.resource import ResourceRecord
from converge_engine.models.snapshot import StateSnapshot
from converge_engine.planner.compare import diff_observed
from converge_engine.provider.base import Provider
from converge_engine.state.base import StateStore

logger = logging.getLogger(__name__)


class DriftDetector:
    """Reads every managed resource and classifies differences from state.

    Parameters
    ----------
    provider:
        Provider used for ``read`` calls only.
    max_parallelism:
        Upper bound on concurrent reads.
    provider_timeout:
        Seconds each read may take; a timed-out read is reported in
        :attr:`DriftReport.errors`.
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

    async def detect(self, snapshot: StateSnapshot) -> DriftReport:
        """Compare every record in *snapshot* that has an id against the provider.

        Records the provider reports as not found are ``missing``; records
        whose live attributes differ from the stored ones are ``changed``.
        Any other provider failure is recorded in ``errors`` for that key
        and does not stop the remaining reads.
        """
        keys = snapshot.managed_keys()
        semaphore = asyncio.Semaphore(self._max_parallelism)
        entries: dict[str, DriftEntry] = {}
        errors: dict[str, str] = {}

        async def _check(key: str) -> None:
            record = snapshot.resources[key]
            async with semaphore:
                try:
                    live = await self._read(record)
                except ResourceNotFoundError:
                    entries[key] = DriftEntry(
                        resource_key=key,
                        resource_type=record.type,
                        kind=DriftKind.MISSING,
                        resource_id=record.id or "",
                    )
                    return
                except (ProviderError, StateCorruptedError) as exc:
                    logger.error("Drift read of %s failed: %s", key, exc, extra={"resource_key": key})
                    errors[key] = str(exc)
                    return

            changes = diff_observed(record.attributes, live, self._provider.schema(record.type))
            if changes:
                entries[key] = DriftEntry(
                    resource_key=key,
                    resource_type=record.type,
                    kind=DriftKind.CHANGED,
                    resource_id=record.id or "",
                    changes=changes,
                    live_attributes=live,
                )

        await asyncio.gather(*[_check(key) for key in keys])

        report = DriftReport(
            lineage=snapshot.lineage,
            base_serial=snapshot.serial,
            checked=len(keys),
            entries=[entries[key] for key in sorted(entries)],
            errors={key: errors[key] for key in sorted(errors)},
        )
        logger.info(
            "Drift check against serial %d: %d checked, %d changed, %d missing, %d errors",
            report.base_serial,
            report.checked,
            len(report.changed),
            len(report.missing),
            len(report.errors),
            extra={"serial": report.base_serial},
        )
        return report

    async def detect_from_store(
        self,
        store: StateStore,
        holder: str,
        *,
        locked: bool = False,
        lock_timeout: float | None = None,
    ) -> DriftReport:
        """Read the current snapshot from *store* and run :meth:`detect` on it.

        With ``locked=True`` the check runs under a ``drift-check`` lock that
        is released afterwards, so no apply can commit while it runs.
        """
        if not locked:
            return await self.detect(await store.read())
        async with store.locked(OperationKind.DRIFT_CHECK, holder, lock_timeout):
            return await self.detect(await store.read())

    async def _read(self, record: ResourceRecord) -> dict[str, Any]:
        if record.id is None:
            raise StateCorruptedError(f"{record.key} is recorded without an external id; cannot read it")
        call = self._provider.read(record.type, record.id)
        if self._provider_timeout is None:
            return await call
        try:
            return await asyncio.wait_for(call, timeout=self._provider_timeout)
        except TimeoutError:
            raise ProviderError(
                f"read {record.key} timed out after {self._provider_timeout:g}s",
                retryable=True,
            ) from None
