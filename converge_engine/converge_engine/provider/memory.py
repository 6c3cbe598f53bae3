"""In-memory provider for development and testing.

Provides a zero-infrastructure implementation of the
:class:`~converge_engine.provider.base.Provider` protocol.  Resources live in
a process-local dictionary; ids are allocated sequentially per type so runs
are reproducible.  Helpers simulate out-of-band changes (drift), injected
failures, and slow calls.
"""

from __future__ import annotations

import asyncio
import copy
import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import Any

from converge_engine.errors import ProviderError, ResourceNotFoundError
from converge_engine.provider.base import ResourceSchema

logger = logging.getLogger(__name__)


@dataclass
class _InjectedFailure:
    operation: str
    resource_type: str | None
    retryable: bool
    remaining: int
    message: str


class InMemoryProvider:
    """Provider backed by a dictionary of ``(type, id) -> attributes``.

    Parameters
    ----------
    schemas:
        Static metadata per resource type.  Unknown types get an empty
        :class:`ResourceSchema` (everything updatable in place).
    delay:
        Seconds every mutating or reading call sleeps before completing.
    """

    def __init__(
        self,
        schemas: dict[str, ResourceSchema] | None = None,
        *,
        delay: float = 0.0,
    ) -> None:
        self._schemas = dict(schemas or {})
        self._objects: dict[tuple[str, str], dict[str, Any]] = {}
        self._counters: dict[str, int] = defaultdict(int)
        self._failures: list[_InjectedFailure] = []
        self.delay = delay
        self.calls: list[tuple[str, str, str | None]] = []
        self._in_flight = 0
        self.max_in_flight = 0

    # -- Provider protocol ----------------------------------------------------

    def schema(self, resource_type: str) -> ResourceSchema:
        return self._schemas.get(resource_type, ResourceSchema())

    async def create(self, resource_type: str, attributes: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        async with self._track("create", resource_type, None):
            self._counters[resource_type] += 1
            resource_id = f"{resource_type}-{self._counters[resource_type]:04d}"
            stored = self.schema(resource_type).normalize(copy.deepcopy(attributes))
            self._objects[(resource_type, resource_id)] = stored
            logger.debug("Created %s %s", resource_type, resource_id)
            return resource_id, copy.deepcopy(stored)

    async def read(self, resource_type: str, resource_id: str) -> dict[str, Any]:
        async with self._track("read", resource_type, resource_id):
            return copy.deepcopy(self._get(resource_type, resource_id))

    async def update(
        self,
        resource_type: str,
        resource_id: str,
        attributes: dict[str, Any],
    ) -> dict[str, Any]:
        async with self._track("update", resource_type, resource_id):
            self._get(resource_type, resource_id)
            stored = self.schema(resource_type).normalize(copy.deepcopy(attributes))
            self._objects[(resource_type, resource_id)] = stored
            return copy.deepcopy(stored)

    async def delete(self, resource_type: str, resource_id: str) -> None:
        async with self._track("delete", resource_type, resource_id):
            self._get(resource_type, resource_id)
            del self._objects[(resource_type, resource_id)]

    # -- Simulation helpers ---------------------------------------------------

    def set_schema(self, resource_type: str, schema: ResourceSchema) -> None:
        self._schemas[resource_type] = schema

    def fail_next(
        self,
        operation: str,
        resource_type: str | None = None,
        *,
        retryable: bool = False,
        times: int = 1,
        message: str = "injected failure",
    ) -> None:
        """Make the next *times* calls of *operation* raise :class:`ProviderError`."""
        self._failures.append(
            _InjectedFailure(
                operation=operation,
                resource_type=resource_type,
                retryable=retryable,
                remaining=times,
                message=message,
            )
        )

    def mutate(self, resource_type: str, resource_id: str, **attributes: Any) -> None:
        """Change attributes out-of-band, as an operator editing the resource directly would."""
        self._get(resource_type, resource_id).update(attributes)

    def remove(self, resource_type: str, resource_id: str) -> None:
        """Delete a resource out-of-band."""
        self._get(resource_type, resource_id)
        del self._objects[(resource_type, resource_id)]

    def exists(self, resource_type: str, resource_id: str) -> bool:
        return (resource_type, resource_id) in self._objects

    def attributes_of(self, resource_type: str, resource_id: str) -> dict[str, Any]:
        return copy.deepcopy(self._get(resource_type, resource_id))

    def count(self, resource_type: str | None = None) -> int:
        if resource_type is None:
            return len(self._objects)
        return sum(1 for t, _ in self._objects if t == resource_type)

    # -- Internals ------------------------------------------------------------

    def _get(self, resource_type: str, resource_id: str) -> dict[str, Any]:
        try:
            return self._objects[(resource_type, resource_id)]
        except KeyError:
            raise ResourceNotFoundError(resource_type, resource_id) from None

    def _take_failure(self, operation: str, resource_type: str) -> _InjectedFailure | None:
        for failure in self._failures:
            if failure.operation != operation:
                continue
            if failure.resource_type is not None and failure.resource_type != resource_type:
                continue
            failure.remaining -= 1
            if failure.remaining <= 0:
                self._failures.remove(failure)
            return failure
        return None

    def _track(self, operation: str, resource_type: str, resource_id: str | None) -> _CallTracker:
        return _CallTracker(self, operation, resource_type, resource_id)


class _CallTracker:
    """Async context manager recording a provider call and applying delay/failures."""

    def __init__(
        self,
        provider: InMemoryProvider,
        operation: str,
        resource_type: str,
        resource_id: str | None,
    ) -> None:
        self._provider = provider
        self._operation = operation
        self._resource_type = resource_type
        self._resource_id = resource_id

    async def __aenter__(self) -> None:
        provider = self._provider
        provider.calls.append((self._operation, self._resource_type, self._resource_id))
        provider._in_flight += 1
        provider.max_in_flight = max(provider.max_in_flight, provider._in_flight)
        try:
            if provider.delay:
                await asyncio.sleep(provider.delay)
            failure = provider._take_failure(self._operation, self._resource_type)
            if failure is not None:
                raise ProviderError(
                    f"{self._operation} {self._resource_type}: {failure.message}",
                    retryable=failure.retryable,
                )
        except BaseException:
            provider._in_flight -= 1
            raise

    async def __aexit__(self, exc_type: object, exc: object, tb: object) -> None:
        self._provider._in_flight -= 1
