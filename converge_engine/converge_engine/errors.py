"""Exception taxonomy for the reconciliation engine.

Precondition failures (locking, serial/lineage checks, cyclic graphs,
dependency conflicts) are never retried by the engine; they are raised to
the caller verbatim.  Provider failures carry a ``retryable`` flag that the
retrying provider consults.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from converge_engine.models.lock import LockInfo
    from converge_engine.models.result import ApplyResult


class ConvergeError(Exception):
    """Base class for every error raised by the engine."""


# ---------------------------------------------------------------------------
# Locking
# ---------------------------------------------------------------------------


class LockHeldError(ConvergeError):
    """Raised when the state lock is held by another operation past the timeout."""

    def __init__(self, lock: LockInfo) -> None:
        self.lock = lock
        super().__init__(
            f"State is locked by {lock.holder!r} "
            f"(operation={lock.operation_kind.value}, lock_id={lock.lock_id}, "
            f"acquired_at={lock.acquired_at.isoformat()})"
        )


class LockStaleError(ConvergeError):
    """Raised when a recorded lock has outlived the expiry and no steal was requested."""

    def __init__(self, lock: LockInfo, expiry_seconds: float) -> None:
        self.lock = lock
        self.expiry_seconds = expiry_seconds
        super().__init__(
            f"State lock {lock.lock_id} held by {lock.holder!r} is older than "
            f"{expiry_seconds:g}s; steal it explicitly or force-unlock it"
        )


class LockNotHeldError(ConvergeError):
    """Raised when a commit is attempted with a handle that no longer owns the lock."""

    def __init__(self, lock_id: str) -> None:
        self.lock_id = lock_id
        super().__init__(f"Lock {lock_id} is not held; it was released or stolen")


# ---------------------------------------------------------------------------
# Optimistic concurrency
# ---------------------------------------------------------------------------


class StaleSerialError(ConvergeError):
    """Raised by ``commit`` when ``base_serial`` no longer matches the store."""

    def __init__(self, base_serial: int, current_serial: int) -> None:
        self.base_serial = base_serial
        self.current_serial = current_serial
        super().__init__(f"Stale serial: change is based on serial {base_serial} but the store is at {current_serial}")


class ConcurrentModificationError(ConvergeError):
    """Raised by the reconciler when the state moved underneath a plan.

    ``result`` carries the per-action outcomes when provider calls were
    already made before the conflict was detected.
    """

    def __init__(self, message: str, result: ApplyResult | None = None) -> None:
        self.result = result
        super().__init__(message)


class LineageMismatchError(ConvergeError):
    """Raised when a change targets a state store with an unrelated history."""

    def __init__(self, expected: str, actual: str) -> None:
        self.expected = expected
        self.actual = actual
        super().__init__(f"Lineage mismatch: expected {expected!r}, store has {actual!r}")


class StateCorruptedError(ConvergeError):
    """Raised when persisted state cannot be parsed."""


# ---------------------------------------------------------------------------
# Graph and planning
# ---------------------------------------------------------------------------


class CyclicDependencyError(ConvergeError):
    """Raised when the execution graph contains one or more cycles.

    Attributes
    ----------
    cycles:
        A list of cycles, where each cycle is a list of resource keys
        forming the loop (e.g. ``[["a", "b"]]`` means a -> b -> a).
    """

    def __init__(self, cycles: list[list[str]]) -> None:
        self.cycles = cycles
        formatted = "; ".join(" -> ".join(c + [c[0]]) for c in cycles)
        super().__init__(f"Cyclic dependencies detected: {formatted}")

    @property
    def members(self) -> list[str]:
        """Sorted, de-duplicated keys taking part in any cycle."""
        return sorted({key for cycle in self.cycles for key in cycle})


class DependencyConflictError(ConvergeError):
    """Raised when a destroy would strand a resource that still depends on it."""

    def __init__(self, dependent: str, dependency: str) -> None:
        self.dependent = dependent
        self.dependency = dependency
        super().__init__(
            f"Cannot destroy {dependency!r}: {dependent!r} still depends on it and is "
            f"neither destroyed nor updated to drop the dependency"
        )


# ---------------------------------------------------------------------------
# Provider
# ---------------------------------------------------------------------------


class ProviderError(ConvergeError):
    """Wraps a failure reported by the external system."""

    def __init__(self, message: str, *, retryable: bool = False) -> None:
        self.retryable = retryable
        super().__init__(message)


class ResourceNotFoundError(ConvergeError):
    """Raised by a provider read/update/delete when the external id no longer resolves."""

    def __init__(self, resource_type: str, resource_id: str) -> None:
        self.resource_type = resource_type
        self.resource_id = resource_id
        super().__init__(f"{resource_type} {resource_id!r} not found")


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------


class OperationCancelledError(ConvergeError):
    """Raised after a cancelled apply has committed its completed work."""

    def __init__(self, result: ApplyResult) -> None:
        self.result = result
        super().__init__(
            f"Apply cancelled: {len(result.applied)} applied, "
            f"{len(result.failed)} failed, {len(result.skipped)} skipped"
        )
