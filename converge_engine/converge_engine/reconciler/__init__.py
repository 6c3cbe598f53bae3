"""Plan application against a provider and a state store."""

from converge_engine.reconciler.applier import CANCELLED_REASON, Reconciler

__all__ = [
    "CANCELLED_REASON",
    "Reconciler",
]
