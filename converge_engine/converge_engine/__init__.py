"""Declarative state reconciliation engine.

Tracks resources against a desired configuration graph, plans
dependency-ordered changes, applies them through a provider under a state
lock, and detects drift between recorded and live resources.
"""

from converge_engine.config import Settings, load_settings
from converge_engine.engine import ReconciliationEngine, build_state_store

__all__ = [
    "ReconciliationEngine",
    "Settings",
    "build_state_store",
    "load_settings",
]
