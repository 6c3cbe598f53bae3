"""Versioned, lockable state stores."""

from __future__ import annotations

from converge_engine.state.base import StateStore
from converge_engine.state.local import LocalStateStore
from converge_engine.state.serializer import (
    deserialize_snapshot,
    serialize_snapshot,
    validate_snapshot_json,
)
from converge_engine.state.sql_store import DatabaseStateStore

__all__ = [
    "DatabaseStateStore",
    "LocalStateStore",
    "StateStore",
    "deserialize_snapshot",
    "serialize_snapshot",
    "validate_snapshot_json",
]
