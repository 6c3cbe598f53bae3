"""Deterministic serialization for state snapshots.

The persisted layout is pretty-printed JSON with sorted keys so that two
identical snapshots are byte-identical on disk and diffs between serials
stay readable.  Both state backends store exactly this text.
"""

from __future__ import annotations

import json

from pydantic import ValidationError

from converge_engine.errors import StateCorruptedError
from converge_engine.models.snapshot import StateSnapshot


def serialize_snapshot(snapshot: StateSnapshot) -> str:
    """Serialize a snapshot to a deterministic JSON string (trailing newline included)."""
    raw = snapshot.model_dump(mode="json")
    return json.dumps(raw, indent=2, sort_keys=True, ensure_ascii=False) + "\n"


def deserialize_snapshot(json_str: str) -> StateSnapshot:
    """Deserialize a JSON string produced by :func:`serialize_snapshot`.

    Raises
    ------
    StateCorruptedError
        If the text is not valid JSON or does not match the snapshot schema.
    """
    try:
        return StateSnapshot.model_validate_json(json_str)
    except (ValidationError, ValueError) as exc:
        raise StateCorruptedError(f"Persisted state is unreadable: {exc}") from exc


def validate_snapshot_json(json_str: str) -> list[str]:
    """Validate a JSON string against the snapshot schema without raising.

    Returns
    -------
    list[str]
        Human-readable validation errors; empty when the JSON is valid.
    """
    try:
        StateSnapshot.model_validate_json(json_str)
    except ValidationError as exc:
        return [
            f"{'.'.join(str(loc) for loc in err['loc'])}: {err['msg']}" if err.get("loc") else err["msg"]
            for err in exc.errors()
        ]
    except (ValueError, TypeError) as exc:
        return [f"Invalid JSON: {exc}"]

    return []
