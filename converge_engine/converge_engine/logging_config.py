"""Logging setup for processes embedding the engine.

Library modules only ever call ``logging.getLogger(__name__)``; the host
process calls :func:`configure_logging` once.  With
``CONVERGE_STRUCTURED_LOGGING=true`` every record is emitted as a single
JSON line::

    {
        "timestamp": "2025-05-15T12:34:56.789012+00:00",
        "level": "INFO",
        "logger": "converge_engine.reconciler.applier",
        "message": "Applied create for web:frontend",
        "plan_id": "...",          // present when passed via ``extra``
        "resource_key": "...",     // present when passed via ``extra``
        "exc_info": "Traceback ..."  // present only on exceptions
    }
"""

from __future__ import annotations

import json
import logging
import traceback
from datetime import UTC, datetime
from typing import Any

from converge_engine.config import Settings

# Context fields callers attach with ``logger.info(..., extra={...})``.
_CONTEXT_FIELDS: tuple[str, ...] = ("plan_id", "resource_key", "lock_id", "holder", "serial")

_TEXT_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"


class JSONFormatter(logging.Formatter):
    """Format log records as single-line JSON."""

    def format(self, record: logging.LogRecord) -> str:
        """Render *record* as a single JSON line."""
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        for field in _CONTEXT_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                payload[field] = value

        if record.exc_info and record.exc_info[0] is not None:
            payload["exc_info"] = "".join(traceback.format_exception(*record.exc_info))

        return json.dumps(payload, default=str, ensure_ascii=False)


def configure_logging(settings: Settings, *, logger_name: str = "converge_engine") -> logging.Handler:
    """Install a stream handler on the engine's root logger.

    Any handler previously installed by this function is replaced, so the
    call is safe to repeat.

    Returns
    -------
    logging.Handler
        The installed handler.
    """
    root = logging.getLogger(logger_name)
    for existing in list(root.handlers):
        if getattr(existing, "_converge_handler", False):
            root.removeHandler(existing)

    handler = logging.StreamHandler()
    handler._converge_handler = True  # type: ignore[attr-defined]
    if settings.structured_logging:
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter(_TEXT_FORMAT))

    root.addHandler(handler)
    root.setLevel(logging.DEBUG if settings.debug else settings.log_level.upper())
    return handler
