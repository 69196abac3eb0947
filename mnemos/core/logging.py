"""
mnemos.core.logging — JSON-lines output for the ``mnemos`` logger tree.

Module loggers stay plain stdlib loggers with printf-style messages.
Calls that concern one memory, event or session attach it through
``extra=``, e.g.::

    log.info("Pruned %s", mid, extra=memory_fields(mid, event="memory_pruned"))

``StructuredFormatter`` lifts those fields to top-level JSON keys so a
log pipeline can follow one memory through extraction, reinforcement
and pruning.  Turned on by ``Config.structured_logging``.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

#: Record attributes promoted to JSON keys when a call supplies them.
CONTEXT_FIELDS = ("memory_id", "event", "session_id", "agent_type")


def memory_fields(
    memory_id: Optional[str] = None,
    event: Optional[str] = None,
    session_id: Optional[str] = None,
    agent_type: Optional[str] = None,
) -> Dict[str, Any]:
    """``extra=`` mapping for a log call; unset fields are left out."""
    values = {
        "memory_id": memory_id,
        "event": event,
        "session_id": session_id or None,
        "agent_type": agent_type or None,
    }
    return {k: v for k, v in values.items() if v is not None}


class StructuredFormatter(logging.Formatter):
    """One JSON object per record.

    Always: ``ts``, ``level``, ``logger``, ``msg``.  Any of
    ``CONTEXT_FIELDS`` present on the record.  Warnings and above also
    carry ``where`` (module:function:line), and ``exception`` when
    there is a traceback.
    """

    def format(self, record: logging.LogRecord) -> str:
        ts = datetime.fromtimestamp(record.created, tz=timezone.utc)
        entry: Dict[str, Any] = {
            "ts": ts.isoformat(timespec="milliseconds").replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        for name in CONTEXT_FIELDS:
            value = getattr(record, name, None)
            if value is not None:
                entry[name] = value
        if record.levelno >= logging.WARNING:
            entry["where"] = f"{record.module}:{record.funcName}:{record.lineno}"
        if record.exc_info and record.exc_info[1] is not None:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def configure_logging(
    structured: bool = False,
    level: str = "INFO",
    logger_name: str = "mnemos",
) -> None:
    """Set the level of the mnemos logger tree, optionally switching it to JSON.

    Parameters
    ----------
    structured:
        Replace the tree's handlers with one ``StructuredFormatter``
        stream handler and stop propagation to the root logger.
    level:
        Level name (``"DEBUG"``, ``"INFO"``, ...).
    logger_name:
        Top of the tree to configure.
    """
    logger = logging.getLogger(logger_name)
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    if not structured:
        return

    handler = logging.StreamHandler()
    handler.setFormatter(StructuredFormatter())
    logger.handlers[:] = [handler]
    logger.propagate = False
