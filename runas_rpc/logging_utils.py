# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""JSON formatter and handler setup for structured logging output.

Provides :class:`RunAsJsonFormatter`, a :class:`logging.Formatter` subclass
that serializes log records as single-line JSON objects.  Every ``extra``
field attached to a record (the access log's ``operation``/``status``/
``duration_ms``/``uid``/``gid``, a child's ``child_pid``) is included.

This module is **not** auto-imported by ``runas_rpc``; import it explicitly::

    from runas_rpc.logging_utils import RunAsJsonFormatter
"""

from __future__ import annotations

import json
import logging
from typing import TextIO

__all__ = ["RunAsJsonFormatter", "configure_logging"]

# Attribute names every LogRecord has by default; anything else came via ``extra``.
_DEFAULT_RECORD_ATTRS: frozenset[str] = frozenset(logging.LogRecord("", 0, "", 0, "", (), None).__dict__.keys()) | {
    "message",
    "asctime",
}

_RESERVED_KEYS: frozenset[str] = frozenset(
    {"timestamp", "level", "logger", "message", "pid", "exception", "stack_info"}
)


class RunAsJsonFormatter(logging.Formatter):
    """JSON formatter that emits all structured extra fields.

    Standard fields (``timestamp``, ``level``, ``logger``, ``message``,
    ``pid``) are always present and cannot be overwritten by extra fields
    of the same name.  ``pid`` tells parent and child records apart when
    both write to the same stderr.

    Non-serializable values are coerced to strings via ``default=str``.
    """

    def format(self, record: logging.LogRecord) -> str:
        """Format a log record as a single-line JSON string."""
        record.message = record.getMessage()
        obj: dict[str, object] = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.message,
            "pid": record.process,
            **{k: v for k, v in record.__dict__.items() if k not in _DEFAULT_RECORD_ATTRS and k not in _RESERVED_KEYS},
        }
        if record.exc_info and record.exc_info[1]:
            obj["exception"] = self.formatException(record.exc_info)
        if record.stack_info:
            obj["stack_info"] = self.formatStack(record.stack_info)
        return json.dumps(obj, default=str)


def configure_logging(
    level: int | str = logging.WARNING,
    *,
    json_format: bool = False,
    stream: TextIO | None = None,
) -> logging.Handler:
    """Attach one stream handler to the ``runas_rpc`` logger and return it.

    Records always go to stderr by default: in a child, stdout is the wire.
    Calling it again replaces the handler installed by the previous call.
    """
    logger = logging.getLogger("runas_rpc")
    for existing in list(logger.handlers):
        if getattr(existing, "_runas_rpc_configured", False):
            logger.removeHandler(existing)
    handler = logging.StreamHandler(stream)
    if json_format:
        handler.setFormatter(RunAsJsonFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s [%(process)d] %(levelname)s %(name)s: %(message)s"))
    handler._runas_rpc_configured = True  # type: ignore[attr-defined]
    logger.addHandler(handler)
    logger.setLevel(level)
    return handler
