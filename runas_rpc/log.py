# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Messages sent from a privilege-dropped child back to its parent.

Handlers running in the child can emit diagnostic messages through
``CallContext.client_log()``; the server also turns every failure into an
``EXCEPTION`` message.  Both travel to the parent as zero-row batches whose
custom metadata carries the level, the text, and a JSON blob of extras,
interleaved ahead of the result batch in the response IPC stream.

    Message.exception("Error occurred", traceback="...")
    Message.warn("Deprecated usage")
    Message.info("Processing started")
    Message.debug("Variable value", x=42)

KEY CLASSES
-----------
Level : Enum with EXCEPTION, ERROR, WARN, INFO, DEBUG
Message : Log message with level, message text, and optional extras

"""

from __future__ import annotations

import json
import traceback
from enum import Enum
from typing import ClassVar

from runas_rpc.metadata import LOG_EXTRA_KEY, LOG_LEVEL_KEY, LOG_MESSAGE_KEY

__all__ = [
    "Level",
    "Message",
]


class Level(Enum):
    """Severity of a child-to-parent message.

    Attributes:
        EXCEPTION: The call failed; the parent raises instead of logging.
        ERROR: Significant error that did not fail the call.
        WARN: Potential issue worth reviewing.
        INFO: General informational message.
        DEBUG: Detailed information useful for debugging.

    """

    EXCEPTION = "EXCEPTION"
    ERROR = "ERROR"
    WARN = "WARN"
    INFO = "INFO"
    DEBUG = "DEBUG"


class Message:
    """A message emitted inside the child while serving one call.

    Attributes:
        level: Severity level.
        message: Human-readable text.
        extra: Additional key-value pairs, serialized as JSON on the wire.

    """

    __slots__ = ("extra", "level", "message")
    __hash__ = None  # type: ignore[assignment]  # Unhashable since we define __eq__

    _MAX_TRACEBACK_CHARS: ClassVar[int] = 16_000

    def __init__(self, level: Level, message: str, **kwargs: object) -> None:
        """Create a message with level, text, and optional extras."""
        self.level = level
        self.message = message
        self.extra: dict[str, object] | None = kwargs if kwargs else None

    def __eq__(self, other: object) -> bool:
        """Compare messages by level, text, and extras."""
        if not isinstance(other, Message):
            return NotImplemented
        return self.level == other.level and self.message == other.message and self.extra == other.extra

    def __repr__(self) -> str:
        """Return a string representation suitable for debugging."""
        if self.extra:
            return f"Message({self.level!r}, {self.message!r}, **{self.extra!r})"
        return f"Message({self.level!r}, {self.message!r})"

    @classmethod
    def exception(cls, message: str, **kwargs: object) -> Message:
        """Create an EXCEPTION level message."""
        return cls(Level.EXCEPTION, message, **kwargs)

    @classmethod
    def error(cls, message: str, **kwargs: object) -> Message:
        """Create an ERROR level message."""
        return cls(Level.ERROR, message, **kwargs)

    @classmethod
    def warn(cls, message: str, **kwargs: object) -> Message:
        """Create a WARN level message."""
        return cls(Level.WARN, message, **kwargs)

    @classmethod
    def info(cls, message: str, **kwargs: object) -> Message:
        """Create an INFO level message."""
        return cls(Level.INFO, message, **kwargs)

    @classmethod
    def debug(cls, message: str, **kwargs: object) -> Message:
        """Create a DEBUG level message."""
        return cls(Level.DEBUG, message, **kwargs)

    def add_to_metadata(self, metadata: dict[str, str] | None = None) -> dict[str, str]:
        """Return a copy of *metadata* with the level, message and extras added.

        The input dictionary is not mutated.  ``runas_rpc.log_extra`` is
        omitted when there are no extras.
        """
        result = dict(metadata) if metadata else {}
        result[LOG_LEVEL_KEY.decode()] = self.level.value
        result[LOG_MESSAGE_KEY.decode()] = self.message
        if self.extra:
            result[LOG_EXTRA_KEY.decode()] = json.dumps(self.extra, default=str)
        return result

    @classmethod
    def from_exception(cls, exc: BaseException) -> Message:
        """Produce an EXCEPTION message carrying the exception type and traceback."""
        formatted_tb = "".join(traceback.format_exception(exc))
        if len(formatted_tb) > cls._MAX_TRACEBACK_CHARS:
            formatted_tb = formatted_tb[: cls._MAX_TRACEBACK_CHARS] + "\n… <traceback truncated>"
        return cls(
            Level.EXCEPTION,
            str(exc),
            exception_type=type(exc).__name__,
            traceback=formatted_tb,
        )
