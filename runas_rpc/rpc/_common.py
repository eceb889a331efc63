"""Constants, errors, loggers, and call context shared by client and server."""

from __future__ import annotations

import logging
import os
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING

import pyarrow as pa

from runas_rpc.log import Level, Message

if TYPE_CHECKING:
    from runas_rpc.privileges import Credential, DropResult

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

_EMPTY_SCHEMA = pa.schema([])
_logger = logging.getLogger("runas_rpc.rpc")
_access_logger = logging.getLogger("runas_rpc.access")

RESERVED_PREFIX = "_runas."
"""Namespace of built-in operations; caller registrations may not use it."""

DROP_PRIVILEGES_OPERATION = RESERVED_PREFIX + "DropPrivileges"
"""Name of the built-in privilege-drop operation."""

ClientLog = Callable[[Message], None]
"""Callback type for emitting client-directed log messages from handlers."""


# ---------------------------------------------------------------------------
# Error types reported across the channel
# ---------------------------------------------------------------------------

TRANSPORT_ERROR = "TransportError"
UNKNOWN_OPERATION = "UnknownOperation"
PRIVILEGES_NOT_DROPPED = "PrivilegesNotDropped"
PROTOCOL_ERROR = "ProtocolError"
VERSION_ERROR = "VersionError"


class RpcError(Exception):
    """Raised on the parent side when a call across the channel fails.

    Attributes:
        error_type: Short machine-readable kind, e.g. ``"TransportError"``,
            ``"UnknownOperation"``, or the remote exception class name.
        error_message: Human-readable description.
        remote_traceback: Formatted traceback from the child, if any.

    """

    def __init__(self, error_type: str, error_message: str, remote_traceback: str = "") -> None:
        """Initialize with error details from the remote side."""
        self.error_type = error_type
        self.error_message = error_message
        self.remote_traceback = remote_traceback
        super().__init__(f"{error_type}: {error_message}")


class TransportError(RpcError):
    """The channel broke: closed pipe, EOF mid-call, or undecodable data.

    The handle that raised it is dead and must be discarded.
    """

    def __init__(self, error_message: str, remote_traceback: str = "") -> None:
        """Initialize with a description of the transport failure."""
        super().__init__(TRANSPORT_ERROR, error_message, remote_traceback)


class UnknownOperationError(RpcError):
    """The requested operation name is not registered."""

    def __init__(self, error_message: str, remote_traceback: str = "") -> None:
        """Initialize with a description naming the missing operation."""
        super().__init__(UNKNOWN_OPERATION, error_message, remote_traceback)


class PrivilegesNotDroppedError(RpcError):
    """A caller operation reached the child before a successful privilege drop."""

    def __init__(self, error_message: str, remote_traceback: str = "") -> None:
        """Initialize with a description of the refused call."""
        super().__init__(PRIVILEGES_NOT_DROPPED, error_message, remote_traceback)


class VersionError(Exception):
    """Raised when a request has a missing or incompatible protocol version."""


_REMOTE_ERROR_TYPES: dict[str, type[TransportError | UnknownOperationError | PrivilegesNotDroppedError]] = {
    TRANSPORT_ERROR: TransportError,
    UNKNOWN_OPERATION: UnknownOperationError,
    PRIVILEGES_NOT_DROPPED: PrivilegesNotDroppedError,
}


def remote_error(error_type: str, error_message: str, remote_traceback: str = "") -> RpcError:
    """Rebuild the most specific ``RpcError`` subclass for an error read off the wire."""
    cls = _REMOTE_ERROR_TYPES.get(error_type)
    if cls is not None:
        return cls(error_message, remote_traceback)
    return RpcError(error_type, error_message, remote_traceback)


# ---------------------------------------------------------------------------
# Local (non-wire) errors
# ---------------------------------------------------------------------------


class RunAsSetupError(RuntimeError):
    """Host misconfiguration detected while setting up a child; not recoverable."""


class SpawnError(RunAsSetupError):
    """The program could not be located or the child process could not be started."""


class BootstrapError(RunAsSetupError):
    """``spawn`` was called before ``maybe_run_child_server``."""


class RegistrationError(ValueError):
    """An operation could not be registered (duplicate, reserved, or too late)."""


class UserNotFoundError(LookupError):
    """A username did not resolve to a uid/gid pair."""


class PrivilegeDropFailed(Exception):
    """The child could not assume the requested identity.

    Attributes:
        credential: The identity that was requested.
        result: Per-step outcome, including the OS error numbers.

    """

    def __init__(self, credential: Credential, result: DropResult) -> None:
        """Initialize with the requested credential and the drop outcome."""
        self.credential = credential
        self.result = result
        super().__init__(
            f"failed to drop privileges to uid={credential.uid} gid={credential.gid}: "
            f"gid_dropped={result.gid_dropped} (errno={result.setgid_errno}), "
            f"uid_dropped={result.uid_dropped} (errno={result.setuid_errno})"
        )


# ---------------------------------------------------------------------------
# Call context
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CallContext:
    """Per-call context injected into handlers that declare a ``ctx`` parameter.

    Attributes:
        operation: Name of the operation being served.
        emit_client_log: Sends a :class:`Message` to the parent ahead of the
            result; the parent hands it to its ``on_log`` callback.

    """

    operation: str
    emit_client_log: ClientLog

    @property
    def pid(self) -> int:
        """Process id of the serving child."""
        return os.getpid()

    def client_log(self, level: Level, message: str, **extra: str) -> None:
        """Emit a client-directed log message."""
        self.emit_client_log(Message(level, message, **extra))
