# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Parent-side handle for calling operations in a privilege-dropped child."""

from __future__ import annotations

import logging
from collections.abc import Callable
from types import TracebackType
from typing import TYPE_CHECKING, Any

import pyarrow as pa

from runas_rpc.log import Level, Message
from runas_rpc.rpc._common import RpcError, TransportError
from runas_rpc.rpc._debug import wire_request_logger, wire_transport_logger
from runas_rpc.rpc._registry import OperationRegistry
from runas_rpc.rpc._transport import RpcTransport
from runas_rpc.rpc._wire import decode_response, read_response, write_request
from runas_rpc.utils import ArrowSerializableDataclass

if TYPE_CHECKING:
    from runas_rpc.privileges import Credential
    from runas_rpc.rpc._transport import ChildProcess

# Exceptions that indicate the child has gone away or the IPC data is
# truncated/corrupt.  Wrapped into ``TransportError`` on the parent side.
_TRANSPORT_ERRORS = (OSError, EOFError, pa.ArrowException)

_child_logger = logging.getLogger("runas_rpc.child")

_LEVELS = {
    Level.ERROR: logging.ERROR,
    Level.WARN: logging.WARNING,
    Level.INFO: logging.INFO,
    Level.DEBUG: logging.DEBUG,
}


def _log_child_message(msg: Message) -> None:
    """Default ``on_log``: forward child messages to the ``runas_rpc.child`` logger."""
    _child_logger.log(_LEVELS.get(msg.level, logging.INFO), msg.message, extra={"child_extra": msg.extra or {}})


def call(
    transport: RpcTransport,
    operation: str,
    request: ArrowSerializableDataclass | None = None,
    *,
    response_type: type[ArrowSerializableDataclass] | None = None,
    on_log: Callable[[Message], None] | None = None,
) -> Any:
    """Send one envelope over *transport* and block until its response arrives.

    Only one call may be in flight per transport.

    Raises:
        TransportError: If the channel broke while writing or reading, or the
            response does not decode into *response_type*.
        RpcError: If the child reported an error (see its subclasses).

    """
    if wire_request_logger.isEnabledFor(logging.DEBUG):
        wire_request_logger.debug("Call: operation=%s", operation)
    try:
        write_request(transport.writer, operation, request)
        batch = read_response(transport.reader, on_log)
    except RpcError:
        raise
    except _TRANSPORT_ERRORS as exc:
        raise TransportError(f"Transport failed during call to '{operation}': {exc}") from exc
    try:
        return decode_response(batch, response_type)
    except (ValueError, TypeError, KeyError, pa.ArrowException) as exc:
        raise TransportError(f"Failed to decode response of '{operation}': {exc}") from exc


class ClientHandle:
    """Calls operations in one spawned, privilege-dropped child.

    Owns the child's duplex channel end to end.  Not thread-safe: calls
    are strictly one at a time; use one handle per thread.  Any
    :class:`TransportError` marks the handle dead and every later call
    fails fast with ``TransportError``.  Closing the handle closes the
    channel, which ends the child's serve loop, and then reaps the child.
    """

    __slots__ = ("_child", "_close_timeout", "_credential", "_dead", "_on_log", "_registry")

    def __init__(
        self,
        child: ChildProcess,
        credential: Credential,
        registry: OperationRegistry | None = None,
        *,
        on_log: Callable[[Message], None] | None = None,
        close_timeout: float = 10.0,
    ) -> None:
        """Wrap *child*, already running as (or about to drop to) *credential*."""
        self._child = child
        self._credential = credential
        self._registry = registry
        self._on_log = on_log if on_log is not None else _log_child_message
        self._close_timeout = close_timeout
        self._dead: str | None = None

    @property
    def pid(self) -> int:
        """Process id of the child."""
        return self._child.pid

    @property
    def credential(self) -> Credential:
        """The identity the child was asked to drop to."""
        return self._credential

    @property
    def closed(self) -> bool:
        """Whether the channel has been closed."""
        return self._child.pipe.closed

    @property
    def transport(self) -> RpcTransport:
        """The duplex channel to the child."""
        return self._child.pipe

    def call(
        self,
        operation: str,
        request: ArrowSerializableDataclass | None = None,
        *,
        response_type: type[ArrowSerializableDataclass] | None = None,
    ) -> Any:
        """Invoke *operation* in the child and return its decoded response.

        The response type defaults to the one registered locally for
        *operation* (parent and child run the same registrations); when the
        operation is unknown locally a one-row response comes back as a
        ``dict``.

        Raises:
            TransportError: If the channel is closed, dead, or breaks now.
            UnknownOperationError: If the child has no such operation.
            RpcError: If the handler raised in the child.

        """
        if self.closed:
            raise TransportError(f"Cannot call '{operation}': handle is closed")
        if self._dead is not None:
            raise TransportError(f"Cannot call '{operation}': channel is no longer usable ({self._dead})")
        if response_type is None and self._registry is not None:
            info = self._registry.get(operation)
            if info is not None:
                response_type = info.response_type
        try:
            return call(self._child.pipe, operation, request, response_type=response_type, on_log=self._on_log)
        except TransportError as exc:
            self._dead = exc.error_message
            raise

    def close(self) -> int | None:
        """Close the channel, wait for the child to exit, and return its exit code."""
        if wire_transport_logger.isEnabledFor(logging.DEBUG):
            wire_transport_logger.debug("ClientHandle close: pid=%d", self._child.pid)
        return self._child.close(timeout=self._close_timeout)

    def __enter__(self) -> ClientHandle:
        """Enter context manager."""
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        """Close the handle."""
        self.close()

    def __repr__(self) -> str:
        """Return a short description of the handle."""
        state = "closed" if self.closed else ("dead" if self._dead else "open")
        return f"ClientHandle(pid={self.pid}, uid={self._credential.uid}, gid={self._credential.gid}, {state})"
