"""Child-side serve loop: read one envelope, dispatch, write one response."""

from __future__ import annotations

import contextlib
import logging
import os
import time
from typing import Any, Literal

import pyarrow as pa
from pyarrow import ipc

from runas_rpc.rpc._common import (
    DROP_PRIVILEGES_OPERATION,
    RESERVED_PREFIX,
    CallContext,
    PrivilegesNotDroppedError,
    RpcError,
    UnknownOperationError,
    VersionError,
    _access_logger,
    _logger,
)
from runas_rpc.rpc._registry import OperationInfo, OperationRegistry
from runas_rpc.rpc._transport import RpcTransport
from runas_rpc.rpc._wire import (
    ClientLogSink,
    read_request,
    write_error_batch,
    write_error_stream,
    write_result_batch,
)

# ---------------------------------------------------------------------------
# Server helpers
# ---------------------------------------------------------------------------


def _log_operation_error(operation: str, exc: BaseException) -> str:
    """Log a handler failure and return the error type reported to the parent."""
    error_type = exc.error_type if isinstance(exc, RpcError) else type(exc).__name__
    _logger.error(
        "Error in operation %s: %s",
        operation,
        exc,
        exc_info=True,
        extra={"operation": operation, "error_type": error_type, "pid": os.getpid()},
    )
    return error_type


def _emit_access_log(
    operation: str,
    duration_ms: float,
    status: Literal["ok", "error"],
    error_type: str = "",
) -> None:
    """Emit a structured access log record for a served call."""
    if not _access_logger.isEnabledFor(logging.INFO):
        return
    _access_logger.info(
        "%s %s",
        operation,
        status,
        extra={
            "operation": operation,
            "status": status,
            "error_type": error_type,
            "duration_ms": round(duration_ms, 2),
            "pid": os.getpid(),
            "uid": os.getuid(),
            "gid": os.getgid(),
        },
    )


def _flush(transport: RpcTransport) -> None:
    flush = getattr(transport.writer, "flush", None)
    if flush is not None:
        flush()


# ---------------------------------------------------------------------------
# RpcServer
# ---------------------------------------------------------------------------


class RpcServer:
    """Serves an :class:`OperationRegistry` over a duplex transport.

    Dispatch-level failures (unknown operation, handler exceptions,
    version or protocol errors) are written back as error responses and
    the loop continues.  Transport-level failures (EOF, undecodable IPC,
    broken pipe) end the loop.

    With ``require_drop=True`` every operation outside the reserved
    namespace is refused until :meth:`mark_dropped` has been called, i.e.
    until a privilege drop fully succeeded.
    """

    __slots__ = ("_dropped", "_registry", "_require_drop")

    def __init__(self, registry: OperationRegistry, *, require_drop: bool = False) -> None:
        """Initialize with the registry to serve."""
        self._registry = registry
        self._require_drop = require_drop
        self._dropped = False
        _logger.debug(
            "RpcServer created (operations=%d, require_drop=%s)",
            len(registry),
            require_drop,
            extra={"operation_count": len(registry)},
        )

    @property
    def registry(self) -> OperationRegistry:
        """The registry being served."""
        return self._registry

    @property
    def dropped(self) -> bool:
        """Whether a privilege drop has succeeded on this channel."""
        return self._dropped

    def mark_dropped(self) -> None:
        """Record that privileges were dropped; caller operations become dispatchable."""
        self._dropped = True

    def serve(self, transport: RpcTransport) -> None:
        """Serve requests in a loop until the transport ends or breaks."""
        while True:
            try:
                self.serve_one(transport)
            except EOFError:
                _logger.debug("serve loop ending: channel closed")
                break
            except pa.ArrowException:
                _logger.warning("serve loop ending due to undecodable request", exc_info=True)
                break
            except (BrokenPipeError, ConnectionResetError):
                _logger.warning("serve loop ending: parent stopped reading", exc_info=True)
                break

    def serve_one(self, transport: RpcTransport) -> None:
        """Handle a single envelope.

        Raises:
            EOFError: If the channel closed cleanly before a request.
            pa.ArrowException: If the request is not valid Arrow IPC; an
                error response is written first on a best-effort basis.
            BrokenPipeError: If the response cannot be written.

        """
        try:
            operation, batch = read_request(transport.reader)
        except pa.ArrowException as exc:
            with contextlib.suppress(OSError, pa.ArrowException):
                write_error_stream(transport.writer, exc)
                _flush(transport)
            raise
        except (VersionError, RpcError) as exc:
            write_error_stream(transport.writer, exc)
            _flush(transport)
            return

        try:
            info = self._registry.lookup(operation)
            if self._require_drop and not self._dropped and not operation.startswith(RESERVED_PREFIX):
                raise PrivilegesNotDroppedError(
                    f"Operation '{operation}' refused: privileges have not been dropped on this channel"
                )
            request = None if info.request_type is None else info.request_type.from_batch(batch)
        except (UnknownOperationError, PrivilegesNotDroppedError) as exc:
            _emit_access_log(operation, 0.0, "error", exc.error_type)
            write_error_stream(transport.writer, exc)
            _flush(transport)
            return
        except (ValueError, TypeError, KeyError) as exc:
            error_type = _log_operation_error(operation, exc)
            _emit_access_log(operation, 0.0, "error", error_type)
            write_error_stream(transport.writer, exc, info.response_schema)
            _flush(transport)
            return

        self._serve_call(transport, info, request)
        _flush(transport)

    def _serve_call(self, transport: RpcTransport, info: OperationInfo, request: Any) -> None:
        schema = info.response_schema
        sink = ClientLogSink()
        ctx = CallContext(operation=info.name, emit_client_log=sink)
        start = time.monotonic()
        status: Literal["ok", "error"] = "ok"
        error_type = ""
        try:
            with ipc.new_stream(transport.writer, schema) as writer:
                sink.flush_contents(writer, schema)
                try:
                    result = self._registry.dispatch(info.name, request, ctx)
                    write_result_batch(writer, schema, result)
                    if info.name == DROP_PRIVILEGES_OPERATION and getattr(result, "ok", False):
                        self.mark_dropped()
                except Exception as exc:
                    status = "error"
                    error_type = _log_operation_error(info.name, exc)
                    write_error_batch(writer, schema, exc)
        finally:
            _emit_access_log(info.name, (time.monotonic() - start) * 1000, status, error_type)
