"""Envelope read/write helpers.

Each envelope is one complete Arrow IPC stream (schema + batches + EOS)
written to the pipe; the next envelope starts right after the previous EOS.

    Parent→Child: [IPC stream: request_schema + 1 request batch + EOS]
    Child→Parent: [IPC stream: response_schema + 0..N log batches + 1 result/error batch + EOS]

The request batch's custom metadata carries ``runas_rpc.method`` and
``runas_rpc.request_version``.  Log and error batches are zero-row batches
with ``runas_rpc.log_level`` / ``runas_rpc.log_message`` /
``runas_rpc.log_extra`` metadata; an ``EXCEPTION`` level means the call
failed and the parent raises.
"""

from __future__ import annotations

import contextlib
import json
import logging
import os
from collections.abc import Callable
from io import IOBase
from typing import Any

import pyarrow as pa
from pyarrow import ipc

from runas_rpc.log import Level, Message
from runas_rpc.metadata import (
    CHILD_PID_KEY,
    LOG_EXTRA_KEY,
    LOG_LEVEL_KEY,
    LOG_MESSAGE_KEY,
    REQUEST_VERSION,
    REQUEST_VERSION_KEY,
    RPC_METHOD_KEY,
    encode_metadata,
)
from runas_rpc.rpc._common import (
    _EMPTY_SCHEMA,
    PROTOCOL_ERROR,
    RpcError,
    VersionError,
    remote_error,
)
from runas_rpc.rpc._debug import fmt_batch, fmt_metadata, fmt_schema, wire_request_logger, wire_response_logger
from runas_rpc.utils import ArrowSerializableDataclass, empty_batch, ipc_trace

# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------


def _payload_batch(payload: ArrowSerializableDataclass | None, schema: pa.Schema) -> pa.RecordBatch:
    if payload is None:
        if len(schema) != 0:
            raise TypeError(f"Payload required for schema {fmt_schema(schema)}, got None")
        return empty_batch(_EMPTY_SCHEMA)
    batch = payload.to_batch()
    if batch.schema != schema:
        raise TypeError(f"Payload schema {fmt_schema(batch.schema)} does not match expected {fmt_schema(schema)}")
    return batch


def write_request(
    writer_stream: IOBase,
    operation: str,
    request: ArrowSerializableDataclass | None,
    request_schema: pa.Schema | None = None,
) -> None:
    """Write a request envelope as a complete IPC stream (schema + 1 batch + EOS).

    Args:
        writer_stream: Write end of the channel.
        operation: Operation name, carried in the batch metadata.
        request: Request value, or ``None`` for an empty payload.
        request_schema: Expected schema; defaults to the request's own schema.

    Raises:
        TypeError: If *request* does not match *request_schema*.

    """
    if request_schema is None:
        request_schema = _EMPTY_SCHEMA if request is None else request.ARROW_SCHEMA
    batch = _payload_batch(request, request_schema)
    custom_metadata = pa.KeyValueMetadata({RPC_METHOD_KEY: operation.encode(), REQUEST_VERSION_KEY: REQUEST_VERSION})
    if wire_request_logger.isEnabledFor(logging.DEBUG):
        wire_request_logger.debug(
            "Write request: operation=%s, %s, metadata=%s",
            operation,
            fmt_batch(batch),
            fmt_metadata(custom_metadata),
        )
    ipc_trace("ipc_write_request", batch, custom_metadata)
    with ipc.new_stream(writer_stream, batch.schema) as writer:
        writer.write_batch(batch, custom_metadata=custom_metadata)
    flush = getattr(writer_stream, "flush", None)
    if flush is not None:
        flush()


def read_request(reader_stream: IOBase) -> tuple[str, pa.RecordBatch]:
    """Read one request envelope and return ``(operation, batch)``.

    Raises:
        EOFError: If the stream ended cleanly before a new envelope.
        pa.ArrowInvalid: If the bytes are not a valid IPC stream.
        RpcError: If ``runas_rpc.method`` is missing or the batch does not
            have exactly one row (for a non-empty schema).
        VersionError: If ``runas_rpc.request_version`` is missing or
            unsupported.

    """
    if at_eof(reader_stream):
        raise EOFError("channel closed")
    reader = ipc.open_stream(reader_stream)
    try:
        batch, custom_metadata = reader.read_next_batch_with_custom_metadata()
    except StopIteration:
        raise RpcError(PROTOCOL_ERROR, "Request stream ended without a request batch") from None
    drain_stream(reader)
    if wire_request_logger.isEnabledFor(logging.DEBUG):
        wire_request_logger.debug("Read request batch: %s, metadata=%s", fmt_batch(batch), fmt_metadata(custom_metadata))
    ipc_trace("ipc_read_request", batch, custom_metadata)

    method_bytes = custom_metadata.get(RPC_METHOD_KEY) if custom_metadata else None
    if method_bytes is None:
        raise RpcError(
            PROTOCOL_ERROR,
            "Missing 'runas_rpc.method' in request batch custom_metadata.",
        )
    version_bytes = custom_metadata.get(REQUEST_VERSION_KEY) if custom_metadata else None
    if version_bytes is None:
        raise VersionError("Missing 'runas_rpc.request_version' in request batch custom_metadata.")
    if version_bytes != REQUEST_VERSION:
        raise VersionError(f"Unsupported request version {version_bytes!r}, expected {REQUEST_VERSION!r}.")
    if len(batch.schema) > 0 and batch.num_rows != 1:
        raise RpcError(PROTOCOL_ERROR, f"Expected 1 row in request batch, got {batch.num_rows}.")
    operation = method_bytes.decode() if isinstance(method_bytes, bytes) else method_bytes
    return operation, batch


def at_eof(reader_stream: IOBase) -> bool:
    """Return whether *reader_stream* is at a clean end-of-stream.

    Only buffered readers (with ``peek``) can answer without consuming
    data; anything else reports ``False`` and EOF surfaces from Arrow.
    """
    peek = getattr(reader_stream, "peek", None)
    if peek is None:
        return False
    return not peek(1)


def drain_stream(reader: ipc.RecordBatchStreamReader) -> None:
    """Consume remaining batches so the IPC EOS marker is read."""
    while True:
        try:
            reader.read_next_batch()
        except StopIteration:
            return


# ---------------------------------------------------------------------------
# Responses
# ---------------------------------------------------------------------------


def _message_metadata(msg: Message) -> pa.KeyValueMetadata:
    md = msg.add_to_metadata()
    md[CHILD_PID_KEY.decode()] = str(os.getpid())
    return encode_metadata(md)


def write_message_batch(writer: ipc.RecordBatchStreamWriter, schema: pa.Schema, msg: Message) -> None:
    """Write a zero-row batch carrying *msg* on an open response stream."""
    writer.write_batch(empty_batch(schema), custom_metadata=_message_metadata(msg))


def error_message(exc: BaseException) -> Message:
    """Build the EXCEPTION message sent for *exc*.

    ``RpcError`` keeps its ``error_type`` so the parent can rebuild the
    same kind; other exceptions are reported by class name with traceback.
    """
    if isinstance(exc, RpcError):
        return Message.exception(exc.error_message, exception_type=exc.error_type, traceback=exc.remote_traceback)
    if isinstance(exc, VersionError):
        return Message.exception(str(exc), exception_type="VersionError", traceback="")
    return Message.from_exception(exc)


def write_error_batch(writer: ipc.RecordBatchStreamWriter, schema: pa.Schema, exc: BaseException) -> None:
    """Write *exc* as a zero-row EXCEPTION batch on an open response stream."""
    if wire_response_logger.isEnabledFor(logging.DEBUG):
        wire_response_logger.debug("Write error batch: %s: %s", type(exc).__name__, str(exc)[:200])
    write_message_batch(writer, schema, error_message(exc))


def write_error_stream(writer_stream: IOBase, exc: BaseException, schema: pa.Schema = _EMPTY_SCHEMA) -> None:
    """Write a complete response stream containing only an error batch."""
    with ipc.new_stream(writer_stream, schema) as writer:
        write_error_batch(writer, schema, exc)


def write_result_batch(writer: ipc.RecordBatchStreamWriter, schema: pa.Schema, value: object) -> None:
    """Write the result of a successful call on an open response stream.

    Raises:
        TypeError: If *value* does not match *schema*.

    """
    if value is not None and not isinstance(value, ArrowSerializableDataclass):
        raise TypeError(f"Handler must return an ArrowSerializableDataclass or None, got {type(value).__name__}")
    batch = _payload_batch(value, schema)
    if wire_response_logger.isEnabledFor(logging.DEBUG):
        wire_response_logger.debug("Write result batch: %s", fmt_batch(batch))
    ipc_trace("ipc_write_result", batch)
    writer.write_batch(batch)


class ClientLogSink:
    """Buffers client-directed messages until the response writer exists, then writes directly."""

    __slots__ = ("_buffer", "_schema", "_writer")

    def __init__(self) -> None:
        self._buffer: list[Message] = []
        self._writer: ipc.RecordBatchStreamWriter | None = None
        self._schema: pa.Schema | None = None

    def __call__(self, msg: Message) -> None:
        if self._writer is not None and self._schema is not None:
            write_message_batch(self._writer, self._schema, msg)
        else:
            self._buffer.append(msg)

    def flush_contents(self, writer: ipc.RecordBatchStreamWriter, schema: pa.Schema) -> None:
        """Flush buffered messages and switch to direct writing."""
        self._writer = writer
        self._schema = schema
        for msg in self._buffer:
            write_message_batch(writer, schema, msg)
        self._buffer.clear()


def _decode_message(custom_metadata: pa.KeyValueMetadata) -> Message | None:
    level_bytes = custom_metadata.get(LOG_LEVEL_KEY)
    message_bytes = custom_metadata.get(LOG_MESSAGE_KEY)
    if level_bytes is None or message_bytes is None:
        return None
    extra: dict[str, object] = {}
    raw_extra = custom_metadata.get(LOG_EXTRA_KEY)
    if raw_extra is not None:
        with contextlib.suppress(json.JSONDecodeError):
            extra = json.loads(raw_extra.decode())
    pid = custom_metadata.get(CHILD_PID_KEY)
    if pid is not None:
        extra["child_pid"] = pid.decode()
    try:
        level = Level(level_bytes.decode())
    except ValueError:
        level = Level.INFO
    return Message(level, message_bytes.decode(), **extra)


def read_response(
    reader_stream: IOBase,
    on_log: Callable[[Message], None] | None = None,
) -> pa.RecordBatch:
    """Read one response envelope and return its data batch.

    Log batches are handed to *on_log* in order.  The stream is drained to
    its EOS marker before returning or raising so the channel stays aligned
    for the next call.

    Raises:
        RpcError: If the child reported an error (most specific subclass).
        pa.ArrowInvalid: If the stream is truncated or corrupt.

    """
    reader = ipc.open_stream(reader_stream)
    while True:
        try:
            batch, custom_metadata = reader.read_next_batch_with_custom_metadata()
        except StopIteration:
            raise RpcError(PROTOCOL_ERROR, "Response stream ended without a result batch") from None
        if wire_response_logger.isEnabledFor(logging.DEBUG):
            wire_response_logger.debug("Read batch: %s, metadata=%s", fmt_batch(batch), fmt_metadata(custom_metadata))
        ipc_trace("ipc_read_response", batch, custom_metadata)
        msg = _decode_message(custom_metadata) if custom_metadata is not None and batch.num_rows == 0 else None
        if msg is None:
            drain_stream(reader)
            return batch
        if msg.level == Level.EXCEPTION:
            drain_stream(reader)
            extra = msg.extra or {}
            raise remote_error(
                str(extra.get("exception_type", Level.EXCEPTION.value)),
                msg.message,
                str(extra.get("traceback", "")),
            )
        if on_log is not None:
            on_log(msg)


def decode_response(batch: pa.RecordBatch, response_type: type[ArrowSerializableDataclass] | None) -> Any:
    """Convert a response data batch to the caller's value.

    With a *response_type* the batch is deserialized into it; otherwise a
    one-row batch becomes a plain ``dict`` and an empty batch ``None``.
    """
    if len(batch.schema) == 0:
        return None if response_type is None else response_type.from_batch(batch)
    if response_type is None:
        rows = batch.to_pylist()
        return rows[0] if rows else None
    return response_type.from_batch(batch)
