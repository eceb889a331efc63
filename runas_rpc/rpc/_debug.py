"""Debug logging infrastructure for wire protocol diagnostics.

Provides logger instances under the ``runas_rpc.wire.*`` hierarchy and
formatting helpers for Arrow IPC objects.  Enabling
``logging.getLogger("runas_rpc.wire").setLevel(logging.DEBUG)`` shows every
envelope crossing the privilege boundary.

All formatting helpers return ``str`` and never log directly.  Call them
inside ``isEnabledFor`` guards so disabled debug logging costs nothing.
"""

from __future__ import annotations

import logging

import pyarrow as pa

# ---------------------------------------------------------------------------
# Logger hierarchy: runas_rpc.wire.*
# ---------------------------------------------------------------------------

wire_request_logger = logging.getLogger("runas_rpc.wire.request")
"""Request serialization / deserialization."""

wire_response_logger = logging.getLogger("runas_rpc.wire.response")
"""Response serialization / deserialization."""

wire_transport_logger = logging.getLogger("runas_rpc.wire.transport")
"""Transport lifecycle (pipe, child process)."""

# ---------------------------------------------------------------------------
# Formatting helpers
# ---------------------------------------------------------------------------

_MAX_VALUE_LEN = 80
"""Maximum length for individual values in fmt_metadata."""


def fmt_schema(schema: pa.Schema) -> str:
    """Format an Arrow schema compactly.

    Returns:
        ``"(uid: int64, gid: int64)"`` or ``"(empty)"`` for zero-field schemas.

    """
    if len(schema) == 0:
        return "(empty)"
    fields = ", ".join(f"{f.name}: {f.type}" for f in schema)
    return f"({fields})"


def fmt_metadata(metadata: pa.KeyValueMetadata | None) -> str:
    """Format Arrow custom metadata compactly, truncating long values."""
    if metadata is None:
        return "None"
    parts: list[str] = []
    for k, v in metadata.items():
        key = k.decode("utf-8", errors="replace") if isinstance(k, bytes) else k
        val = v.decode("utf-8", errors="replace") if isinstance(v, bytes) else v
        if len(val) > _MAX_VALUE_LEN:
            val = val[:_MAX_VALUE_LEN] + "..."
        parts.append(f"{key}={val!r}")
    return "{" + ", ".join(parts) + "}"


def fmt_batch(batch: pa.RecordBatch) -> str:
    """Format a RecordBatch summary."""
    return f"RecordBatch(rows={batch.num_rows}, cols={batch.num_columns}, schema={fmt_schema(batch.schema)})"
