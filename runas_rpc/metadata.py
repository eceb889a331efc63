# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Well-known ``pa.KeyValueMetadata`` keys carried on runas-rpc envelopes.

Request batches carry the operation name and the wire-protocol version;
zero-row response batches carry log/error fields.  Keeping the keys in one
place lets ``rpc/`` and ``log.py`` agree on them without import cycles.
"""

from __future__ import annotations

import pyarrow as pa

__all__ = [
    "CHILD_PID_KEY",
    "LOG_EXTRA_KEY",
    "LOG_LEVEL_KEY",
    "LOG_MESSAGE_KEY",
    "REQUEST_VERSION",
    "REQUEST_VERSION_KEY",
    "RPC_METHOD_KEY",
    "decode_metadata",
    "encode_metadata",
]

# ---------------------------------------------------------------------------
# Well-known metadata keys (bytes, matching what appears on the wire)
# ---------------------------------------------------------------------------

RPC_METHOD_KEY = b"runas_rpc.method"
REQUEST_VERSION_KEY = b"runas_rpc.request_version"
REQUEST_VERSION = b"1"

LOG_LEVEL_KEY = b"runas_rpc.log_level"
LOG_MESSAGE_KEY = b"runas_rpc.log_message"
LOG_EXTRA_KEY = b"runas_rpc.log_extra"

# Set by the child on log/error batches so the parent can tell children apart
CHILD_PID_KEY = b"runas_rpc.child_pid"

# ---------------------------------------------------------------------------
# Encode / decode
# ---------------------------------------------------------------------------


def encode_metadata(metadata: dict[str, str]) -> pa.KeyValueMetadata:
    """Encode a plain ``dict[str, str]`` to ``pa.KeyValueMetadata`` with bytes keys/values."""
    return pa.KeyValueMetadata({k.encode(): v.encode() for k, v in metadata.items()})


def decode_metadata(metadata: pa.KeyValueMetadata | None) -> dict[str, str]:
    """Decode ``pa.KeyValueMetadata`` to a ``dict[str, str]`` (empty when *metadata* is ``None``)."""
    if metadata is None:
        return {}
    result: dict[str, str] = {}
    for k, v in metadata.items():
        key = k.decode("utf-8", errors="replace") if isinstance(k, bytes) else k
        val = v.decode("utf-8", errors="replace") if isinstance(v, bytes) else v
        result[key] = val
    return result
