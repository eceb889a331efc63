# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Operation registry, envelopes, and the duplex channel to a child.

Wire Protocol
-------------
Each envelope is one complete Arrow IPC stream.  Multiple streams are
written and read sequentially on the same pipe: ``ipc.open_stream()``
reads one stream (schema + batches + EOS) and stops, and the next call
picks up where the last one left off.

Every request batch carries ``runas_rpc.method`` and
``runas_rpc.request_version`` in its custom metadata.  The child validates
the version before dispatching and rejects a missing or incompatible one
(``VersionError``).

Errors and log messages are zero-row batches with ``runas_rpc.log_level``,
``runas_rpc.log_message`` and ``runas_rpc.log_extra`` custom metadata.

- **EXCEPTION** level → error (parent raises ``RpcError`` or a subclass)
- **Other levels** (ERROR, WARN, INFO, DEBUG) → log message handed to the
  parent's ``on_log`` callback

::

    Parent→Child: [IPC stream: request_schema + 1 request batch + EOS]
    Child→Parent: [IPC stream: response_schema + 0..N log batches + 1 result/error batch + EOS]

Exactly one envelope is in flight per channel; there are no request ids.
"""

from __future__ import annotations

import contextlib
import threading
from collections.abc import Iterator

from runas_rpc.rpc._client import ClientHandle, call
from runas_rpc.rpc._common import (
    DROP_PRIVILEGES_OPERATION,
    RESERVED_PREFIX,
    BootstrapError,
    CallContext,
    ClientLog,
    PrivilegeDropFailed,
    PrivilegesNotDroppedError,
    RegistrationError,
    RpcError,
    RunAsSetupError,
    SpawnError,
    TransportError,
    UnknownOperationError,
    UserNotFoundError,
    VersionError,
)
from runas_rpc.rpc._registry import OperationInfo, OperationRegistry, PayloadType
from runas_rpc.rpc._server import RpcServer
from runas_rpc.rpc._transport import (
    ChildProcess,
    DuplexPipe,
    RpcTransport,
    StderrMode,
    combine,
    make_pipe_pair,
    serve_stdio,
)

__all__ = [
    "DROP_PRIVILEGES_OPERATION",
    "RESERVED_PREFIX",
    "BootstrapError",
    "CallContext",
    "ChildProcess",
    "ClientHandle",
    "ClientLog",
    "DuplexPipe",
    "OperationInfo",
    "OperationRegistry",
    "PayloadType",
    "PrivilegeDropFailed",
    "PrivilegesNotDroppedError",
    "RegistrationError",
    "RpcError",
    "RpcServer",
    "RpcTransport",
    "RunAsSetupError",
    "SpawnError",
    "StderrMode",
    "TransportError",
    "UnknownOperationError",
    "UserNotFoundError",
    "VersionError",
    "call",
    "combine",
    "make_pipe_pair",
    "serve_pipe",
    "serve_stdio",
]


@contextlib.contextmanager
def serve_pipe(
    registry: OperationRegistry,
    *,
    require_drop: bool = False,
) -> Iterator[DuplexPipe]:
    """Serve *registry* on a background thread and yield the client end of the channel.

    Useful for tests and demos: no subprocess and no privilege change is
    involved.  Use :func:`call` on the yielded channel.
    """
    client_transport, server_transport = make_pipe_pair()
    server = RpcServer(registry, require_drop=require_drop)
    thread = threading.Thread(target=server.serve, args=(server_transport,), daemon=True)
    thread.start()
    try:
        yield client_transport
    finally:
        client_transport.close()
        thread.join(timeout=5)
        server_transport.close()
