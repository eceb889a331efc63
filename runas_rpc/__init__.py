# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Run registered operations as another Unix user in a re-executed child process."""

import logging

from runas_rpc.log import Level, Message
from runas_rpc.metadata import REQUEST_VERSION
from runas_rpc.privileges import Credential, DropResult, drop_privileges, resolve_user
from runas_rpc.rpc import (
    DROP_PRIVILEGES_OPERATION,
    RESERVED_PREFIX,
    BootstrapError,
    CallContext,
    ChildProcess,
    ClientHandle,
    ClientLog,
    DuplexPipe,
    OperationInfo,
    OperationRegistry,
    PrivilegeDropFailed,
    PrivilegesNotDroppedError,
    RegistrationError,
    RpcError,
    RpcServer,
    RpcTransport,
    RunAsSetupError,
    SpawnError,
    StderrMode,
    TransportError,
    UnknownOperationError,
    UserNotFoundError,
    VersionError,
    call,
    combine,
    make_pipe_pair,
    serve_pipe,
    serve_stdio,
)
from runas_rpc.runas import CHILD_ENV_VALUE, CHILD_ENV_VAR, ProcessRole, RunAs
from runas_rpc.utils import ArrowSerializableDataclass, ArrowType

__all__ = [
    # Core
    "RunAs",
    "ProcessRole",
    "ClientHandle",
    "OperationRegistry",
    "OperationInfo",
    "RpcServer",
    "CallContext",
    "ClientLog",
    # Privileges
    "Credential",
    "DropResult",
    "drop_privileges",
    "resolve_user",
    # Transports
    "RpcTransport",
    "DuplexPipe",
    "ChildProcess",
    "StderrMode",
    "combine",
    "make_pipe_pair",
    "serve_pipe",
    "serve_stdio",
    "call",
    # Errors
    "RpcError",
    "TransportError",
    "UnknownOperationError",
    "PrivilegesNotDroppedError",
    "PrivilegeDropFailed",
    "VersionError",
    "RunAsSetupError",
    "SpawnError",
    "BootstrapError",
    "RegistrationError",
    "UserNotFoundError",
    # Logging
    "Level",
    "Message",
    # Serialization
    "ArrowSerializableDataclass",
    "ArrowType",
    # Protocol constants
    "CHILD_ENV_VAR",
    "CHILD_ENV_VALUE",
    "DROP_PRIVILEGES_OPERATION",
    "RESERVED_PREFIX",
    "REQUEST_VERSION",
]

# Attach NullHandler to the package logger so library users don't get
# "No handler found" warnings.
logging.getLogger("runas_rpc").addHandler(logging.NullHandler())
