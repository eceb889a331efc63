# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Run operations as another Unix user by re-executing this program.

A :class:`RunAs` context is created once at startup, operations are
registered on it, and :meth:`RunAs.maybe_run_child_server` is called
early in ``main``.  In the normal (parent) run it returns immediately.
When the program was re-executed by :meth:`RunAs.spawn` it instead serves
the registered operations over stdin/stdout and exits, never returning to
the caller's code.

Usage::

    runas = RunAs()

    @runas.operation("WhoAmI")
    def who_am_i() -> WhoAmIResult:
        return WhoAmIResult(uid=os.getuid(), gid=os.getgid())

    def main() -> None:
        runas.maybe_run_child_server()
        with runas.connect(65534, 65534) as handle:
            print(handle.call("WhoAmI"))

"""

from __future__ import annotations

import contextlib
import logging
import os
import sys
from collections.abc import Callable, Iterator, Mapping, Sequence
from enum import Enum
from typing import Any, NoReturn

from runas_rpc.log import Message
from runas_rpc.privileges import Credential, DropResult, drop_privileges, resolve_user
from runas_rpc.rpc import (
    DROP_PRIVILEGES_OPERATION,
    BootstrapError,
    ChildProcess,
    ClientHandle,
    OperationInfo,
    OperationRegistry,
    PrivilegeDropFailed,
    RpcServer,
    SpawnError,
    StderrMode,
    TransportError,
    serve_stdio,
)
from runas_rpc.rpc._registry import _INFER

__all__ = [
    "CHILD_ENV_VALUE",
    "CHILD_ENV_VAR",
    "ProcessRole",
    "RunAs",
]

_logger = logging.getLogger("runas_rpc.runas")

CHILD_ENV_VAR = "RUNAS_RPC_CHILD"
"""Environment variable that marks a re-executed child."""

CHILD_ENV_VALUE = "1"
"""The only value of :data:`CHILD_ENV_VAR` that selects the child role."""


class ProcessRole(Enum):
    """Which side of the privilege boundary this process is on."""

    UNINITIALIZED = "uninitialized"
    PARENT = "parent"
    CHILD = "child"


def _resolve_self_command() -> list[str]:
    """Return an absolute command line that starts this program again.

    Raises:
        SpawnError: If the interpreter or the running program cannot be
            located.

    """
    if not sys.executable:
        raise SpawnError("Cannot locate the Python interpreter: sys.executable is empty")
    executable = os.path.abspath(sys.executable)
    main = sys.modules.get("__main__")
    spec = getattr(main, "__spec__", None)
    if spec is not None and spec.name:
        module = spec.name.removesuffix(".__main__")
        return [executable, "-m", module]
    script = getattr(main, "__file__", None) or (sys.argv[0] if sys.argv else "")
    if not script or script == "-c" or not os.path.isfile(script):
        raise SpawnError(
            f"Cannot locate the running program (got {script!r}); pass command= to RunAs to re-execute explicitly"
        )
    return [executable, os.path.abspath(script)]


class RunAs:
    """Registry, role, and spawner for one privilege-separated program.

    Args:
        command: Command line that re-executes this program.  Defaults to
            the running interpreter and script (or ``-m`` module).
        cwd: Working directory of each child.
        stderr: How to handle each child's stderr (see :class:`StderrMode`).
        stderr_logger: Logger for ``StderrMode.PIPE`` output.
        close_timeout: Seconds a closing handle waits for its child before
            killing it.
        on_log: Callback for client-directed log messages emitted by
            handlers; defaults to the ``runas_rpc.child`` logger.

    """

    def __init__(
        self,
        *,
        command: Sequence[str] | None = None,
        cwd: str = "/",
        stderr: StderrMode = StderrMode.INHERIT,
        stderr_logger: logging.Logger | None = None,
        close_timeout: float = 10.0,
        on_log: Callable[[Message], None] | None = None,
    ) -> None:
        """Create the context and register the built-in privilege-drop operation."""
        self._command = list(command) if command is not None else None
        self._cwd = cwd
        self._stderr = stderr
        self._stderr_logger = stderr_logger
        self._close_timeout = close_timeout
        self._on_log = on_log
        self._role = ProcessRole.UNINITIALIZED
        self._registry = OperationRegistry()
        self._registry.register(
            DROP_PRIVILEGES_OPERATION,
            drop_privileges,
            request_type=Credential,
            response_type=DropResult,
            _builtin=True,
        )

    @property
    def command(self) -> list[str] | None:
        """Command line used to re-execute this program, or ``None`` for the default."""
        return self._command

    @command.setter
    def command(self, command: Sequence[str] | None) -> None:
        self._command = list(command) if command is not None else None

    @property
    def registry(self) -> OperationRegistry:
        """The operations this program can serve as a child."""
        return self._registry

    @property
    def role(self) -> ProcessRole:
        """The role decided by :meth:`maybe_run_child_server`."""
        return self._role

    def register(
        self,
        name: str,
        handler: Callable[..., Any],
        *,
        request_type: Any = _INFER,
        response_type: Any = _INFER,
    ) -> OperationInfo:
        """Register *handler* under *name*; see :meth:`OperationRegistry.register`.

        Raises:
            RegistrationError: If called after :meth:`maybe_run_child_server`,
                or the name is taken or reserved.

        """
        return self._registry.register(name, handler, request_type=request_type, response_type=response_type)

    def operation(self, name: str | None = None) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
        """Decorator registering a handler; the name defaults to the function name."""
        return self._registry.operation(name)

    def maybe_run_child_server(self, environ: Mapping[str, str] | None = None) -> None:
        """Decide this process's role; in the child, serve and exit.

        Reads :data:`CHILD_ENV_VAR` from *environ* (default ``os.environ``).
        Without the marker the registry is frozen and the call returns:
        this is the parent.  With it, the registry is frozen, operations
        are served over stdin/stdout until the parent closes the channel,
        and the process exits with status 0.  Calling it again in the
        parent does nothing.
        """
        if self._role is not ProcessRole.UNINITIALIZED:
            return
        env = os.environ if environ is None else environ
        self._registry.freeze()
        if env.get(CHILD_ENV_VAR) != CHILD_ENV_VALUE:
            self._role = ProcessRole.PARENT
            _logger.debug("Running as parent (operations=%s)", self._registry.names())
            return
        self._role = ProcessRole.CHILD
        self._serve_child()

    def _serve_child(self) -> NoReturn:
        _logger.debug("Running as child pid=%d", os.getpid(), extra={"child_pid": os.getpid()})
        serve_stdio(RpcServer(self._registry, require_drop=True))
        sys.exit(0)

    def spawn(self, uid: int | Credential, gid: int | None = None) -> ClientHandle:
        """Start a child, drop it to *uid*/*gid*, and return a handle to it.

        Accepts either a :class:`Credential` or a numeric uid and gid.  The
        returned handle has already dropped privileges.

        Raises:
            BootstrapError: If :meth:`maybe_run_child_server` has not run.
            SpawnError: If the program cannot be located or started, or the
                child exits before answering the drop request.
            PrivilegeDropFailed: If the child could not change its group or
                user; the child is closed and no handle is returned.

        """
        if self._role is ProcessRole.UNINITIALIZED:
            raise BootstrapError(
                "spawn() called before maybe_run_child_server(); the re-executed child would not serve"
            )
        if isinstance(uid, Credential):
            credential = uid
        elif gid is None:
            raise TypeError("spawn() requires a gid when uid is given as an int")
        else:
            credential = Credential(uid=uid, gid=gid)

        command = self._command if self._command is not None else _resolve_self_command()
        child = ChildProcess(
            command,
            env={CHILD_ENV_VAR: CHILD_ENV_VALUE},
            cwd=self._cwd,
            stderr=self._stderr,
            stderr_logger=self._stderr_logger,
        )
        handle = ClientHandle(
            child,
            credential,
            self._registry,
            on_log=self._on_log,
            close_timeout=self._close_timeout,
        )
        try:
            result: DropResult = handle.call(DROP_PRIVILEGES_OPERATION, credential, response_type=DropResult)
        except TransportError as exc:
            exit_code = handle.close()
            raise SpawnError(
                f"Child pid={child.pid} ({command!r}) ended before completing the privilege drop "
                f"(exit code {exit_code}): {exc.error_message}"
            ) from exc
        except BaseException:
            handle.close()
            raise
        if not result.ok:
            handle.close()
            _logger.warning(
                "Privilege drop to uid=%d gid=%d failed: %s",
                credential.uid,
                credential.gid,
                result.describe(),
                extra={"uid": credential.uid, "gid": credential.gid, "child_pid": child.pid},
            )
            raise PrivilegeDropFailed(credential, result)
        _logger.debug(
            "Spawned child pid=%d as uid=%d gid=%d",
            child.pid,
            credential.uid,
            credential.gid,
            extra={"uid": credential.uid, "gid": credential.gid, "child_pid": child.pid},
        )
        return handle

    def user(self, name: str) -> ClientHandle:
        """Spawn a child running as the user called *name*.

        Raises:
            UserNotFoundError: If *name* is not in the password database.

        """
        return self.spawn(resolve_user(name))

    @contextlib.contextmanager
    def connect(self, uid: int | Credential, gid: int | None = None) -> Iterator[ClientHandle]:
        """Spawn a child and close it on exit from the ``with`` block."""
        handle = self.spawn(uid, gid)
        try:
            yield handle
        finally:
            handle.close()
