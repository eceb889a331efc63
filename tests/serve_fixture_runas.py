# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Re-executed program for end-to-end RunAs tests.

Tests build the same registrations in-process with :func:`build_runas`
(so responses decode to these types) and point ``command=`` at this file.
Run directly it only serves when started with ``RUNAS_RPC_CHILD=1``.
"""

from __future__ import annotations

import os
import sys
from collections.abc import Sequence
from dataclasses import dataclass, field

from runas_rpc import ArrowSerializableDataclass, CallContext, Credential, Level, RunAs, StderrMode


@dataclass(frozen=True)
class EchoPayload(ArrowSerializableDataclass):
    """Echo request and response."""

    text: str = ""
    n: int = 0
    tags: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class Identity(ArrowSerializableDataclass):
    """Identity the child runs with."""

    uid: int
    gid: int
    euid: int
    egid: int
    groups: list[int] = field(default_factory=list)
    cwd: str = ""
    env_keys: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class FailRequest(ArrowSerializableDataclass):
    """Message for the exception raised by ``Fail``."""

    message: str = "boom"


def echo(request: EchoPayload) -> EchoPayload:
    """Return the request unchanged."""
    return request


def who_am_i() -> Identity:
    """Report the real and effective identity of this process."""
    return Identity(
        uid=os.getuid(),
        gid=os.getgid(),
        euid=os.geteuid(),
        egid=os.getegid(),
        groups=sorted(os.getgroups()),
        cwd=os.getcwd(),
        env_keys=sorted(os.environ),
    )


def fail(request: FailRequest) -> None:
    """Raise ``ValueError``."""
    raise ValueError(request.message)


def log(request: EchoPayload, ctx: CallContext) -> EchoPayload:
    """Send two client-directed log messages, then echo."""
    ctx.client_log(Level.INFO, "handling log call", text=request.text)
    ctx.client_log(Level.WARN, "second message")
    return request


def stray_print(request: EchoPayload) -> EchoPayload:
    """Write to stdout, which must not reach the wire."""
    print("this line goes to stderr, not the channel")
    sys.stdout.flush()
    return request


def fixture_cmd() -> list[str]:
    """Return the command that re-executes this program."""
    return [sys.executable, os.path.abspath(__file__)]


def own_credential() -> Credential:
    """Return the identity of the current process, which it may always drop to."""
    return Credential(uid=os.getuid(), gid=os.getgid())


def build_runas(command: Sequence[str] | None = None, stderr: StderrMode = StderrMode.INHERIT) -> RunAs:
    """Return a RunAs context with the fixture operations registered."""
    runas = RunAs(command=command, stderr=stderr)
    runas.register("Echo", echo)
    runas.register("WhoAmI", who_am_i)
    runas.register("Fail", fail)
    runas.register("Log", log)
    runas.register("Print", stray_print)
    return runas


def main() -> None:
    """Serve the fixture operations when started by ``RunAs.spawn``."""
    build_runas().maybe_run_child_server()
    sys.exit("serve_fixture_runas.py serves only when started by RunAs.spawn")


if __name__ == "__main__":
    main()
