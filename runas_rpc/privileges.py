# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Credentials and the privilege-drop service run inside a child.

The drop is the first call every freshly spawned child receives.  It
changes the group identity first and the user identity second: once the
uid is gone the process usually no longer holds the right to change its
group.  Both attempts are always made and each records its own outcome,
so a caller can tell "gid changed, uid did not" apart from a full failure.

Usage::

    result = drop_privileges(Credential(uid=65534, gid=65534))
    if not result.ok:
        raise PrivilegeDropFailed(cred, result)

"""

from __future__ import annotations

import errno
import logging
import os
import pwd
from dataclasses import dataclass
from typing import Any

from runas_rpc.rpc._common import UserNotFoundError
from runas_rpc.utils import ArrowSerializableDataclass

__all__ = [
    "Credential",
    "DropResult",
    "drop_privileges",
    "resolve_user",
]

_logger = logging.getLogger("runas_rpc.privileges")


@dataclass(frozen=True)
class Credential(ArrowSerializableDataclass):
    """A numeric Unix identity; uid and gid always travel together.

    Also the request payload of the built-in drop operation.
    """

    uid: int
    gid: int

    def __post_init__(self) -> None:
        """Reject negative ids, which no OS call would accept."""
        if self.uid < 0 or self.gid < 0:
            raise ValueError(f"uid and gid must be non-negative, got uid={self.uid} gid={self.gid}")


@dataclass(frozen=True)
class DropResult(ArrowSerializableDataclass):
    """Per-step outcome of a privilege drop.

    Attributes:
        uid_dropped: ``setuid`` succeeded.
        gid_dropped: The group change (supplementary groups and ``setgid``)
            succeeded.
        setuid_errno: OS error number from the user change, if it failed.
        setgid_errno: OS error number from the group change, if it failed.

    """

    uid_dropped: bool
    gid_dropped: bool
    setuid_errno: int | None = None
    setgid_errno: int | None = None

    @property
    def ok(self) -> bool:
        """Whether both the group and the user change succeeded."""
        return self.uid_dropped and self.gid_dropped

    def describe(self) -> str:
        """Return a short human-readable summary, naming failed steps by errno."""
        parts = []
        for step, dropped, code in (
            ("setgid", self.gid_dropped, self.setgid_errno),
            ("setuid", self.uid_dropped, self.setuid_errno),
        ):
            if dropped:
                parts.append(f"{step} ok")
            else:
                name = errno.errorcode.get(code, str(code)) if code is not None else "unknown error"
                parts.append(f"{step} failed ({name})")
        return ", ".join(parts)


def _errno_of(exc: OSError) -> int:
    return exc.errno if exc.errno is not None else errno.EPERM


def drop_privileges(request: Credential, *, os_ops: Any = os) -> DropResult:
    """Switch this process to ``request.gid`` and then ``request.uid``.

    When running with an effective uid of 0 the supplementary group list
    is first reduced to ``[gid]`` so root's groups are not carried over.
    *os_ops* supplies ``setgroups``/``setgid``/``setuid``/``geteuid`` and
    exists so the call sequence can be observed in tests.

    Never raises for OS refusals; they are reported in the result.
    """
    gid_errno: int | None = None
    uid_errno: int | None = None

    try:
        if os_ops.geteuid() == 0:
            os_ops.setgroups([request.gid])
        os_ops.setgid(request.gid)
    except OSError as exc:
        gid_errno = _errno_of(exc)
        _logger.warning("setgid(%d) failed: %s", request.gid, exc, extra={"gid": request.gid, "errno": gid_errno})

    try:
        os_ops.setuid(request.uid)
    except OSError as exc:
        uid_errno = _errno_of(exc)
        _logger.warning("setuid(%d) failed: %s", request.uid, exc, extra={"uid": request.uid, "errno": uid_errno})

    result = DropResult(
        uid_dropped=uid_errno is None,
        gid_dropped=gid_errno is None,
        setuid_errno=uid_errno,
        setgid_errno=gid_errno,
    )
    _logger.debug("Privilege drop to uid=%d gid=%d: %s", request.uid, request.gid, result.describe())
    return result


def resolve_user(name: str) -> Credential:
    """Look up *name* in the password database.

    Raises:
        UserNotFoundError: If no such user exists.

    """
    try:
        record = pwd.getpwnam(name)
    except KeyError:
        raise UserNotFoundError(f"Unknown user: {name!r}") from None
    return Credential(uid=record.pw_uid, gid=record.pw_gid)
