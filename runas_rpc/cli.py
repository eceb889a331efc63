"""Command-line interface demonstrating runas-rpc.

Provides a ``whoami`` command that spawns one privilege-dropped child per
target user and reports the identity each child actually runs with.

Usage::

    sudo runas-rpc whoami nobody daemon
    sudo runas-rpc --log-format json whoami 65534:65534 --format table

The CLI re-executes itself for every child, so it must be started as the
installed ``runas-rpc`` script or as ``python -m runas_rpc.cli``.
"""

from __future__ import annotations

import json
import logging
import os
import re
from dataclasses import dataclass
from enum import StrEnum
from typing import Annotated

import typer

from runas_rpc.logging_utils import configure_logging
from runas_rpc.privileges import Credential
from runas_rpc.rpc import PrivilegeDropFailed, RpcError, RunAsSetupError, UserNotFoundError
from runas_rpc.runas import RunAs
from runas_rpc.utils import ArrowSerializableDataclass

# ---------------------------------------------------------------------------
# Operations served by the re-executed child
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class WhoAmIResult(ArrowSerializableDataclass):
    """The real uid and gid of the serving child."""

    uid: int
    gid: int


def who_am_i() -> WhoAmIResult:
    """Report the identity this process runs with."""
    return WhoAmIResult(uid=os.getuid(), gid=os.getgid())


runas = RunAs()
runas.register("WhoAmI", who_am_i)


# ---------------------------------------------------------------------------
# Option enums
# ---------------------------------------------------------------------------


class OutputFormat(StrEnum):
    """Output format for results."""

    json = "json"
    table = "table"


class LogFormat(StrEnum):
    """Format of diagnostic log records on stderr."""

    text = "text"
    json = "json"


app = typer.Typer(
    name="runas-rpc",
    help="Run operations as other Unix users via a re-executed child process.",
    add_completion=False,
    no_args_is_help=True,
)


# ---------------------------------------------------------------------------
# Global callback
# ---------------------------------------------------------------------------


@app.callback()
def _main(
    log_format: Annotated[LogFormat, typer.Option("--log-format", help="Format of log records on stderr")] = (
        LogFormat.text
    ),
    verbose: Annotated[bool, typer.Option("--verbose", "-v", help="Log debug detail, including child messages")] = False,
) -> None:
    """Configure logging."""
    configure_logging(logging.DEBUG if verbose else logging.WARNING, json_format=log_format == LogFormat.json)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

_NUMERIC_IDENTITY = re.compile(r"^(\d+):(\d+)$")


def _parse_target(target: str) -> Credential | str:
    """Return a :class:`Credential` for ``uid:gid`` targets, else the username unchanged."""
    m = _NUMERIC_IDENTITY.match(target)
    if m:
        return Credential(uid=int(m.group(1)), gid=int(m.group(2)))
    return target


def _format_table(rows: list[dict[str, object]]) -> str:
    """Format rows as a simple column-aligned text table."""
    if not rows:
        return "(empty)"
    columns = list(rows[0].keys())
    widths = {col: len(col) for col in columns}
    str_rows: list[dict[str, str]] = []
    for row in rows:
        sr = {col: str(row.get(col, "")) for col in columns}
        for col in columns:
            widths[col] = max(widths[col], len(sr[col]))
        str_rows.append(sr)

    lines = ["  ".join(col.ljust(widths[col]) for col in columns)]
    lines.append("  ".join("-" * widths[col] for col in columns))
    lines.extend("  ".join(sr[col].ljust(widths[col]) for col in columns) for sr in str_rows)
    return "\n".join(lines)


def _emit_error(target: str, exc: Exception) -> None:
    """Write a per-target failure to stderr as JSON."""
    err: dict[str, object] = {"user": target, "type": type(exc).__name__, "message": str(exc)}
    if isinstance(exc, RpcError):
        err["type"] = exc.error_type
        err["message"] = exc.error_message
    elif isinstance(exc, PrivilegeDropFailed):
        err["setgid_errno"] = exc.result.setgid_errno
        err["setuid_errno"] = exc.result.setuid_errno
    typer.echo(json.dumps({"error": err}, default=str), err=True)


def _who_is(target: str) -> WhoAmIResult:
    parsed = _parse_target(target)
    handle = runas.spawn(parsed) if isinstance(parsed, Credential) else runas.user(parsed)
    with handle:
        result: WhoAmIResult = handle.call("WhoAmI")
    return result


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


@app.command()
def whoami(
    users: Annotated[list[str], typer.Argument(help="Usernames or uid:gid pairs to run as")],
    fmt: Annotated[OutputFormat, typer.Option("--format", "-f", help="Output format")] = OutputFormat.json,
) -> None:
    """Spawn a child per user and print the identity it reports."""
    runas.maybe_run_child_server()
    rows: list[dict[str, object]] = []
    failed = False
    for target in users:
        try:
            res = _who_is(target)
        except (UserNotFoundError, PrivilegeDropFailed, RpcError, RunAsSetupError) as e:
            _emit_error(target, e)
            failed = True
            continue
        row: dict[str, object] = {"user": target, "uid": res.uid, "gid": res.gid}
        if fmt == OutputFormat.json:
            typer.echo(json.dumps(row))
        rows.append(row)

    if fmt == OutputFormat.table and rows:
        typer.echo(_format_table(rows))
    if failed:
        raise typer.Exit(1)


def main() -> None:
    """Entry point: serve as a child when re-executed, otherwise run the CLI."""
    runas.maybe_run_child_server()
    app()


if __name__ == "__main__":
    main()
