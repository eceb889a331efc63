"""Duplex pipe channel, child-process launcher, and stdio server entry."""

from __future__ import annotations

import contextlib
import logging
import os
import subprocess
import sys
import threading
from collections.abc import Mapping, Sequence
from enum import Enum
from io import IOBase
from typing import TYPE_CHECKING, BinaryIO, Protocol, cast, runtime_checkable

from runas_rpc.rpc._common import SpawnError, _logger
from runas_rpc.rpc._debug import wire_transport_logger

if TYPE_CHECKING:
    from runas_rpc.rpc._server import RpcServer


# ---------------------------------------------------------------------------
# RpcTransport protocol
# ---------------------------------------------------------------------------


@runtime_checkable
class RpcTransport(Protocol):
    """Bidirectional byte stream transport."""

    @property
    def reader(self) -> IOBase:
        """Readable binary stream."""
        ...

    @property
    def writer(self) -> IOBase:
        """Writable binary stream."""
        ...

    def close(self) -> None:
        """Close the transport."""
        ...


# ---------------------------------------------------------------------------
# DuplexPipe + make_pipe_pair
# ---------------------------------------------------------------------------


class DuplexPipe:
    """One logical bidirectional channel spliced from a read stream and a write stream.

    ``read`` goes to the reader and ``write`` to the writer; nothing is
    buffered here.  ``close`` closes both sides best-effort: a failure on
    one side never stops the other from being closed, and ``close`` itself
    never raises.
    """

    __slots__ = ("_closed", "_reader", "_writer")

    def __init__(self, reader: IOBase, writer: IOBase) -> None:
        """Initialize with reader and writer streams."""
        self._reader = reader
        self._writer = writer
        self._closed = False

    @property
    def reader(self) -> IOBase:
        """Readable binary stream."""
        return self._reader

    @property
    def writer(self) -> IOBase:
        """Writable binary stream."""
        return self._writer

    @property
    def closed(self) -> bool:
        """Whether ``close()`` has been called."""
        return self._closed

    def read(self, size: int = -1) -> bytes:
        """Read from the underlying reader."""
        return cast(bytes, self._reader.read(size))

    def write(self, data: bytes) -> int:
        """Write to the underlying writer."""
        return cast(int, self._writer.write(data))

    def flush(self) -> None:
        """Flush the underlying writer."""
        self._writer.flush()

    def close(self) -> None:
        """Close both streams, ignoring errors from either."""
        self._closed = True
        for stream in (self._writer, self._reader):
            close = getattr(stream, "close", None)
            if close is None:
                continue
            try:
                close()
            except Exception:
                _logger.debug("Ignoring error while closing %r", stream, exc_info=True)


def combine(reader: IOBase, writer: IOBase) -> DuplexPipe:
    """Splice *reader* and *writer* into one :class:`DuplexPipe`."""
    return DuplexPipe(reader, writer)


def make_pipe_pair() -> tuple[DuplexPipe, DuplexPipe]:
    """Create connected client/server channels using ``os.pipe()``.

    Returns (client_pipe, server_pipe).
    """
    c2s_r, c2s_w = os.pipe()
    s2c_r, s2c_w = os.pipe()
    if wire_transport_logger.isEnabledFor(logging.DEBUG):
        wire_transport_logger.debug("make_pipe_pair: c2s=(%d,%d), s2c=(%d,%d)", c2s_r, c2s_w, s2c_r, s2c_w)
    client = DuplexPipe(os.fdopen(s2c_r, "rb"), os.fdopen(c2s_w, "wb", buffering=0))
    server = DuplexPipe(os.fdopen(c2s_r, "rb"), os.fdopen(s2c_w, "wb", buffering=0))
    return client, server


# ---------------------------------------------------------------------------
# Child process
# ---------------------------------------------------------------------------


class StderrMode(Enum):
    """How to handle child process stderr.

    Members:
        INHERIT: Child stderr goes to parent's stderr (default).
        PIPE: Parent drains child stderr via a daemon thread and
            forwards each line to a ``logging.Logger``.
        DEVNULL: Child stderr discarded at OS level.
    """

    INHERIT = "inherit"
    PIPE = "pipe"
    DEVNULL = "devnull"


def _drain_stderr(pipe: BinaryIO, logger: logging.Logger) -> None:
    """Drain child stderr line-by-line. Runs in parent as daemon thread."""
    try:
        for raw_line in pipe:
            line = raw_line.decode("utf-8", errors="replace").rstrip()
            if line:
                logger.info(line)
    except (OSError, ValueError):
        pass
    with contextlib.suppress(OSError, ValueError):
        pipe.close()


class ChildProcess:
    """A child process whose stdin/stdout form a :class:`DuplexPipe`.

    The writer (child's stdin) is unbuffered so each envelope is flushed
    immediately.  The reader (child's stdout) is wrapped in a
    ``BufferedReader`` because Arrow IPC expects ``read(n)`` to return
    exactly *n* bytes, which raw pipe reads do not guarantee.
    """

    __slots__ = ("_closed", "_pipe", "_proc", "_stderr_thread")

    def __init__(
        self,
        cmd: Sequence[str],
        *,
        env: Mapping[str, str],
        cwd: str,
        stderr: StderrMode = StderrMode.INHERIT,
        stderr_logger: logging.Logger | None = None,
    ) -> None:
        """Start *cmd* with exactly *env* in *cwd*.

        Raises:
            SpawnError: If the pipes cannot be created or the process
                cannot be started.

        """
        if wire_transport_logger.isEnabledFor(logging.DEBUG):
            wire_transport_logger.debug("ChildProcess start: cmd=%s, cwd=%s, stderr=%s", cmd, cwd, stderr.value)

        stderr_arg: int | None
        if stderr == StderrMode.DEVNULL:
            stderr_arg = subprocess.DEVNULL
        elif stderr == StderrMode.PIPE:
            stderr_arg = subprocess.PIPE
        else:
            stderr_arg = None

        try:
            self._proc = subprocess.Popen(
                list(cmd),
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=stderr_arg,
                env=dict(env),
                cwd=cwd,
                bufsize=0,
                close_fds=True,
            )
        except OSError as exc:
            raise SpawnError(f"Failed to start child process {list(cmd)!r}: {exc}") from exc
        assert self._proc.stdout is not None
        assert self._proc.stdin is not None
        reader: IOBase = cast(IOBase, os.fdopen(self._proc.stdout.fileno(), "rb", closefd=False))
        self._pipe = DuplexPipe(reader, cast(IOBase, self._proc.stdin))
        self._closed = False
        self._stderr_thread: threading.Thread | None = None
        _logger.debug("Started child pid=%d", self._proc.pid, extra={"child_pid": self._proc.pid})

        if stderr == StderrMode.PIPE:
            assert self._proc.stderr is not None
            if stderr_logger is None:
                stderr_logger = logging.getLogger("runas_rpc.subprocess.stderr")
            self._stderr_thread = threading.Thread(
                target=_drain_stderr,
                args=(self._proc.stderr, stderr_logger),
                daemon=True,
            )
            self._stderr_thread.start()

    @property
    def proc(self) -> subprocess.Popen[bytes]:
        """The underlying Popen process."""
        return self._proc

    @property
    def pid(self) -> int:
        """Process id of the child."""
        return self._proc.pid

    @property
    def pipe(self) -> DuplexPipe:
        """The duplex channel to the child."""
        return self._pipe

    @property
    def reader(self) -> IOBase:
        """Readable binary stream (child's stdout, buffered)."""
        return self._pipe.reader

    @property
    def writer(self) -> IOBase:
        """Writable binary stream (child's stdin, unbuffered)."""
        return self._pipe.writer

    def close(self, timeout: float = 10.0) -> int | None:
        """Close the channel (the child sees EOF), wait for exit, and return the exit code.

        A child that has not exited within *timeout* seconds is killed.
        """
        if self._closed:
            return self._proc.returncode
        self._closed = True
        self._pipe.close()
        try:
            self._proc.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            _logger.warning("Child pid=%d did not exit after EOF; killing", self._proc.pid)
            self._proc.kill()
            self._proc.wait()
        with contextlib.suppress(OSError):
            if self._proc.stdout is not None:
                self._proc.stdout.close()
        if self._stderr_thread is not None:
            self._stderr_thread.join(timeout=5)
        if wire_transport_logger.isEnabledFor(logging.DEBUG):
            wire_transport_logger.debug(
                "ChildProcess closed: pid=%d, exit_code=%s", self._proc.pid, self._proc.returncode
            )
        return self._proc.returncode


# ---------------------------------------------------------------------------
# Child side: serve over the inherited stdin/stdout
# ---------------------------------------------------------------------------


def _claim_stdio() -> DuplexPipe:
    """Take stdin/stdout for the wire and point fd 1 at stderr.

    The wire moves to a private duplicate of fd 1 so that ``print()`` or a
    stray library write from a handler lands on stderr instead of
    corrupting the protocol stream.
    """
    wire_out_fd = os.dup(sys.stdout.fileno())
    sys.stdout.flush()
    os.dup2(sys.stderr.fileno(), sys.stdout.fileno())
    sys.stdout = sys.stderr
    reader = os.fdopen(sys.stdin.fileno(), "rb", closefd=False)
    writer = os.fdopen(wire_out_fd, "wb", buffering=0)
    return DuplexPipe(cast(IOBase, reader), cast(IOBase, writer))


def serve_stdio(server: RpcServer) -> None:
    """Serve *server* over this process's stdin/stdout until EOF.

    Emits a warning to stderr when attached to a terminal, since the
    process expects binary Arrow IPC data from its parent.
    """
    if sys.stdin.isatty() or sys.stdout.isatty():
        sys.stderr.write(
            "WARNING: This process was started as a runas-rpc child and speaks Arrow IPC "
            "on stdin/stdout; it is not intended to be run interactively.\n"
        )
    pipe = _claim_stdio()
    if wire_transport_logger.isEnabledFor(logging.DEBUG):
        wire_transport_logger.debug("serve_stdio: pid=%d", os.getpid())
    try:
        server.serve(pipe)
    finally:
        pipe.close()
