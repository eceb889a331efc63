"""End-to-end tests: role bootstrap, self re-exec, privilege drop, and calls."""

from __future__ import annotations

import errno
import logging
import os
import signal
import sys

import pytest

from runas_rpc import (
    CHILD_ENV_VAR,
    BootstrapError,
    ChildProcess,
    ClientHandle,
    Credential,
    Message,
    PrivilegeDropFailed,
    PrivilegesNotDroppedError,
    ProcessRole,
    RpcError,
    RunAs,
    SpawnError,
    StderrMode,
    TransportError,
    UnknownOperationError,
    UserNotFoundError,
)
from runas_rpc.runas import _resolve_self_command
from tests.serve_fixture_runas import EchoPayload, FailRequest, Identity, build_runas, fixture_cmd, own_credential

requires_root = pytest.mark.skipif(os.geteuid() != 0, reason="requires an effective uid of 0")
requires_non_root = pytest.mark.skipif(os.geteuid() == 0, reason="requires a non-root effective uid")


# ---------------------------------------------------------------------------
# Role bootstrap
# ---------------------------------------------------------------------------


class TestRoleBootstrap:
    """maybe_run_child_server() decides the role once."""

    def test_starts_uninitialized(self) -> None:
        """A new context has no role yet."""
        assert RunAs().role is ProcessRole.UNINITIALIZED

    @pytest.mark.parametrize("environ", [{}, {CHILD_ENV_VAR: "0"}, {CHILD_ENV_VAR: "yes"}, {"OTHER": "1"}])
    def test_parent_without_marker(self, environ: dict[str, str]) -> None:
        """Without exactly the marker value the process is the parent."""
        runas = RunAs()
        runas.maybe_run_child_server(environ=environ)
        assert runas.role is ProcessRole.PARENT
        assert runas.registry.frozen

    def test_second_call_is_noop(self) -> None:
        """Calling again in the parent does nothing, even with the marker now present."""
        runas = RunAs()
        runas.maybe_run_child_server(environ={})
        runas.maybe_run_child_server(environ={CHILD_ENV_VAR: "1"})
        assert runas.role is ProcessRole.PARENT

    def test_spawn_before_bootstrap_rejected(self) -> None:
        """spawn() before the role decision raises BootstrapError every time."""
        runas = build_runas(command=fixture_cmd())
        for _ in range(3):
            with pytest.raises(BootstrapError):
                runas.spawn(own_credential())

    def test_spawn_requires_gid_with_int_uid(self, runas: RunAs) -> None:
        """uid and gid are always given together."""
        with pytest.raises(TypeError, match="gid"):
            runas.spawn(os.getuid())


class TestResolveSelfCommand:
    """Locating the running program for re-exec."""

    def test_uses_absolute_interpreter(self) -> None:
        """The interpreter path is absolute."""
        cmd = _resolve_self_command()
        assert os.path.isabs(cmd[0])
        assert cmd[0] == os.path.abspath(sys.executable)

    def test_module_main(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """A program started with -m re-executes with -m."""

        class _Spec:
            name = "somepkg.__main__"

        class _Main:
            __spec__ = _Spec()

        monkeypatch.setitem(sys.modules, "__main__", _Main())
        assert _resolve_self_command()[1:] == ["-m", "somepkg"]

    def test_script_main(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """A program started as a script re-executes the absolute script path."""

        class _Main:
            __spec__ = None
            __file__ = fixture_cmd()[1]

        monkeypatch.setitem(sys.modules, "__main__", _Main())
        assert _resolve_self_command()[1:] == [fixture_cmd()[1]]

    def test_unlocatable_program(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """An interactive or -c program cannot be re-executed."""

        class _Main:
            __spec__ = None

        monkeypatch.setitem(sys.modules, "__main__", _Main())
        monkeypatch.setattr(sys, "argv", ["-c"])
        with pytest.raises(SpawnError):
            _resolve_self_command()

    def test_command_override(self) -> None:
        """The command property replaces the default re-exec command line."""
        ctx = RunAs()
        assert ctx.command is None
        ctx.command = fixture_cmd()
        assert ctx.command == fixture_cmd()
        ctx.command = None
        assert ctx.command is None


# ---------------------------------------------------------------------------
# Spawning and calling
# ---------------------------------------------------------------------------


class TestSpawn:
    """A spawned child has dropped privileges and serves the registry."""

    def test_child_identity_and_environment(self, handle: ClientHandle) -> None:
        """The child runs as the requested identity, in /, with only the marker set."""
        ident = handle.call("WhoAmI")
        assert isinstance(ident, Identity)
        assert (ident.uid, ident.gid) == (os.getuid(), os.getgid())
        assert (ident.euid, ident.egid) == (os.getuid(), os.getgid())
        assert ident.cwd == "/"
        assert CHILD_ENV_VAR in ident.env_keys
        assert set(ident.env_keys) <= {CHILD_ENV_VAR, "LC_CTYPE"}

    @pytest.mark.parametrize(
        "payload",
        [
            EchoPayload(),
            EchoPayload(n=42),
            EchoPayload(text='{"json": "in", "a": [1]}\n\\ \x00 ☃', tags=["a,b", "c\"d", ""]),
        ],
        ids=["empty", "n42", "escaping"],
    )
    def test_echo_round_trip(self, handle: ClientHandle, payload: EchoPayload) -> None:
        """Echo returns exactly what was sent."""
        assert handle.call("Echo", payload) == payload

    def test_handler_error_keeps_handle_usable(self, handle: ClientHandle) -> None:
        """A failing handler surfaces as RpcError and the handle stays usable."""
        with pytest.raises(RpcError) as exc_info:
            handle.call("Fail", FailRequest(message="expected failure"))
        assert exc_info.value.error_type == "ValueError"
        assert "expected failure" in exc_info.value.error_message
        assert handle.call("Echo", EchoPayload(n=1)) == EchoPayload(n=1)

    def test_unknown_operation_keeps_handle_usable(self, handle: ClientHandle) -> None:
        """Unknown names are a dispatch error, distinct from transport errors."""
        with pytest.raises(UnknownOperationError) as exc_info:
            handle.call("NoSuchOperation")
        assert not isinstance(exc_info.value, TransportError)
        assert handle.call("Echo", EchoPayload(n=2)) == EchoPayload(n=2)

    def test_client_logs_forwarded(self, runas: RunAs) -> None:
        """Handler log messages reach the parent's on_log callback."""
        seen: list[Message] = []
        ctx = RunAs(command=fixture_cmd(), on_log=seen.append)
        for info in runas.registry:
            if info.name != "_runas.DropPrivileges":
                ctx.register(info.name, info.handler, request_type=info.request_type, response_type=info.response_type)
        ctx.maybe_run_child_server(environ={})
        with ctx.connect(own_credential()) as h:
            assert h.call("Log", EchoPayload(text="hi")) == EchoPayload(text="hi")
        assert [m.message for m in seen] == ["handling log call", "second message"]
        assert seen[0].extra is not None
        assert seen[0].extra["text"] == "hi"
        assert seen[0].extra["child_pid"] == str(h.pid)

    def test_default_log_sink_is_child_logger(self, handle: ClientHandle, caplog: pytest.LogCaptureFixture) -> None:
        """Without on_log, handler messages go to the runas_rpc.child logger."""
        with caplog.at_level(logging.INFO, logger="runas_rpc.child"):
            handle.call("Log", EchoPayload(text="x"))
        assert any(r.name == "runas_rpc.child" and r.getMessage() == "handling log call" for r in caplog.records)

    def test_stdout_writes_do_not_corrupt_channel(self) -> None:
        """print() in a handler lands on stderr and the next call still works."""
        ctx = build_runas(command=fixture_cmd(), stderr=StderrMode.DEVNULL)
        ctx.maybe_run_child_server(environ={})
        with ctx.connect(own_credential()) as h:
            assert h.call("Print", EchoPayload(n=7)) == EchoPayload(n=7)
            assert h.call("Echo", EchoPayload(n=8)) == EchoPayload(n=8)

    def test_independent_handles(self, runas: RunAs) -> None:
        """Two handles talk to two different children."""
        with runas.connect(own_credential()) as a, runas.connect(own_credential()) as b:
            assert a.pid != b.pid
            assert a.call("Echo", EchoPayload(text="a")).text == "a"
            assert b.call("Echo", EchoPayload(text="b")).text == "b"

    def test_repr(self, handle: ClientHandle) -> None:
        """The repr names the pid and identity."""
        assert f"pid={handle.pid}" in repr(handle)
        assert "open" in repr(handle)

    def test_user_wrapper_unknown_name(self, runas: RunAs) -> None:
        """user() with an unknown name raises UserNotFoundError without spawning."""
        with pytest.raises(UserNotFoundError):
            runas.user("no-such-user-for-runas-tests")

    def test_spawn_with_broken_command_is_spawn_error(self) -> None:
        """A child that exits before answering the drop call is a setup failure."""
        ctx = RunAs(command=[sys.executable, "-c", "import sys; sys.exit(5)"], stderr=StderrMode.DEVNULL)
        ctx.maybe_run_child_server(environ={})
        with pytest.raises(SpawnError, match="exit code 5"):
            ctx.spawn(own_credential())

    def test_spawn_with_missing_program_is_spawn_error(self) -> None:
        """A program that does not exist is a setup failure."""
        ctx = RunAs(command=["/nonexistent/runas-rpc-test-program"])
        ctx.maybe_run_child_server(environ={})
        with pytest.raises(SpawnError):
            ctx.spawn(own_credential())


class TestTransportFailures:
    """Broken channels surface as TransportError, never as a hang."""

    def test_call_after_close(self, runas: RunAs) -> None:
        """A closed handle fails fast with TransportError."""
        h = runas.spawn(own_credential())
        assert h.close() == 0
        assert h.closed
        with pytest.raises(TransportError, match="closed"):
            h.call("Echo", EchoPayload())

    def test_child_killed_mid_session(self, runas: RunAs) -> None:
        """A dead child makes the call fail with TransportError and the handle stays dead."""
        h = runas.spawn(own_credential())
        try:
            os.kill(h.pid, signal.SIGKILL)
            with pytest.raises(TransportError):
                h.call("Echo", EchoPayload(n=1))
            with pytest.raises(TransportError, match="no longer usable"):
                h.call("Echo", EchoPayload(n=1))
        finally:
            assert h.close() == -signal.SIGKILL

    def test_exit_code_zero_after_eof(self, handle: ClientHandle) -> None:
        """The child exits 0 once its input ends."""
        handle.call("Echo", EchoPayload())
        assert handle.close() == 0


# ---------------------------------------------------------------------------
# Privilege scenarios
# ---------------------------------------------------------------------------


class TestPrivilegeScenarios:
    """Real identity changes; each needs a particular starting uid."""

    @requires_root
    def test_root_drops_to_nobody(self, runas: RunAs) -> None:
        """From root, spawning as 65534:65534 yields a child reporting exactly that."""
        with runas.connect(65534, 65534) as h:
            ident = h.call("WhoAmI")
            assert (ident.uid, ident.gid) == (65534, 65534)
            assert (ident.euid, ident.egid) == (65534, 65534)
            assert ident.groups == [65534]
            assert h.credential == Credential(uid=65534, gid=65534)

    @requires_non_root
    def test_non_root_cannot_become_root(self, runas: RunAs) -> None:
        """From a non-root uid, spawning as 0:0 fails with EPERM and returns no handle."""
        with pytest.raises(PrivilegeDropFailed) as exc_info:
            runas.spawn(0, 0)
        result = exc_info.value.result
        assert not result.uid_dropped
        assert result.setuid_errno == errno.EPERM
        assert not result.ok
        assert exc_info.value.credential == Credential(uid=0, gid=0)

    def test_failed_drop_is_not_transport_or_dispatch_error(self) -> None:
        """PrivilegeDropFailed is distinguishable from RpcError."""
        assert not issubclass(PrivilegeDropFailed, RpcError)

    def test_operations_refused_before_drop(self) -> None:
        """The child refuses caller operations until a drop succeeded."""
        child = ChildProcess(fixture_cmd(), env={CHILD_ENV_VAR: "1"}, cwd="/", stderr=StderrMode.DEVNULL)
        with ClientHandle(child, own_credential(), build_runas().registry) as raw:
            with pytest.raises(PrivilegesNotDroppedError):
                raw.call("Echo", EchoPayload())
            assert raw.call("_runas.DropPrivileges", own_credential()).ok
            assert raw.call("Echo", EchoPayload(n=3)) == EchoPayload(n=3)
