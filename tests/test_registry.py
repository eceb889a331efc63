"""Tests for OperationRegistry registration, lookup, and dispatch."""

from __future__ import annotations

from dataclasses import dataclass

import pytest

from runas_rpc import (
    DROP_PRIVILEGES_OPERATION,
    ArrowSerializableDataclass,
    CallContext,
    Credential,
    DropResult,
    Level,
    Message,
    OperationRegistry,
    RegistrationError,
    RunAs,
    UnknownOperationError,
)


@dataclass(frozen=True)
class Num(ArrowSerializableDataclass):
    n: int


def double(request: Num) -> Num:
    """Double n."""
    return Num(n=request.n * 2)


def no_payload() -> None:
    pass


def with_ctx(request: Num, ctx: CallContext) -> Num:
    ctx.client_log(Level.INFO, "seen", n=str(request.n))
    return request


class TestRegister:
    """Registration rules."""

    def test_infers_types_from_annotations(self) -> None:
        """Request and response types come from the handler signature."""
        reg = OperationRegistry()
        info = reg.register("Double", double)
        assert info.request_type is Num
        assert info.response_type is Num
        assert info.accepts_ctx is False
        assert info.doc == "Double n."
        assert info.request_schema == Num.ARROW_SCHEMA

    def test_no_payload_handler(self) -> None:
        """A handler without parameters or return value has empty payloads."""
        reg = OperationRegistry()
        info = reg.register("Nothing", no_payload)
        assert info.request_type is None
        assert info.response_type is None
        assert len(info.request_schema) == 0
        assert len(info.response_schema) == 0

    def test_ctx_parameter_detected(self) -> None:
        """A ``ctx`` parameter is not mistaken for the request."""
        reg = OperationRegistry()
        info = reg.register("WithCtx", with_ctx)
        assert info.accepts_ctx is True
        assert info.request_type is Num

    def test_explicit_types_for_unannotated_callable(self) -> None:
        """Unannotated callables need explicit types."""
        reg = OperationRegistry()
        with pytest.raises(RegistrationError, match="Cannot determine payload types"):
            reg.register("Lambda", lambda r: r)
        info = reg.register("Lambda", lambda r: r, request_type=Num, response_type=Num)
        assert info.response_type is Num

    def test_duplicate_name_refused(self) -> None:
        """Names are unique."""
        reg = OperationRegistry()
        reg.register("Double", double)
        with pytest.raises(RegistrationError, match="already registered"):
            reg.register("Double", double)

    def test_reserved_namespace_refused(self) -> None:
        """Caller registrations may not use the reserved prefix."""
        reg = OperationRegistry()
        with pytest.raises(RegistrationError, match="reserved"):
            reg.register("_runas.Sneaky", double)

    def test_empty_name_refused(self) -> None:
        """Empty names are refused."""
        with pytest.raises(RegistrationError):
            OperationRegistry().register("", double)

    def test_unsupported_payload_type_refused(self) -> None:
        """Payload types must be ArrowSerializableDataclass subclasses."""
        reg = OperationRegistry()
        with pytest.raises(RegistrationError, match="ArrowSerializableDataclass"):
            reg.register("Bad", lambda r: r, request_type=dict, response_type=None)

    def test_two_request_parameters_refused(self) -> None:
        """A handler takes at most one request argument."""

        def two(a: Num, b: Num) -> Num:
            return a

        with pytest.raises(RegistrationError, match="at most one"):
            OperationRegistry().register("Two", two)

    def test_frozen_registry_refuses(self) -> None:
        """Registering after freeze() raises."""
        reg = OperationRegistry()
        reg.freeze()
        assert reg.frozen
        with pytest.raises(RegistrationError, match="before maybe_run_child_server"):
            reg.register("Double", double)

    def test_decorator_defaults_to_function_name(self) -> None:
        """operation() registers under the function name and returns the function."""
        reg = OperationRegistry()

        @reg.operation()
        def Triple(request: Num) -> Num:  # noqa: N802
            return Num(n=request.n * 3)

        @reg.operation("Quad")
        def quad(request: Num) -> Num:
            return Num(n=request.n * 4)

        assert "Triple" in reg
        assert "Quad" in reg
        assert quad(Num(n=1)) == Num(n=4)


class TestLookupAndDispatch:
    """Lookup and dispatch behavior."""

    def test_dispatch_calls_handler(self) -> None:
        """dispatch() invokes the handler with the request."""
        reg = OperationRegistry()
        reg.register("Double", double)
        assert reg.dispatch("Double", Num(n=21)) == Num(n=42)

    def test_dispatch_without_payload(self) -> None:
        """Handlers without a request are called with no arguments."""
        reg = OperationRegistry()
        reg.register("Nothing", no_payload)
        assert reg.dispatch("Nothing") is None

    def test_dispatch_passes_ctx(self) -> None:
        """Handlers declaring ctx receive it."""
        reg = OperationRegistry()
        reg.register("WithCtx", with_ctx)
        seen: list[Message] = []
        ctx = CallContext(operation="WithCtx", emit_client_log=seen.append)
        assert reg.dispatch("WithCtx", Num(n=5), ctx) == Num(n=5)
        assert seen == [Message(Level.INFO, "seen", n="5")]

    @pytest.mark.parametrize("name", ["Missing", "", "_runas.Nope", "double"])
    def test_unknown_operation(self, name: str) -> None:
        """Unregistered names raise UnknownOperationError."""
        reg = OperationRegistry()
        reg.register("Double", double)
        with pytest.raises(UnknownOperationError) as exc_info:
            reg.dispatch(name, Num(n=1))
        assert exc_info.value.error_type == "UnknownOperation"
        assert "Double" in exc_info.value.error_message
        assert reg.get(name) is None

    def test_names_and_iteration_sorted(self) -> None:
        """names() and iteration are in name order."""
        reg = OperationRegistry()
        reg.register("b", no_payload)
        reg.register("a", no_payload)
        assert reg.names() == ["a", "b"]
        assert [info.name for info in reg] == ["a", "b"]
        assert len(reg) == 2


class TestRunAsRegistry:
    """The registry owned by a RunAs context."""

    def test_builtin_drop_registered_first(self) -> None:
        """A fresh context already has the built-in drop operation."""
        runas = RunAs()
        info = runas.registry.lookup(DROP_PRIVILEGES_OPERATION)
        assert info.request_type is Credential
        assert info.response_type is DropResult
        assert runas.registry.names() == [DROP_PRIVILEGES_OPERATION]

    def test_register_after_bootstrap_refused(self) -> None:
        """Registering after the role decision is refused in the parent."""
        runas = RunAs()
        runas.register("Double", double)
        runas.maybe_run_child_server(environ={})
        with pytest.raises(RegistrationError):
            runas.register("Late", no_payload)
        with pytest.raises(RegistrationError):
            runas.operation("Later")(no_payload)

    def test_contexts_are_independent(self) -> None:
        """Two contexts do not share registrations."""
        a, b = RunAs(), RunAs()
        a.register("Double", double)
        assert "Double" in a.registry
        assert "Double" not in b.registry
