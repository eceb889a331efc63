"""Operation registry: the named operations a child can serve."""

from __future__ import annotations

import inspect
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from typing import Any, get_type_hints

import pyarrow as pa

from runas_rpc.rpc._common import (
    _EMPTY_SCHEMA,
    RESERVED_PREFIX,
    CallContext,
    RegistrationError,
    UnknownOperationError,
    _logger,
)
from runas_rpc.utils import ArrowSerializableDataclass

PayloadType = type[ArrowSerializableDataclass] | None
"""A request/response value type, or ``None`` for an empty payload."""

_INFER: Any = object()


@dataclass(frozen=True)
class OperationInfo:
    """Metadata for one registered operation.

    Attributes:
        name: Operation name as it appears on the wire.
        handler: Callable invoked in the child with the decoded request.
        request_type: Request value type, or ``None`` for no payload.
        response_type: Response value type, or ``None`` for no payload.
        accepts_ctx: Whether the handler takes a ``ctx`` keyword argument.
        doc: Handler docstring, if any.

    """

    name: str
    handler: Callable[..., Any]
    request_type: PayloadType
    response_type: PayloadType
    accepts_ctx: bool = False
    doc: str | None = None

    @property
    def request_schema(self) -> pa.Schema:
        """Arrow schema of the request payload."""
        return _EMPTY_SCHEMA if self.request_type is None else self.request_type.ARROW_SCHEMA

    @property
    def response_schema(self) -> pa.Schema:
        """Arrow schema of the response payload."""
        return _EMPTY_SCHEMA if self.response_type is None else self.response_type.ARROW_SCHEMA

    def invoke(self, request: ArrowSerializableDataclass | None, ctx: CallContext | None = None) -> Any:
        """Call the handler with *request* (and *ctx* when it accepts one)."""
        args = () if self.request_type is None else (request,)
        if self.accepts_ctx and ctx is not None:
            return self.handler(*args, ctx=ctx)
        return self.handler(*args)


def _check_payload_type(name: str, role: str, tp: Any) -> PayloadType:
    if tp is None or tp is type(None):
        return None
    if isinstance(tp, type) and issubclass(tp, ArrowSerializableDataclass):
        # Touch the schema so unsupported field types fail at registration
        _ = tp.ARROW_SCHEMA
        return tp
    raise RegistrationError(
        f"Operation '{name}' {role} type must be an ArrowSerializableDataclass subclass or None, got {tp!r}"
    )


def _infer_types(name: str, handler: Callable[..., Any]) -> tuple[Any, Any, bool]:
    """Derive (request_type, response_type, accepts_ctx) from *handler*'s signature."""
    try:
        sig = inspect.signature(handler)
    except (TypeError, ValueError) as exc:
        raise RegistrationError(f"Cannot inspect handler for operation '{name}': {exc}") from exc
    try:
        hints = get_type_hints(handler)
    except (NameError, TypeError):
        hints = {}

    params = [
        p
        for p in sig.parameters.values()
        if p.name != "ctx" and p.kind in (p.POSITIONAL_ONLY, p.POSITIONAL_OR_KEYWORD)
    ]
    accepts_ctx = "ctx" in sig.parameters
    if len(params) > 1:
        raise RegistrationError(f"Handler for operation '{name}' must take at most one request argument")
    request_type: Any = None
    if params:
        request_type = hints.get(params[0].name, _INFER)
    response_type: Any = hints.get("return", _INFER)
    return request_type, response_type, accepts_ctx


class OperationRegistry:
    """Write-once table mapping operation names to handlers.

    Populate it during startup, before the role decision; ``freeze()`` is
    called by the bootstrap and every later ``register`` is refused.  After
    freezing the table is only read, so concurrent dispatch needs no lock.
    """

    __slots__ = ("_frozen", "_operations")

    def __init__(self) -> None:
        """Create an empty, unfrozen registry."""
        self._operations: dict[str, OperationInfo] = {}
        self._frozen = False

    def register(
        self,
        name: str,
        handler: Callable[..., Any],
        *,
        request_type: Any = _INFER,
        response_type: Any = _INFER,
        _builtin: bool = False,
    ) -> OperationInfo:
        """Register *handler* under *name*.

        Request and response types default to the handler's annotations;
        pass them explicitly for unannotated callables.  ``None`` means an
        empty payload.

        Raises:
            RegistrationError: If the registry is frozen, *name* is already
                taken, *name* is in the reserved namespace, or the payload
                types are not serializable.

        """
        if self._frozen:
            raise RegistrationError(
                f"Cannot register '{name}': operations must be registered before maybe_run_child_server()"
            )
        if not name:
            raise RegistrationError("Operation name must be a non-empty string")
        if name.startswith(RESERVED_PREFIX) and not _builtin:
            raise RegistrationError(f"Operation name '{name}' uses the reserved '{RESERVED_PREFIX}' namespace")
        if name in self._operations:
            raise RegistrationError(f"Operation '{name}' is already registered")

        inferred_req, inferred_resp, accepts_ctx = _infer_types(name, handler)
        req = inferred_req if request_type is _INFER else request_type
        resp = inferred_resp if response_type is _INFER else response_type
        if req is _INFER or resp is _INFER:
            raise RegistrationError(
                f"Cannot determine payload types for operation '{name}'; "
                "annotate the handler or pass request_type/response_type"
            )

        info = OperationInfo(
            name=name,
            handler=handler,
            request_type=_check_payload_type(name, "request", req),
            response_type=_check_payload_type(name, "response", resp),
            accepts_ctx=accepts_ctx,
            doc=inspect.getdoc(handler),
        )
        self._operations[name] = info
        _logger.debug("Registered operation %s", name, extra={"operation": name})
        return info

    def operation(self, name: str | None = None) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
        """Decorator form of :meth:`register`; defaults the name to the function name."""

        def decorator(fn: Callable[..., Any]) -> Callable[..., Any]:
            self.register(name or fn.__name__, fn)
            return fn

        return decorator

    def lookup(self, name: str) -> OperationInfo:
        """Return the registered operation *name*.

        Raises:
            UnknownOperationError: If *name* was never registered.

        """
        info = self._operations.get(name)
        if info is None:
            raise UnknownOperationError(f"Unknown operation: '{name}'. Available operations: {self.names()}")
        return info

    def get(self, name: str) -> OperationInfo | None:
        """Return the registered operation *name*, or ``None``."""
        return self._operations.get(name)

    def dispatch(
        self,
        name: str,
        request: ArrowSerializableDataclass | None = None,
        ctx: CallContext | None = None,
    ) -> Any:
        """Look up *name* and invoke its handler with *request*.

        Raises:
            UnknownOperationError: If *name* was never registered.

        """
        return self.lookup(name).invoke(request, ctx)

    def names(self) -> list[str]:
        """Sorted list of registered operation names."""
        return sorted(self._operations)

    def freeze(self) -> None:
        """Refuse further registrations."""
        self._frozen = True

    @property
    def frozen(self) -> bool:
        """Whether registrations are still accepted."""
        return self._frozen

    def __contains__(self, name: object) -> bool:
        """Return whether *name* is registered."""
        return name in self._operations

    def __len__(self) -> int:
        """Number of registered operations."""
        return len(self._operations)

    def __iter__(self) -> Iterator[OperationInfo]:
        """Iterate over registered operations in name order."""
        return iter(self._operations[n] for n in self.names())
