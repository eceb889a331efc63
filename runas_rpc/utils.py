# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Arrow-serializable request and response value types.

Every operation exchanged with a privilege-dropped child declares a plain
frozen dataclass for its request and its response.  Mixing in
:class:`ArrowSerializableDataclass` derives an Arrow schema from the field
annotations and converts instances to and from single-row record batches,
which is what travels inside an envelope.

    @dataclass(frozen=True)
    class WhoAmIResult(ArrowSerializableDataclass):
        uid: int
        gid: int

KEY CLASSES
-----------
ArrowSerializableDataclass : Mixin giving a dataclass ``ARROW_SCHEMA`` plus
    single-row batch conversion.
ArrowType : ``Annotated`` marker overriding the inferred Arrow type.

"""

import os
import sys
from dataclasses import MISSING, dataclass
from dataclasses import fields as dataclass_fields
from enum import Enum
from types import UnionType
from typing import (
    Annotated,
    Any,
    ClassVar,
    Self,
    Union,
    get_args,
    get_origin,
    get_type_hints,
)

import pyarrow as pa
import structlog

from runas_rpc.metadata import decode_metadata

__all__ = [
    "ArrowSerializableDataclass",
    "ArrowType",
    "empty_batch",
]

# IPC debug logging - enable with RUNAS_RPC_IPC_DEBUG=1.  Always goes to
# stderr: in a child process stdout carries the wire protocol.
_IPC_DEBUG = os.environ.get("RUNAS_RPC_IPC_DEBUG", "").lower() in ("1", "true", "yes")
_ipc_log: structlog.stdlib.BoundLogger | None = None


def _get_ipc_log() -> structlog.stdlib.BoundLogger:
    """Get or create the IPC debug logger, configured to write to stderr."""
    global _ipc_log
    if _ipc_log is None:
        structlog.configure(
            processors=[
                structlog.processors.add_log_level,
                structlog.processors.TimeStamper(fmt="iso"),
                structlog.dev.ConsoleRenderer(),
            ],
            wrapper_class=structlog.make_filtering_bound_logger(0),
            logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        )
        _ipc_log = structlog.get_logger().bind(component="ipc", pid=os.getpid())
    return _ipc_log


def ipc_trace(event: str, batch: pa.RecordBatch, metadata: pa.KeyValueMetadata | None = None, **kw: Any) -> None:
    """Emit a structlog trace line for *batch* when ``RUNAS_RPC_IPC_DEBUG`` is set."""
    if not _IPC_DEBUG:
        return
    _get_ipc_log().debug(
        event,
        num_rows=batch.num_rows,
        schema={field.name: str(field.type) for field in batch.schema},
        metadata=decode_metadata(metadata),
        **kw,
    )


def empty_batch(schema: pa.Schema) -> pa.RecordBatch:
    """Return an empty batch conforming to the schema."""
    return pa.RecordBatch.from_arrays(
        [pa.array([], type=field.type) for field in schema],
        schema=schema,
    )


# =============================================================================
# Type inference
# =============================================================================


@dataclass(frozen=True)
class ArrowType:
    """Annotation marker to specify an explicit Arrow type for a field.

        @dataclass(frozen=True)
        class DropRequest(ArrowSerializableDataclass):
            uid: Annotated[int, ArrowType(pa.int64())]

    """

    arrow_type: pa.DataType


def _is_optional_type(python_type: Any) -> tuple[Any, bool]:
    """Check if a type is Optional (X | None) and extract the inner type.

    Returns:
        Tuple of (inner_type, is_nullable).

    """
    origin = get_origin(python_type)
    args = get_args(python_type)
    if origin is UnionType or origin is Union:
        non_none_types = [t for t in args if t is not type(None)]
        if len(non_none_types) == 1 and len(args) == 2:
            return non_none_types[0], True
    return python_type, False


def _infer_arrow_type(python_type: Any) -> pa.DataType:
    """Infer an Arrow type from a Python type annotation.

    Supports str, bytes, int, float, bool, ``list[T]``, ``dict[K, V]``,
    Enum (stored by name), nested ArrowSerializableDataclass (struct) and
    ``Annotated[T, ArrowType(...)]``.

    Raises:
        TypeError: If the type cannot be inferred.

    """
    inner_type, _ = _is_optional_type(python_type)
    if inner_type is not python_type:
        return _infer_arrow_type(inner_type)

    if get_origin(python_type) is Annotated:
        args = get_args(python_type)
        for arg in args[1:]:
            if isinstance(arg, ArrowType):
                return arg.arrow_type
        return _infer_arrow_type(args[0])

    if isinstance(python_type, type) and issubclass(python_type, Enum):
        return pa.string()

    if isinstance(python_type, type) and issubclass(python_type, ArrowSerializableDataclass):
        return pa.struct([pa.field(f.name, f.type, nullable=f.nullable) for f in python_type.ARROW_SCHEMA])

    origin = get_origin(python_type)
    args = get_args(python_type)
    if origin is list:
        return pa.list_(_infer_arrow_type(args[0]) if args else pa.string())
    if origin is dict:
        if len(args) >= 2:
            return pa.map_(_infer_arrow_type(args[0]), _infer_arrow_type(args[1]))
        return pa.map_(pa.string(), pa.string())

    type_map: dict[type, pa.DataType] = {
        str: pa.string(),
        bytes: pa.binary(),
        int: pa.int64(),
        float: pa.float64(),
        bool: pa.bool_(),
    }
    if python_type in type_map:
        return type_map[python_type]

    raise TypeError(
        f"Cannot infer Arrow type for: {python_type}. "
        f"Use Annotated[T, ArrowType(...)] to specify the Arrow type explicitly."
    )


def _strip_annotated(field_type: Any) -> Any:
    if get_origin(field_type) is Annotated:
        args = get_args(field_type)
        return args[0] if args else field_type
    return field_type


def _resolved_hints(cls: type, *, include_extras: bool) -> dict[str, Any]:
    try:
        return get_type_hints(cls, include_extras=include_extras)
    except (NameError, TypeError):
        return {f.name: f.type for f in dataclass_fields(cls)}  # type: ignore[arg-type]


class _ArrowSchemaDescriptor:
    """Descriptor that lazily generates ARROW_SCHEMA on first access.

    ``@dataclass`` runs after ``__init_subclass__``, so the fields are only
    known once the class is complete; the schema is built on first access
    and cached on the class.
    """

    def __set_name__(self, owner: type, name: str) -> None:
        self._name = name

    def __get__(self, instance: object | None, owner: type["ArrowSerializableDataclass"]) -> pa.Schema:
        cache_attr = f"_cached_{self._name}_{owner.__qualname__}"
        cached = owner.__dict__.get(cache_attr)
        if cached is not None:
            return cached  # type: ignore[no-any-return]
        schema = self._generate_schema(owner)
        setattr(owner, cache_attr, schema)
        return schema

    def _generate_schema(self, cls: type["ArrowSerializableDataclass"]) -> pa.Schema:
        type_hints = _resolved_hints(cls, include_extras=True)
        arrow_fields: list[pa.Field] = []
        for field in dataclass_fields(cls):  # type: ignore[arg-type]
            field_type = type_hints.get(field.name, field.type)
            _, nullable = _is_optional_type(_strip_annotated(field_type))
            try:
                arrow_type = _infer_arrow_type(field_type)
            except TypeError as e:
                raise TypeError(f"Cannot generate Arrow schema for {cls.__name__}.{field.name}: {e}") from e
            arrow_fields.append(pa.field(field.name, arrow_type, nullable=nullable))
        return pa.schema(arrow_fields)


# =============================================================================
# ArrowSerializableDataclass
# =============================================================================


class ArrowSerializableDataclass:
    """Mixin for dataclasses with automatic Arrow serialization.

    The ``ARROW_SCHEMA`` is generated from the field annotations on first
    access.  Optional fields (``X | None``) become nullable columns.  An
    instance serializes to a single-row ``pa.RecordBatch``.

    Attributes:
        ARROW_SCHEMA: Auto-generated Arrow schema from field annotations.

    """

    ARROW_SCHEMA: ClassVar[pa.Schema] = _ArrowSchemaDescriptor()  # type: ignore[assignment]

    def _to_row_dict(self) -> dict[str, Any]:
        """Convert the instance to a dict suitable for ``RecordBatch.from_pylist``."""
        return {
            field.name: _to_arrow_value(getattr(self, field.name))
            for field in dataclass_fields(self)  # type: ignore[arg-type]
        }

    def to_batch(self) -> pa.RecordBatch:
        """Serialize this instance to a single-row record batch."""
        return pa.RecordBatch.from_pylist([self._to_row_dict()], schema=self.ARROW_SCHEMA)

    @classmethod
    def from_batch(cls, batch: pa.RecordBatch) -> Self:
        """Deserialize an instance from a single-row record batch.

        Fields absent from the batch fall back to their dataclass defaults.

        Raises:
            ValueError: If the batch does not have exactly one row or lacks
                a field that has no default.

        """
        if len(batch.schema) == 0 and batch.num_rows == 0:
            # Zero-column batches cannot carry a row count of one
            return cls()
        if batch.num_rows != 1:
            raise ValueError(f"Expected single-row RecordBatch for {cls.__name__}, got {batch.num_rows} rows")
        row: dict[str, Any] = batch.to_pylist()[0]
        type_hints = _resolved_hints(cls, include_extras=False)

        kwargs: dict[str, Any] = {}
        missing: list[str] = []
        for field in dataclass_fields(cls):  # type: ignore[arg-type]
            if field.name not in row:
                if field.default is MISSING and field.default_factory is MISSING:
                    missing.append(field.name)
                continue
            kwargs[field.name] = _from_arrow_value(row[field.name], type_hints.get(field.name, field.type))
        if missing:
            raise ValueError(f"Missing fields in {cls.__name__} RecordBatch: {missing}. Found: {sorted(row)}")
        return cls(**kwargs)



def _to_arrow_value(value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, Enum):
        return value.name
    if isinstance(value, ArrowSerializableDataclass):
        return value._to_row_dict()
    if isinstance(value, dict):
        return [(k, _to_arrow_value(v)) for k, v in value.items()]
    if isinstance(value, (list, tuple, frozenset)):
        return [_to_arrow_value(v) for v in value]
    return value


def _from_arrow_value(value: Any, field_type: Any) -> Any:
    if value is None:
        return None
    inner_type, _ = _is_optional_type(_strip_annotated(field_type))
    inner_type = _strip_annotated(inner_type)

    if isinstance(inner_type, type) and issubclass(inner_type, Enum):
        return inner_type[value]

    if isinstance(inner_type, type) and issubclass(inner_type, ArrowSerializableDataclass):
        hints = _resolved_hints(inner_type, include_extras=False)
        return inner_type(
            **{
                f.name: _from_arrow_value(value.get(f.name), hints.get(f.name, f.type))
                for f in dataclass_fields(inner_type)  # type: ignore[arg-type]
            }
        )

    origin = get_origin(inner_type)
    args = get_args(inner_type)
    if origin is dict:
        value_type = args[1] if len(args) >= 2 else Any
        return {k: _from_arrow_value(v, value_type) for k, v in value}
    if origin is list and args:
        return [_from_arrow_value(v, args[0]) for v in value]
    return value
