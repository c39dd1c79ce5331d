"""Visitors that pull the fields the console needs out of span and event values."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable, Mapping, Optional, Union

from taskconsole.attribute import AttributeUpdate, UpdateOp
from taskconsole.proto import (
    I64_MAX,
    I64_MIN,
    U64_MAX,
    Field,
    FieldValue,
    Location,
    MetaId,
    ResourceKind,
)
from taskconsole.stats import WakeOp, WakeOpKind

LOCATION_FILE = "loc.file"
LOCATION_LINE = "loc.line"
LOCATION_COLUMN = "loc.col"
INHERIT_FIELD_NAME = "inherits_child_attrs"

_U32_MASK = 0xFFFFFFFF


def _as_u32(value: int) -> int:
    return int(value) & _U32_MASK


def _location(
    file: Optional[str], line: Optional[int], column: Optional[int]
) -> Optional[Location]:
    if file is None or line is None or column is None:
        return None
    return Location(file=file, line=line, column=column)


class Visitor:
    """Receives typed field values; every method falls back to :meth:`record_debug`."""

    def record_debug(self, name: str, value: Any) -> None:
        """Record a value by its debug representation; ignored by default."""

    def record_str(self, name: str, value: str) -> None:
        self.record_debug(name, value)

    def record_bool(self, name: str, value: bool) -> None:
        self.record_debug(name, value)

    def record_u64(self, name: str, value: int) -> None:
        self.record_debug(name, value)

    def record_i64(self, name: str, value: int) -> None:
        self.record_debug(name, value)


def record_fields(
    visitor: Visitor, values: Union[Mapping[str, Any], Iterable[tuple]]
) -> Visitor:
    """Feed named values to a visitor in order, choosing the method by the value's type.

    Non-negative integers are unsigned, negative ones signed; integers outside
    64 bits, and anything that is not a bool, int or str, go to ``record_debug``.
    """
    pairs = values.items() if isinstance(values, Mapping) else values
    for name, value in pairs:
        if isinstance(value, bool):
            visitor.record_bool(name, value)
        elif isinstance(value, int):
            if 0 <= value <= U64_MAX:
                visitor.record_u64(name, value)
            elif I64_MIN <= value < 0:
                visitor.record_i64(name, value)
            else:
                visitor.record_debug(name, value)
        elif isinstance(value, str):
            visitor.record_str(name, value)
        else:
            visitor.record_debug(name, value)
    return visitor


@dataclass(frozen=True)
class ResourceVisitorResult:
    """What a resource span describes."""

    concrete_type: str
    kind: ResourceKind
    location: Optional[Location]
    is_internal: bool
    inherit_child_attrs: bool


class ResourceVisitor(Visitor):
    """Extracts resource data from a ``runtime.resource`` span."""

    RES_SPAN_NAME = "runtime.resource"
    RES_CONCRETE_TYPE_FIELD_NAME = "concrete_type"
    RES_VIZ_FIELD_NAME = "is_internal"
    RES_KIND_FIELD_NAME = "kind"
    RES_KIND_TIMER = "timer"

    def __init__(self) -> None:
        self.concrete_type: Optional[str] = None
        self.kind: Optional[ResourceKind] = None
        self.is_internal = False
        self.inherit_child_attrs = False
        self.line: Optional[int] = None
        self.file: Optional[str] = None
        self.column: Optional[int] = None

    def record_str(self, name: str, value: str) -> None:
        if name == self.RES_CONCRETE_TYPE_FIELD_NAME:
            self.concrete_type = value
        elif name == self.RES_KIND_FIELD_NAME:
            if value == self.RES_KIND_TIMER:
                self.kind = ResourceKind(self.RES_KIND_TIMER, known=True)
            else:
                self.kind = ResourceKind(value, known=False)
        elif name == LOCATION_FILE:
            self.file = value

    def record_bool(self, name: str, value: bool) -> None:
        if name == self.RES_VIZ_FIELD_NAME:
            self.is_internal = value
        elif name == INHERIT_FIELD_NAME:
            self.inherit_child_attrs = value

    def record_u64(self, name: str, value: int) -> None:
        if name == LOCATION_LINE:
            self.line = _as_u32(value)
        elif name == LOCATION_COLUMN:
            self.column = _as_u32(value)

    def result(self) -> Optional[ResourceVisitorResult]:
        """The resource data, or ``None`` if the type or kind is missing."""
        if self.concrete_type is None or self.kind is None:
            return None
        return ResourceVisitorResult(
            concrete_type=self.concrete_type,
            kind=self.kind,
            location=_location(self.file, self.line, self.column),
            is_internal=self.is_internal,
            inherit_child_attrs=self.inherit_child_attrs,
        )


class FieldVisitor(Visitor):
    """Collects every field of a span as a :class:`Field`."""

    def __init__(self, meta_id: MetaId) -> None:
        self.meta_id = meta_id
        self.fields: list[Field] = []

    def _push(self, name: str, value: FieldValue) -> None:
        self.fields.append(Field(name=name, value=value, metadata_id=self.meta_id))

    def record_debug(self, name: str, value: Any) -> None:
        self._push(name, FieldValue.from_debug(value))

    def record_str(self, name: str, value: str) -> None:
        self._push(name, FieldValue.from_str(value))

    def record_bool(self, name: str, value: bool) -> None:
        self._push(name, FieldValue.from_bool(value))

    def record_u64(self, name: str, value: int) -> None:
        self._push(name, FieldValue.from_u64(value))

    def record_i64(self, name: str, value: int) -> None:
        self._push(name, FieldValue.from_i64(value))

    def result(self) -> list[Field]:
        return list(self.fields)


class TaskVisitor(Visitor):
    """Extracts a spawned task's fields and its spawn location."""

    def __init__(self, meta_id: MetaId) -> None:
        self.field_visitor = FieldVisitor(meta_id)
        self.line: Optional[int] = None
        self.file: Optional[str] = None
        self.column: Optional[int] = None

    def record_debug(self, name: str, value: Any) -> None:
        self.field_visitor.record_debug(name, value)

    def record_i64(self, name: str, value: int) -> None:
        self.field_visitor.record_i64(name, value)

    def record_u64(self, name: str, value: int) -> None:
        if name == LOCATION_LINE:
            self.line = _as_u32(value)
        elif name == LOCATION_COLUMN:
            self.column = _as_u32(value)
        else:
            self.field_visitor.record_u64(name, value)

    def record_bool(self, name: str, value: bool) -> None:
        self.field_visitor.record_bool(name, value)

    def record_str(self, name: str, value: str) -> None:
        if name == LOCATION_FILE:
            self.file = value
        else:
            self.field_visitor.record_str(name, value)

    def result(self) -> tuple[list[Field], Optional[Location]]:
        return self.field_visitor.result(), _location(self.file, self.line, self.column)


class AsyncOpVisitor(Visitor):
    """Extracts the source of a ``runtime.resource.async_op`` span."""

    ASYNC_OP_SPAN_NAME = "runtime.resource.async_op"
    ASYNC_OP_SRC_FIELD_NAME = "source"

    def __init__(self) -> None:
        self.source: Optional[str] = None
        self.inherit_child_attrs = False

    def record_str(self, name: str, value: str) -> None:
        if name == self.ASYNC_OP_SRC_FIELD_NAME:
            self.source = value

    def record_bool(self, name: str, value: bool) -> None:
        if name == INHERIT_FIELD_NAME:
            self.inherit_child_attrs = value

    def result(self) -> Optional[tuple[str, bool]]:
        if self.source is None:
            return None
        return self.source, self.inherit_child_attrs


class WakerVisitor(Visitor):
    """Extracts the task id and operation of a waker event."""

    WAKE = "waker.wake"
    WAKE_BY_REF = "waker.wake_by_ref"
    CLONE = "waker.clone"
    DROP = "waker.drop"
    TASK_ID_FIELD_NAME = "task.id"

    _OPS = {
        WAKE: WakeOpKind.WAKE,
        WAKE_BY_REF: WakeOpKind.WAKE_BY_REF,
        CLONE: WakeOpKind.CLONE,
        DROP: WakeOpKind.DROP,
    }

    def __init__(self) -> None:
        self.id: Optional[int] = None
        self.op: Optional[WakeOp] = None

    def record_u64(self, name: str, value: int) -> None:
        if name == self.TASK_ID_FIELD_NAME:
            if value == 0:
                raise ValueError("span id 0 is reserved")
            self.id = int(value)

    def record_str(self, name: str, value: str) -> None:
        if name == "op":
            kind = self._OPS.get(value)
            if kind is not None:
                self.op = WakeOp(kind)

    def result(self) -> Optional[tuple[int, WakeOp]]:
        if self.id is None or self.op is None:
            return None
        return self.id, self.op


class PollOpVisitor(Visitor):
    """Extracts the name and readiness of a resource poll-op event."""

    POLL_OP_EVENT_TARGET = "runtime::resource::poll_op"
    OP_NAME_FIELD_NAME = "op_name"
    OP_READINESS_FIELD_NAME = "is_ready"

    def __init__(self) -> None:
        self.op_name: Optional[str] = None
        self.is_ready: Optional[bool] = None

    def record_bool(self, name: str, value: bool) -> None:
        if name == self.OP_READINESS_FIELD_NAME:
            self.is_ready = value

    def record_str(self, name: str, value: str) -> None:
        if name == self.OP_NAME_FIELD_NAME:
            self.op_name = value

    def result(self) -> Optional[tuple[str, bool]]:
        if self.op_name is None or self.is_ready is None:
            return None
        return self.op_name, self.is_ready


class StateUpdateVisitor(Visitor):
    """Extracts an attribute update, with its op and unit, from a state-update event."""

    RE_STATE_UPDATE_EVENT_TARGET = "runtime::resource::state_update"
    AO_STATE_UPDATE_EVENT_TARGET = "runtime::resource::async_op::state_update"

    STATE_OP_SUFFIX = ".op"
    STATE_UNIT_SUFFIX = ".unit"

    _OPS = {
        "add": UpdateOp.ADD,
        "sub": UpdateOp.SUB,
        "override": UpdateOp.OVERRIDE,
    }

    def __init__(self, meta_id: MetaId) -> None:
        self.meta_id = meta_id
        self.field: Optional[Field] = None
        self.unit: Optional[str] = None
        self.op: Optional[UpdateOp] = None

    def _is_value_field(self, name: str) -> bool:
        return not (
            name.endswith(self.STATE_OP_SUFFIX) or name.endswith(self.STATE_UNIT_SUFFIX)
        )

    def _set(self, name: str, value: FieldValue) -> None:
        self.field = Field(name=name, value=value, metadata_id=self.meta_id)

    def record_debug(self, name: str, value: Any) -> None:
        if self._is_value_field(name):
            self._set(name, FieldValue.from_debug(value))

    def record_i64(self, name: str, value: int) -> None:
        if self._is_value_field(name):
            self._set(name, FieldValue.from_i64(value))

    def record_u64(self, name: str, value: int) -> None:
        if self._is_value_field(name):
            self._set(name, FieldValue.from_u64(value))

    def record_bool(self, name: str, value: bool) -> None:
        if self._is_value_field(name):
            self._set(name, FieldValue.from_bool(value))

    def record_str(self, name: str, value: str) -> None:
        if name.endswith(self.STATE_OP_SUFFIX):
            op = self._OPS.get(value)
            if op is not None:
                self.op = op
        elif name.endswith(self.STATE_UNIT_SUFFIX):
            self.unit = value
        else:
            self._set(name, FieldValue.from_str(value))

    def result(self) -> Optional[AttributeUpdate]:
        if self.field is None:
            return None
        return AttributeUpdate(field=self.field, op=self.op, unit=self.unit)