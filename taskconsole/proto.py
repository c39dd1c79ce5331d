"""Wire-level data types exchanged between the instrumentation layer and clients."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any, Optional, Union

U64_MAX = 2**64 - 1
I64_MIN = -(2**63)
I64_MAX = 2**63 - 1


class Level(enum.IntEnum):
    """Verbosity level of a span or event."""

    ERROR = 0
    WARN = 1
    INFO = 2
    DEBUG = 3
    TRACE = 4


class MetadataKind(enum.IntEnum):
    """Whether a callsite describes a span or an event."""

    SPAN = 0
    EVENT = 1


class ValueKind(enum.Enum):
    """The type carried by a field value."""

    BOOL = "bool"
    STR = "str"
    U64 = "u64"
    I64 = "i64"
    DEBUG = "debug"


@dataclass(frozen=True)
class FieldValue:
    """A typed field value."""

    kind: ValueKind
    value: Union[bool, str, int]

    @classmethod
    def from_bool(cls, value: bool) -> FieldValue:
        return cls(ValueKind.BOOL, bool(value))

    @classmethod
    def from_str(cls, value: str) -> FieldValue:
        return cls(ValueKind.STR, str(value))

    @classmethod
    def from_u64(cls, value: int) -> FieldValue:
        value = int(value)
        if not 0 <= value <= U64_MAX:
            raise ValueError(f"{value} does not fit in an unsigned 64-bit integer")
        return cls(ValueKind.U64, value)

    @classmethod
    def from_i64(cls, value: int) -> FieldValue:
        value = int(value)
        if not I64_MIN <= value <= I64_MAX:
            raise ValueError(f"{value} does not fit in a signed 64-bit integer")
        return cls(ValueKind.I64, value)

    @classmethod
    def from_debug(cls, value: Any) -> FieldValue:
        """Capture the debug representation of an arbitrary object."""
        return cls(ValueKind.DEBUG, repr(value))

    def __str__(self) -> str:
        if self.kind is ValueKind.BOOL:
            return "true" if self.value else "false"
        return str(self.value)


@dataclass(frozen=True)
class MetaId:
    """Identifies a registered callsite's metadata."""

    id: int


@dataclass(frozen=True)
class Id:
    """Identifies a task, resource or async operation."""

    id: int

    def __int__(self) -> int:
        return self.id


@dataclass
class Field:
    """A named field; a string name or an index into the metadata's field names."""

    name: Optional[Union[str, int]] = None
    value: Optional[FieldValue] = None
    metadata_id: Optional[MetaId] = None

    def __str__(self) -> str:
        if isinstance(self.name, str) and self.value is not None:
            return f"{self.name}={self.value}"
        return ""


@dataclass(frozen=True)
class Location:
    """A source-code location."""

    file: Optional[str] = None
    module_path: Optional[str] = None
    line: Optional[int] = None
    column: Optional[int] = None

    def __str__(self) -> str:
        # Module paths take precedence because they are shorter.
        base = self.module_path if self.module_path is not None else self.file
        if base is None:
            return "<unknown location>"
        if self.line is None:
            return base
        if self.column is None:
            return f"{base}:{self.line}"
        return f"{base}:{self.line}:{self.column}"


@dataclass(frozen=True, eq=False)
class Metadata:
    """Static description of a span or event callsite; compared by identity."""

    name: str
    target: str
    kind: MetadataKind = MetadataKind.SPAN
    level: Level = Level.TRACE
    field_names: tuple = ()
    file: Optional[str] = None
    module_path: Optional[str] = None
    line: Optional[int] = None

    def is_span(self) -> bool:
        return self.kind is MetadataKind.SPAN

    def is_event(self) -> bool:
        return self.kind is MetadataKind.EVENT

    @property
    def location(self) -> Location:
        return Location(file=self.file, module_path=self.module_path, line=self.line)


@dataclass(frozen=True)
class NewMetadata:
    """A newly registered callsite and its identifier."""

    id: MetaId
    metadata: Metadata


@dataclass
class RegisterMetadata:
    metadata: list = field(default_factory=list)


@dataclass
class Attribute:
    """A resource or async-op attribute and its unit."""

    field: Field
    unit: Optional[str] = None


@dataclass
class PollStatsData:
    polls: int = 0
    first_poll: Optional[float] = None
    last_poll_started: Optional[float] = None
    last_poll_ended: Optional[float] = None
    busy_time: float = 0.0


@dataclass
class TaskStatsData:
    poll_stats: Optional[PollStatsData] = None
    created_at: Optional[float] = None
    dropped_at: Optional[float] = None
    wakes: int = 0
    waker_clones: int = 0
    self_wakes: int = 0
    waker_drops: int = 0
    last_wake: Optional[float] = None


@dataclass
class ResourceStatsData:
    created_at: Optional[float] = None
    dropped_at: Optional[float] = None
    attributes: list = field(default_factory=list)


@dataclass
class AsyncOpStatsData:
    poll_stats: Optional[PollStatsData] = None
    created_at: Optional[float] = None
    dropped_at: Optional[float] = None
    task_id: Optional[Id] = None
    attributes: list = field(default_factory=list)


class TaskKind(enum.IntEnum):
    SPAWN = 0
    BLOCKING = 1


@dataclass
class Task:
    id: Id
    metadata: Optional[MetaId] = None
    kind: TaskKind = TaskKind.SPAWN
    fields: list = field(default_factory=list)
    parents: list = field(default_factory=list)
    location: Optional[Location] = None


@dataclass
class TaskUpdate:
    new_tasks: list = field(default_factory=list)
    stats_update: dict = field(default_factory=dict)
    dropped_events: int = 0


@dataclass
class TaskDetails:
    task_id: Optional[Id] = None
    now: Optional[float] = None
    poll_times_histogram: Optional[bytes] = None


@dataclass(frozen=True)
class ResourceKind:
    """A resource kind: one of the known kinds, or a free-form name."""

    name: str
    known: bool = False

    def __str__(self) -> str:
        return self.name


@dataclass
class Resource:
    id: Id
    kind: ResourceKind
    metadata: Optional[MetaId] = None
    concrete_type: str = ""
    parent_resource_id: Optional[Id] = None
    location: Optional[Location] = None
    is_internal: bool = False


@dataclass
class PollOp:
    metadata: Optional[MetaId]
    resource_id: Id
    name: str
    task_id: Id
    async_op_id: Id
    is_ready: bool


@dataclass
class ResourceUpdate:
    new_resources: list = field(default_factory=list)
    stats_update: dict = field(default_factory=dict)
    new_poll_ops: list = field(default_factory=list)
    dropped_events: int = 0


@dataclass
class AsyncOp:
    id: Id
    resource_id: Id
    source: str = ""
    metadata: Optional[MetaId] = None
    parent_async_op_id: Optional[Id] = None


@dataclass
class AsyncOpUpdate:
    new_async_ops: list = field(default_factory=list)
    stats_update: dict = field(default_factory=dict)
    dropped_events: int = 0


@dataclass
class Update:
    """A full or incremental state update sent to a watching client."""

    task_update: Optional[TaskUpdate] = None
    resource_update: Optional[ResourceUpdate] = None
    async_op_update: Optional[AsyncOpUpdate] = None
    now: Optional[float] = None
    new_metadata: Optional[RegisterMetadata] = None


def meta_id(meta: Metadata) -> MetaId:
    """Return the identifier of a callsite, derived from the metadata's identity."""
    return MetaId(id(meta))


def new_metadata(meta: Metadata) -> NewMetadata:
    """Wrap a callsite's metadata for registration with clients."""
    return NewMetadata(id=meta_id(meta), metadata=meta)