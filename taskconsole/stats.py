"""Statistics recorded for tasks, resources and async operations."""

from __future__ import annotations

import dataclasses
import enum
import struct
import threading
from dataclasses import dataclass
from typing import Optional

from taskconsole.attribute import Attributes, AttributeUpdate
from taskconsole.proto import (
    U64_MAX,
    AsyncOpStatsData,
    Attribute,
    Id,
    PollStatsData,
    ResourceStatsData,
    TaskStatsData,
)

_NANOS_PER_SECOND = 1_000_000_000


class WakeOpKind(enum.Enum):
    """The kind of operation performed on a task's waker."""

    WAKE = "wake"
    WAKE_BY_REF = "wake_by_ref"
    CLONE = "clone"
    DROP = "drop"


@dataclass(frozen=True)
class WakeOp:
    """A waker operation; wakes also record whether the task woke itself."""

    kind: WakeOpKind
    self_wake: bool = False

    def is_wake(self) -> bool:
        """Return ``True`` for wake and wake-by-reference operations."""
        return self.kind in (WakeOpKind.WAKE, WakeOpKind.WAKE_BY_REF)

    def with_self_wake(self, self_wake: bool) -> WakeOp:
        """Return this operation with the self-wake flag set, if it is a wake."""
        if self.is_wake():
            return dataclasses.replace(self, self_wake=bool(self_wake))
        return self


def _zigzag(value: int) -> int:
    return (value << 1) ^ (value >> 63)


def _unzigzag(value: int) -> int:
    return (value >> 1) ^ -(value & 1)


def _write_varint(out: bytearray, value: int) -> None:
    for _ in range(8):
        if value < 0x80:
            out.append(value)
            return
        out.append((value & 0x7F) | 0x80)
        value >>= 7
    out.append(value & 0xFF)


def _read_varint(data: bytes, pos: int) -> tuple[int, int]:
    result = 0
    for shift in range(0, 56, 7):
        if pos >= len(data):
            raise ValueError("truncated histogram payload")
        byte = data[pos]
        pos += 1
        result |= (byte & 0x7F) << shift
        if byte < 0x80:
            return result, pos
    if pos >= len(data):
        raise ValueError("truncated histogram payload")
    result |= data[pos] << 56
    return result, pos + 1


class Histogram:
    """An auto-resizing high-dynamic-range histogram of unsigned integers."""

    COOKIE = 0x1C849303
    _HEADER = struct.Struct(">IIIIQQd")

    def __init__(self, significant_figures: int = 2) -> None:
        if not 0 <= significant_figures <= 5:
            raise ValueError("significant figures must be between 0 and 5")
        self.significant_figures = significant_figures
        single_unit = 2 * 10**significant_figures
        magnitude = (single_unit - 1).bit_length()
        self._half_magnitude = magnitude - 1 if magnitude > 1 else 0
        self._half_count = 1 << self._half_magnitude
        self._sub_bucket_count = self._half_count * 2
        self._mask = self._sub_bucket_count - 1
        self._counts: dict[int, int] = {}
        self._total = 0
        self._highest = 2

    def _bucket_of(self, value: int) -> tuple[int, int]:
        bucket = (value | self._mask).bit_length() - self._half_magnitude - 1
        return bucket, value >> bucket

    def _index_for(self, value: int) -> int:
        bucket, sub_bucket = self._bucket_of(value)
        return ((bucket + 1) << self._half_magnitude) + (sub_bucket - self._half_count)

    def _value_for(self, index: int) -> int:
        bucket = (index >> self._half_magnitude) - 1
        sub_bucket = (index & (self._half_count - 1)) + self._half_count
        if bucket < 0:
            sub_bucket -= self._half_count
            bucket = 0
        return sub_bucket << bucket

    def _highest_equivalent(self, value: int) -> int:
        bucket, sub_bucket = self._bucket_of(value)
        lowest = sub_bucket << bucket
        width = 1 << (bucket + 1 if sub_bucket >= self._sub_bucket_count else bucket)
        return lowest + width - 1

    def record(self, value: int) -> None:
        """Count one occurrence of ``value``."""
        value = int(value)
        if not 0 <= value <= U64_MAX:
            raise ValueError(f"{value} cannot be recorded in the histogram")
        index = self._index_for(value)
        self._counts[index] = self._counts.get(index, 0) + 1
        self._total += 1
        self._highest = max(self._highest, value)

    def count_at(self, value: int) -> int:
        """Number of recorded values equivalent to ``value``."""
        return self._counts.get(self._index_for(int(value)), 0)

    @property
    def max(self) -> int:
        if not self._counts:
            return 0
        return self._highest_equivalent(self._value_for(max(self._counts)))

    def __len__(self) -> int:
        return self._total

    def serialize(self) -> bytes:
        """Encode in the uncompressed V2 histogram format."""
        max_index = max(self._counts, default=0)
        payload = bytearray()
        index = 0
        while index <= max_index:
            count = self._counts.get(index, 0)
            if count:
                _write_varint(payload, _zigzag(count))
                index += 1
                continue
            zeros = 0
            while index + zeros <= max_index and not self._counts.get(index + zeros):
                zeros += 1
            _write_varint(payload, _zigzag(-zeros) if zeros > 1 else 0)
            index += zeros
        header = self._HEADER.pack(
            self.COOKIE,
            len(payload),
            0,
            self.significant_figures,
            1,
            self._highest,
            1.0,
        )
        return header + bytes(payload)

    @classmethod
    def deserialize(cls, data: bytes) -> Histogram:
        """Decode a histogram produced by :meth:`serialize`."""
        if len(data) < cls._HEADER.size:
            raise ValueError("histogram data is too short")
        cookie, length, _offset, figures, _lowest, highest, _ratio = cls._HEADER.unpack_from(
            data
        )
        if cookie != cls.COOKIE:
            raise ValueError("not a V2 histogram")
        payload = data[cls._HEADER.size :]
        if len(payload) != length:
            raise ValueError("histogram payload length mismatch")
        histogram = cls(figures)
        histogram._highest = highest
        pos = 0
        index = 0
        while pos < len(payload):
            raw, pos = _read_varint(payload, pos)
            count = _unzigzag(raw)
            if count < 0:
                index += -count
                continue
            if count:
                histogram._counts[index] = count
                histogram._total += count
            index += 1
        return histogram


class PollStats:
    """Poll counts, timestamps and durations."""

    def __init__(self, histogram: Optional[Histogram] = None) -> None:
        self._lock = threading.Lock()
        self.current_polls = 0
        self.polls = 0
        self.first_poll: Optional[float] = None
        self.last_poll_started: Optional[float] = None
        self.last_poll_ended: Optional[float] = None
        self.busy_time = 0.0
        self.histogram = histogram

    def start_poll(self, at: float) -> None:
        with self._lock:
            previous = self.current_polls
            self.current_polls += 1
            if previous == 0:
                if self.first_poll is None:
                    self.first_poll = at
                self.last_poll_started = at
                self.polls += 1

    def end_poll(self, at: float) -> None:
        with self._lock:
            previous = self.current_polls
            self.current_polls -= 1
            if previous != 1:
                return
            started = self.last_poll_started
            self.last_poll_ended = at
            if started is None or at < started:
                return
            elapsed = at - started
            if self.histogram is not None:
                self.histogram.record(min(int(elapsed * _NANOS_PER_SECOND), U64_MAX))
            self.busy_time += elapsed

    def to_proto(self) -> PollStatsData:
        with self._lock:
            return PollStatsData(
                polls=self.polls,
                first_poll=self.first_poll,
                last_poll_started=self.last_poll_started,
                last_poll_ended=self.last_poll_ended,
                busy_time=self.busy_time,
            )


def _copy_attribute(attribute: Attribute) -> Attribute:
    return Attribute(field=dataclasses.replace(attribute.field), unit=attribute.unit)


class TaskStats:
    """Stats associated with a task."""

    def __init__(self, created_at: float) -> None:
        self._lock = threading.Lock()
        self._dirty = True
        self._dropped = False
        self.created_at = created_at
        self._dropped_at: Optional[float] = None
        self._last_wake: Optional[float] = None
        self.wakes = 0
        self.waker_clones = 0
        self.waker_drops = 0
        self.self_wakes = 0
        self.poll_stats = PollStats(Histogram(2))

    def record_wake_op(self, op: WakeOp, at: float) -> None:
        with self._lock:
            if op.kind is WakeOpKind.CLONE:
                self.waker_clones += 1
            elif op.kind is WakeOpKind.DROP:
                self.waker_drops += 1
            else:
                if op.kind is WakeOpKind.WAKE:
                    # Waking by value consumes the waker without a drop event.
                    self.waker_drops += 1
                self._wake(at, op.self_wake)
            self._dirty = True

    def _wake(self, at: float, self_wake: bool) -> None:
        if self._last_wake is None or at > self._last_wake:
            self._last_wake = at
        self.wakes += 1
        if self_wake:
            self.wakes += 1

    def start_poll(self, at: float) -> None:
        self.poll_stats.start_poll(at)
        self._dirty = True

    def end_poll(self, at: float) -> None:
        self.poll_stats.end_poll(at)
        self._dirty = True

    def drop_task(self, dropped_at: float) -> None:
        with self._lock:
            if self._dropped:
                return
            self._dropped = True
            self._dropped_at = dropped_at
            self._dirty = True

    def serialize_histogram(self) -> Optional[bytes]:
        histogram = self.poll_stats.histogram
        if histogram is None:
            return None
        with self.poll_stats._lock:
            return histogram.serialize()

    def to_proto(self) -> TaskStatsData:
        poll_stats = self.poll_stats.to_proto()
        with self._lock:
            return TaskStatsData(
                poll_stats=poll_stats,
                created_at=self.created_at,
                dropped_at=self._dropped_at,
                wakes=self.wakes,
                waker_clones=self.waker_clones,
                self_wakes=self.self_wakes,
                waker_drops=self.waker_drops,
                last_wake=self._last_wake,
            )

    def take_unsent(self) -> bool:
        with self._lock:
            dirty, self._dirty = self._dirty, False
            return dirty

    def is_unsent(self) -> bool:
        return self._dirty

    def dropped_at(self) -> Optional[float]:
        if not self._dropped:
            return None
        with self._lock:
            return self._dropped_at


class ResourceStats:
    """Stats associated with a resource."""

    def __init__(
        self,
        created_at: float,
        inherit_child_attributes: bool = False,
        parent_id: Optional[int] = None,
    ) -> None:
        self._lock = threading.Lock()
        self._dirty = True
        self._dropped = False
        self.created_at = created_at
        self._dropped_at: Optional[float] = None
        self._attributes = Attributes()
        self.inherit_child_attributes = inherit_child_attributes
        self.parent_id = parent_id

    def update_attribute(self, id: int, update: AttributeUpdate) -> None:
        with self._lock:
            self._attributes.update(id, update)
            self._dirty = True

    def drop_resource(self, dropped_at: float) -> None:
        with self._lock:
            if self._dropped:
                return
            self._dropped = True
            self._dropped_at = dropped_at
            self._dirty = True

    def _make_dirty(self) -> None:
        self._dirty = True

    def _attribute_copies(self) -> list:
        with self._lock:
            return [_copy_attribute(attr) for attr in self._attributes.values()]

    def to_proto(self) -> ResourceStatsData:
        attributes = self._attribute_copies()
        return ResourceStatsData(
            created_at=self.created_at,
            dropped_at=self._dropped_at,
            attributes=attributes,
        )

    def take_unsent(self) -> bool:
        with self._lock:
            dirty, self._dirty = self._dirty, False
            return dirty

    def is_unsent(self) -> bool:
        return self._dirty

    def dropped_at(self) -> Optional[float]:
        if not self._dropped:
            return None
        with self._lock:
            return self._dropped_at


class AsyncOpStats:
    """Resource stats plus poll stats and the id of the last polling task."""

    def __init__(
        self,
        created_at: float,
        inherit_child_attributes: bool = False,
        parent_id: Optional[int] = None,
    ) -> None:
        self._task_id = 0
        self.stats = ResourceStats(created_at, inherit_child_attributes, parent_id)
        self.poll_stats = PollStats()

    def task_id(self) -> Optional[int]:
        return self._task_id if self._task_id > 0 else None

    def set_task_id(self, id: int) -> None:
        self._task_id = int(id)
        self.stats._make_dirty()

    def drop_async_op(self, dropped_at: float) -> None:
        self.stats.drop_resource(dropped_at)

    def start_poll(self, at: float) -> None:
        self.poll_stats.start_poll(at)
        self.stats._make_dirty()

    def end_poll(self, at: float) -> None:
        self.poll_stats.end_poll(at)
        self.stats._make_dirty()

    def to_proto(self) -> AsyncOpStatsData:
        task_id = self.task_id()
        return AsyncOpStatsData(
            poll_stats=self.poll_stats.to_proto(),
            created_at=self.stats.created_at,
            dropped_at=self.stats._dropped_at,
            task_id=Id(task_id) if task_id is not None else None,
            attributes=self.stats._attribute_copies(),
        )

    def take_unsent(self) -> bool:
        return self.stats.take_unsent()

    def is_unsent(self) -> bool:
        return self.stats.is_unsent()

    def dropped_at(self) -> Optional[float]:
        return self.stats.dropped_at()