"""Recording of task events to a file as newline-delimited JSON."""

from __future__ import annotations

import json
import math
import queue
import sys
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Union

from taskconsole.proto import Field, ValueKind
from taskconsole.stats import WakeOp, WakeOpKind

DATA_FORMAT_VERSION = 1

_CHANNEL_CAPACITY = 4096
_STOP = object()

_OP_NAMES = {
    WakeOpKind.WAKE: "Wake",
    WakeOpKind.WAKE_BY_REF: "WakeByRef",
    WakeOpKind.CLONE: "Clone",
    WakeOpKind.DROP: "Drop",
}


@dataclass(frozen=True)
class SpawnRecord:
    id: int
    at: float
    fields: tuple = field(default_factory=tuple)


@dataclass(frozen=True)
class EnterRecord:
    id: int
    at: float


@dataclass(frozen=True)
class ExitRecord:
    id: int
    at: float


@dataclass(frozen=True)
class CloseRecord:
    id: int
    at: float


@dataclass(frozen=True)
class WakerRecord:
    id: int
    op: WakeOp
    at: float


RecordEvent = Union[SpawnRecord, EnterRecord, ExitRecord, CloseRecord, WakerRecord]


def _serialize_time(at: float) -> dict:
    if at < 0:
        raise ValueError("timestamps must not be earlier than the Unix epoch")
    secs = math.floor(at)
    nanos = min(round((at - secs) * 1_000_000_000), 999_999_999)
    return {"secs_since_epoch": int(secs), "nanos_since_epoch": int(nanos)}


def _serialize_field(item: Field) -> dict:
    if item.name is None:
        raise ValueError("field has no name")
    if not isinstance(item.name, str):
        raise ValueError("fields named by metadata index cannot be serialized")
    if item.value is None:
        raise ValueError(f"field {item.name!r} has no value")
    value = item.value.value
    if item.value.kind is ValueKind.BOOL:
        value = bool(value)
    return {"name": item.name, "value": value}


def serialize_fields(fields) -> list:
    """Serialize fields as a list of name/value objects."""
    return [_serialize_field(item) for item in fields]


def _serialize_op(op: WakeOp) -> Any:
    name = _OP_NAMES[op.kind]
    if op.is_wake():
        return {name: {"self_wake": op.self_wake}}
    return name


def serialize_event(event: RecordEvent) -> dict:
    """Return the JSON-ready form of a recorded event."""
    if isinstance(event, SpawnRecord):
        return {
            "Spawn": {
                "id": event.id,
                "at": _serialize_time(event.at),
                "fields": serialize_fields(event.fields),
            }
        }
    if isinstance(event, WakerRecord):
        return {
            "Waker": {
                "id": event.id,
                "op": _serialize_op(event.op),
                "at": _serialize_time(event.at),
            }
        }
    for kind, name in ((EnterRecord, "Enter"), (ExitRecord, "Exit"), (CloseRecord, "Close")):
        if isinstance(event, kind):
            return {name: {"id": event.id, "at": _serialize_time(event.at)}}
    raise TypeError(f"cannot record {type(event).__name__}")


def _write(file, value: Any) -> None:
    file.write(json.dumps(value, separators=(",", ":")))
    file.write("\n")


class Recorder:
    """Writes events to a file from a background thread."""

    def __init__(self, path: Union[str, Path]) -> None:
        self._file = open(path, "w", encoding="utf-8")
        self._queue: queue.Queue = queue.Queue(maxsize=_CHANNEL_CAPACITY)
        self._closed = False
        self._worker = threading.Thread(
            target=self._run, name="console/subscriber/recorder/io", daemon=True
        )
        self._worker.start()

    def _run(self) -> None:
        try:
            with self._file as out:
                _write(out, {"v": DATA_FORMAT_VERSION})
                out.flush()
                stop = False
                while not stop:
                    event = self._queue.get()
                    if event is _STOP:
                        break
                    _write(out, serialize_event(event))
                    while True:
                        try:
                            event = self._queue.get_nowait()
                        except queue.Empty:
                            break
                        if event is _STOP:
                            stop = True
                            break
                        _write(out, serialize_event(event))
                    out.flush()
        except (OSError, ValueError, TypeError) as error:
            print(f"event recorder failed: {error}", file=sys.stderr)

    def record(self, event: RecordEvent) -> None:
        """Queue an event for writing."""
        while not self._closed and self._worker.is_alive():
            try:
                self._queue.put(event, timeout=0.1)
                return
            except queue.Full:
                continue
        print("event recorder thread has terminated!", file=sys.stderr)

    def close(self) -> None:
        """Write all queued events and close the file."""
        if self._closed:
            return
        self._closed = True
        while self._worker.is_alive():
            try:
                self._queue.put(_STOP, timeout=0.1)
                break
            except queue.Full:
                continue
        self._worker.join()

    def __enter__(self) -> Recorder:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()