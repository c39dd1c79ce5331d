"""The layer that turns span and event notifications into console events."""

from __future__ import annotations

import asyncio
import datetime
import queue
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Mapping, Optional, Union

from taskconsole import record
from taskconsole.aggregator import Aggregator
from taskconsole.config import ConsoleConfig
from taskconsole.events import (
    AsyncResourceOpEvent,
    MetadataEvent,
    PollOpEvent,
    ResourceEvent,
    Shared,
    SpawnEvent,
)
from taskconsole.proto import meta_id
from taskconsole.record import Recorder
from taskconsole.server import Server
from taskconsole.stack import SpanStack
from taskconsole.stats import AsyncOpStats, ResourceStats, TaskStats
from taskconsole.visitors import (
    AsyncOpVisitor,
    PollOpVisitor,
    ResourceVisitor,
    StateUpdateVisitor,
    TaskVisitor,
    WakerVisitor,
    record_fields,
)

Values = Optional[Union[Mapping[str, Any], Iterable[tuple]]]

_COMMAND_CAPACITY = 256


def _seconds(value: Any) -> float:
    if isinstance(value, datetime.timedelta):
        return value.total_seconds()
    return float(value)


class _Callsites:
    """A set of callsites, compared by identity."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._known: dict = {}

    def insert(self, meta: Any) -> None:
        with self._lock:
            self._known.setdefault(id(meta), meta)

    def __contains__(self, meta: object) -> bool:
        return id(meta) in self._known


@dataclass
class SpanRecord:
    """A live span known to the layer, with the stats attached to it."""

    id: int
    metadata: Any
    parent_id: Optional[int] = None
    stats: Any = None


class ConsoleLayer:
    """Records runtime spans and events and sends them to the aggregator."""

    def __init__(
        self,
        events: queue.Queue,
        shared: Shared,
        flush_under_capacity: int,
        recorder: Optional[Recorder] = None,
    ) -> None:
        self.events = events
        self.shared = shared
        self.spans: dict[int, SpanRecord] = {}
        self._flush_under_capacity = flush_under_capacity
        self._recorder = recorder
        self._local = threading.local()
        self._closed = False
        self._spawn_callsites = _Callsites()
        self._waker_callsites = _Callsites()
        self._resource_callsites = _Callsites()
        self._async_op_callsites = _Callsites()
        self._async_op_poll_callsites = _Callsites()
        self._poll_op_callsites = _Callsites()
        self._resource_state_update_callsites = _Callsites()
        self._async_op_state_update_callsites = _Callsites()

    @classmethod
    def new(cls) -> tuple[ConsoleLayer, Server]:
        """Build a layer and server with the default settings."""
        return cls.build(ConsoleConfig())

    @classmethod
    def build(cls, config: ConsoleConfig) -> tuple[ConsoleLayer, Server]:
        """Build a layer and the server that publishes what it collects."""
        capacity = int(config.event_buffer_capacity)
        if capacity <= 0:
            raise ValueError("event buffer capacity must be positive")
        events: queue.Queue = queue.Queue(maxsize=capacity)
        rpcs: asyncio.Queue = asyncio.Queue(maxsize=_COMMAND_CAPACITY)
        shared = Shared()
        aggregator = Aggregator(
            events,
            rpcs,
            shared,
            _seconds(config.publish_interval),
            _seconds(config.retention),
        )
        recorder = None
        if config.recording_path is not None:
            recorder = Recorder(config.recording_path)
        server = Server(
            rpcs, config.server_addr, aggregator, int(config.client_buffer_capacity)
        )
        layer = cls(events, shared, config.flush_under_capacity(), recorder)
        return layer, server

    # === helpers ===

    def _stack(self) -> SpanStack:
        stack = getattr(self._local, "stack", None)
        if stack is None:
            stack = SpanStack()
            self._local.stack = stack
        return stack

    def _is_id(self, callsites: _Callsites, id: int) -> bool:
        span = self.spans.get(id)
        return span is not None and span.metadata in callsites

    def _first_entered(self, callsites: _Callsites) -> Optional[int]:
        for entry in reversed(list(self._stack().entries())):
            if self._is_id(callsites, entry.id):
                return entry.id
        return None

    def _send(self, dropped: Any, event: Any) -> bool:
        sent = False
        if not self._closed:
            try:
                self.events.put_nowait(event)
                sent = True
            except queue.Full:
                dropped.increment()
        if self.events.maxsize - self.events.qsize() <= self._flush_under_capacity:
            self.shared.flush.trigger()
        return sent

    def _record(self, make: Callable[[], Any]) -> None:
        if self._recorder is not None:
            self._recorder.record(make())

    # === notifications ===

    def register_callsite(self, meta: Any) -> bool:
        """Classify a callsite and announce its metadata; always interested."""
        name, target = meta.name, meta.target
        shared = self.shared
        if name == "runtime.spawn" or (name == "task" and target == "tokio::task"):
            self._spawn_callsites.insert(meta)
            dropped = shared.dropped_tasks
        elif target in ("runtime::waker", "tokio::task::waker"):
            self._waker_callsites.insert(meta)
            dropped = shared.dropped_tasks
        elif name == ResourceVisitor.RES_SPAN_NAME:
            self._resource_callsites.insert(meta)
            dropped = shared.dropped_resources
        elif name == AsyncOpVisitor.ASYNC_OP_SPAN_NAME:
            self._async_op_callsites.insert(meta)
            dropped = shared.dropped_async_ops
        elif name == "runtime.resource.async_op.poll":
            self._async_op_poll_callsites.insert(meta)
            dropped = shared.dropped_async_ops
        elif target == PollOpVisitor.POLL_OP_EVENT_TARGET:
            self._poll_op_callsites.insert(meta)
            dropped = shared.dropped_async_ops
        elif target == StateUpdateVisitor.RE_STATE_UPDATE_EVENT_TARGET:
            self._resource_state_update_callsites.insert(meta)
            dropped = shared.dropped_resources
        elif target == StateUpdateVisitor.AO_STATE_UPDATE_EVENT_TARGET:
            self._async_op_state_update_callsites.insert(meta)
            dropped = shared.dropped_async_ops
        else:
            dropped = shared.dropped_tasks
        self._send(dropped, MetadataEvent(meta))
        return True

    def on_new_span(
        self, meta: Any, values: Values, id: int, parent_id: Optional[int] = None
    ) -> None:
        """Register a new span and, if it is a task, resource or async op, announce it."""
        values = values if values is not None else ()
        span = SpanRecord(id=id, metadata=meta, parent_id=parent_id)
        self.spans[id] = span

        if meta in self._spawn_callsites:
            at = time.time()
            visitor = record_fields(TaskVisitor(meta_id(meta)), values)
            fields, location = visitor.result()
            fields = tuple(fields)
            self._record(lambda: record.SpawnRecord(id=id, at=at, fields=fields))
            stats = TaskStats(at)
            event = SpawnEvent(
                id=id, metadata=meta, stats=stats, fields=fields, location=location
            )
            if self._send(self.shared.dropped_tasks, event):
                span.stats = stats
            return

        if meta in self._resource_callsites:
            at = time.time()
            result = record_fields(ResourceVisitor(), values).result()
            if result is None:
                return
            parent = self._first_entered(self._resource_callsites)
            stats = ResourceStats(at, result.inherit_child_attrs, parent)
            event = ResourceEvent(
                id=id,
                parent_id=parent,
                metadata=meta,
                concrete_type=result.concrete_type,
                kind=result.kind,
                location=result.location,
                is_internal=result.is_internal,
                stats=stats,
            )
            if self._send(self.shared.dropped_resources, event):
                span.stats = stats
            return

        if meta in self._async_op_callsites:
            at = time.time()
            result = record_fields(AsyncOpVisitor(), values).result()
            if result is None:
                return
            source, inherit = result
            resource_id = self._first_entered(self._resource_callsites)
            parent = self._first_entered(self._async_op_callsites)
            if resource_id is None:
                return
            stats = AsyncOpStats(at, inherit, parent)
            event = AsyncResourceOpEvent(
                id=id,
                parent_id=parent,
                resource_id=resource_id,
                metadata=meta,
                source=source,
                stats=stats,
            )
            if self._send(self.shared.dropped_async_ops, event):
                span.stats = stats

    def on_event(self, meta: Any, values: Values) -> None:
        """Handle waker, poll-op and state-update events."""
        values = values if values is not None else ()

        if meta in self._waker_callsites:
            at = time.time()
            result = record_fields(WakerVisitor(), values).result()
            if result is None:
                return
            task_id, op = result
            span = self.spans.get(task_id)
            if span is None or not isinstance(span.stats, TaskStats):
                return
            if op.is_wake():
                op = op.with_self_wake(any(entered == task_id for entered in self._stack()))
            span.stats.record_wake_op(op, at)
            self._record(lambda: record.WakerRecord(id=task_id, op=op, at=at))
            return

        if meta in self._poll_op_callsites:
            resource_id = self._first_entered(self._resource_callsites)
            if resource_id is None:
                return
            result = record_fields(PollOpVisitor(), values).result()
            if result is None:
                return
            op_name, is_ready = result
            task_id = self._first_entered(self._spawn_callsites)
            async_op_id = self._first_entered(self._async_op_callsites)
            if task_id is None or async_op_id is None:
                return
            async_op = self.spans.get(async_op_id)
            if async_op is not None and isinstance(async_op.stats, AsyncOpStats):
                async_op.stats.set_task_id(task_id)
            self._send(
                self.shared.dropped_async_ops,
                PollOpEvent(
                    metadata=meta,
                    resource_id=resource_id,
                    op_name=op_name,
                    async_op_id=async_op_id,
                    task_id=task_id,
                    is_ready=is_ready,
                ),
            )
            return

        if meta in self._resource_state_update_callsites:
            resource_id = self._first_entered(self._resource_callsites)
            if resource_id is not None:
                self._state_update(resource_id, meta, values, _resource_stats)
            return

        if meta in self._async_op_state_update_callsites:
            async_op_id = self._first_entered(self._async_op_callsites)
            if async_op_id is not None:
                self._state_update(async_op_id, meta, values, _async_op_resource_stats)

    def _state_update(
        self,
        id: int,
        meta: Any,
        values: Any,
        get_stats: Callable[[SpanRecord], Optional[ResourceStats]],
    ) -> None:
        update = record_fields(StateUpdateVisitor(meta_id(meta)), values).result()
        if update is None:
            return
        span = self.spans.get(id)
        if span is None:
            return
        stats = get_stats(span)
        if stats is None:
            return
        stats.update_attribute(id, update)
        if stats.parent_id is None:
            return
        parent = self.spans.get(stats.parent_id)
        if parent is None:
            return
        parent_stats = get_stats(parent)
        if parent_stats is not None and parent_stats.inherit_child_attributes:
            parent_stats.update_attribute(id, update)

    def on_enter(self, id: int) -> None:
        """A span was entered: start polls and push it on this thread's stack."""
        span = self.spans.get(id)
        if span is None:
            return
        now = _poll_update(span, None, starting=True)
        if now is None:
            return
        parent = self.spans.get(span.parent_id) if span.parent_id is not None else None
        if parent is not None:
            _poll_update(parent, now, starting=True)
        self._stack().push(id)
        self._record(lambda: record.EnterRecord(id=id, at=now))

    def on_exit(self, id: int) -> None:
        """A span was exited: end polls and pop it from this thread's stack."""
        span = self.spans.get(id)
        if span is None:
            return
        now = _poll_update(span, None, starting=False)
        if now is None:
            return
        parent = self.spans.get(span.parent_id) if span.parent_id is not None else None
        if parent is not None:
            _poll_update(parent, now, starting=False)
        self._stack().pop(id)
        self._record(lambda: record.ExitRecord(id=id, at=now))

    def on_close(self, id: int) -> None:
        """A span was closed: mark its task, async op or resource dropped."""
        span = self.spans.pop(id, None)
        if span is None:
            return
        now = time.time()
        stats = span.stats
        if isinstance(stats, TaskStats):
            stats.drop_task(now)
        elif isinstance(stats, AsyncOpStats):
            stats.drop_async_op(now)
        elif isinstance(stats, ResourceStats):
            stats.drop_resource(now)
        self._record(lambda: record.CloseRecord(id=id, at=now))

    def close(self) -> None:
        """Finish the recording and close the event channel."""
        if self._closed:
            return
        self._closed = True
        if self._recorder is not None:
            self._recorder.close()
        try:
            self.events.put_nowait(None)
        except queue.Full:
            pass


def _resource_stats(span: SpanRecord) -> Optional[ResourceStats]:
    return span.stats if isinstance(span.stats, ResourceStats) else None


def _async_op_resource_stats(span: SpanRecord) -> Optional[ResourceStats]:
    return span.stats.stats if isinstance(span.stats, AsyncOpStats) else None


def _poll_update(span: SpanRecord, at: Optional[float], starting: bool) -> Optional[float]:
    stats = span.stats
    if isinstance(stats, (TaskStats, AsyncOpStats)):
        at = time.time() if at is None else at
        if starting:
            stats.start_poll(at)
        else:
            stats.end_poll(at)
        return at
    if isinstance(stats, ResourceStats):
        return time.time() if at is None else at
    return None