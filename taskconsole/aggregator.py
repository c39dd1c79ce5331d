"""Aggregation of layer events into state updates published to watching clients."""

from __future__ import annotations

import asyncio
import enum
import logging
import queue
import time
from dataclasses import dataclass, field
from typing import Any, Optional

from taskconsole.events import (
    AsyncResourceOpEvent,
    InstrumentCommand,
    MetadataEvent,
    PauseCommand,
    PollOpEvent,
    ResourceEvent,
    ResumeCommand,
    Shared,
    SpawnEvent,
    Watch,
    WatchRequest,
    WatchTaskDetailCommand,
)
from taskconsole.id_data import IdData, Include
from taskconsole.proto import (
    AsyncOp,
    AsyncOpUpdate,
    Id,
    Location,
    Metadata,
    PollOp,
    RegisterMetadata,
    Resource,
    ResourceKind,
    ResourceUpdate,
    Task,
    TaskDetails,
    TaskKind,
    TaskUpdate,
    Update,
    meta_id,
    new_metadata,
)

logger = logging.getLogger(__name__)


class EventsClosed(Exception):
    """The event channel was closed; no more events will arrive."""


class Temporality(enum.Enum):
    """Whether updates are being published or held back."""

    LIVE = "live"
    PAUSED = "paused"


class _Dirty:
    """Mixin for static data that is sent once, when first seen."""

    dirty: bool

    def take_unsent(self) -> bool:
        dirty, self.dirty = self.dirty, False
        return dirty

    def is_unsent(self) -> bool:
        return self.dirty


@dataclass
class TaskData(_Dirty):
    """Static data of a spawned task."""

    id: int
    metadata: Metadata
    fields: tuple = ()
    location: Optional[Location] = None
    dirty: bool = field(default=True, repr=False)

    def to_proto(self) -> Task:
        return Task(
            id=Id(self.id),
            metadata=meta_id(self.metadata),
            kind=TaskKind.SPAWN,
            fields=list(self.fields),
            parents=[],
            location=self.location,
        )

    def take_unsent(self) -> bool:
        return _Dirty.take_unsent(self)

    def is_unsent(self) -> bool:
        return _Dirty.is_unsent(self)


@dataclass
class ResourceData(_Dirty):
    """Static data of a resource."""

    id: int
    metadata: Metadata
    concrete_type: str
    kind: ResourceKind
    parent_id: Optional[int] = None
    location: Optional[Location] = None
    is_internal: bool = False
    dirty: bool = field(default=True, repr=False)

    def to_proto(self) -> Resource:
        return Resource(
            id=Id(self.id),
            kind=self.kind,
            metadata=meta_id(self.metadata),
            concrete_type=self.concrete_type,
            parent_resource_id=Id(self.parent_id) if self.parent_id is not None else None,
            location=self.location,
            is_internal=self.is_internal,
        )

    def take_unsent(self) -> bool:
        return _Dirty.take_unsent(self)

    def is_unsent(self) -> bool:
        return _Dirty.is_unsent(self)


@dataclass
class AsyncOpData(_Dirty):
    """Static data of an async operation on a resource."""

    id: int
    resource_id: int
    metadata: Metadata
    source: str
    parent_id: Optional[int] = None
    dirty: bool = field(default=True, repr=False)

    def to_proto(self) -> AsyncOp:
        return AsyncOp(
            id=Id(self.id),
            resource_id=Id(self.resource_id),
            source=self.source,
            metadata=meta_id(self.metadata),
            parent_async_op_id=Id(self.parent_id) if self.parent_id is not None else None,
        )

    def take_unsent(self) -> bool:
        return _Dirty.take_unsent(self)

    def is_unsent(self) -> bool:
        return _Dirty.is_unsent(self)


class Aggregator:
    """Collects events from the layer and publishes state to watching clients.

    ``events`` is a queue filled by the layer (``queue.Queue`` or
    ``asyncio.Queue``); ``rpcs`` is an ``asyncio.Queue`` of client commands.
    A ``None`` item in either one means that it has been closed.
    Intervals are in seconds.
    """

    def __init__(
        self,
        events: Any,
        rpcs: asyncio.Queue,
        shared: Shared,
        publish_interval: float,
        retention: float,
    ) -> None:
        if publish_interval <= 0:
            raise ValueError("publish interval must be positive")
        self._events = events
        self._rpcs = rpcs
        self.shared = shared
        self.publish_interval = publish_interval
        self.retention = retention
        self.watchers: list[Watch] = []
        self.details_watchers: dict[int, list[Watch]] = {}
        self.all_metadata: list = []
        self.new_metadata: list = []
        self.tasks: IdData[TaskData] = IdData()
        self.task_stats: IdData = IdData()
        self.resources: IdData[ResourceData] = IdData()
        self.resource_stats: IdData = IdData()
        self.async_ops: IdData[AsyncOpData] = IdData()
        self.async_op_stats: IdData = IdData()
        self.all_poll_ops: list[PollOp] = []
        self.new_poll_ops: list[PollOp] = []
        self.temporality = Temporality.LIVE

    async def run(self) -> None:
        """Aggregate and publish until the command or event channel closes."""
        loop = asyncio.get_running_loop()
        next_tick = loop.time()
        rpc_task: Optional[asyncio.Future] = None
        flush_task: Optional[asyncio.Future] = None
        try:
            while True:
                if rpc_task is None:
                    rpc_task = asyncio.ensure_future(self._rpcs.get())
                if flush_task is None:
                    flush_task = asyncio.ensure_future(self.shared.flush.notified())
                timeout = max(next_tick - loop.time(), 0.0)
                done, _ = await asyncio.wait(
                    {rpc_task, flush_task},
                    timeout=timeout,
                    return_when=asyncio.FIRST_COMPLETED,
                )

                should_send = False
                now = loop.time()
                if now >= next_tick:
                    should_send = self.temporality is Temporality.LIVE
                    next_tick += self.publish_interval
                    if next_tick <= now:
                        next_tick = now + self.publish_interval

                if flush_task in done:
                    flush_task = None
                    logger.debug("approaching capacity; draining buffer")

                if rpc_task in done:
                    command = rpc_task.result()
                    rpc_task = None
                    if command is None:
                        logger.debug("rpc channel closed, terminating")
                        return
                    self.handle_command(command)

                try:
                    drained = self.drain_events()
                except EventsClosed:
                    logger.debug("event channel closed; terminating")
                    return

                if self.watchers and should_send:
                    self.publish()
                self.cleanup_closed()
                if drained:
                    self.shared.flush.has_flushed()
        finally:
            for task in (rpc_task, flush_task):
                if task is not None and not task.done():
                    task.cancel()

    def handle_command(self, command: Any) -> None:
        """Apply one client command."""
        if isinstance(command, InstrumentCommand):
            self.add_instrument_subscription(command.watch)
        elif isinstance(command, WatchTaskDetailCommand):
            self.add_task_detail_subscription(command.request)
        elif isinstance(command, PauseCommand):
            self.temporality = Temporality.PAUSED
        elif isinstance(command, ResumeCommand):
            self.temporality = Temporality.LIVE
        else:
            raise TypeError(f"unknown command: {type(command).__name__}")

    def drain_events(self) -> int:
        """Apply every event that is ready now; return how many were applied.

        Raises :class:`EventsClosed` once the channel's close marker is reached.
        """
        count = 0
        while True:
            try:
                event = self._events.get_nowait()
            except (queue.Empty, asyncio.QueueEmpty):
                return count
            if event is None:
                raise EventsClosed("event channel closed")
            self.update_state(event)
            count += 1

    def cleanup_closed(self) -> None:
        """Drop closed entities whose retention has passed or whose final data was sent."""
        now = time.time()
        has_watchers = bool(self.watchers)
        self.tasks.drop_closed(self.task_stats, now, self.retention, has_watchers)
        self.resources.drop_closed(self.resource_stats, now, self.retention, has_watchers)
        self.async_ops.drop_closed(self.async_op_stats, now, self.retention, has_watchers)

    def add_instrument_subscription(self, subscription: Watch) -> None:
        """Send the full current state and keep the watch if it accepted it."""
        logger.debug("new instrument subscription")
        update = Update(
            task_update=TaskUpdate(
                new_tasks=[data.to_proto() for _, data in self.tasks.all()],
                stats_update=self.task_stats.as_proto(Include.ALL),
                dropped_events=self.shared.dropped_tasks.take(),
            ),
            resource_update=ResourceUpdate(
                new_resources=[data.to_proto() for _, data in self.resources.all()],
                stats_update=self.resource_stats.as_proto(Include.ALL),
                new_poll_ops=list(self.all_poll_ops),
                dropped_events=self.shared.dropped_resources.take(),
            ),
            async_op_update=AsyncOpUpdate(
                new_async_ops=[data.to_proto() for _, data in self.async_ops.all()],
                stats_update=self.async_op_stats.as_proto(Include.ALL),
                dropped_events=self.shared.dropped_async_ops.take(),
            ),
            now=time.time(),
            new_metadata=RegisterMetadata(metadata=list(self.all_metadata)),
        )
        if subscription.update(update):
            self.watchers.append(subscription)

    def add_task_detail_subscription(self, watch_request: WatchRequest) -> None:
        """Start streaming a task's details, or reject the request if it is unknown."""
        id = watch_request.id
        logger.debug("new task details subscription for %s", id)
        stats = self.task_stats.get(id)
        if stats is None:
            watch_request.reject()
            return
        subscription = Watch(watch_request.buffer)
        details = TaskDetails(
            task_id=Id(id),
            now=time.time(),
            poll_times_histogram=stats.serialize_histogram(),
        )
        if watch_request.send(subscription) and subscription.update(details):
            self.details_watchers.setdefault(id, []).append(subscription)

    def publish(self) -> None:
        """Send what changed since the last update; drop watchers that cannot keep up."""
        metadata = None
        if self.new_metadata:
            metadata = RegisterMetadata(metadata=self.new_metadata)
            self.new_metadata = []
        poll_ops, self.new_poll_ops = self.new_poll_ops, []

        now = time.time()
        update = Update(
            now=now,
            new_metadata=metadata,
            task_update=TaskUpdate(
                new_tasks=[data.to_proto() for _, data in self.tasks.since_last_update()],
                stats_update=self.task_stats.as_proto(Include.UPDATED_ONLY),
                dropped_events=self.shared.dropped_tasks.take(),
            ),
            resource_update=ResourceUpdate(
                new_resources=[
                    data.to_proto() for _, data in self.resources.since_last_update()
                ],
                stats_update=self.resource_stats.as_proto(Include.UPDATED_ONLY),
                new_poll_ops=poll_ops,
                dropped_events=self.shared.dropped_resources.take(),
            ),
            async_op_update=AsyncOpUpdate(
                new_async_ops=[
                    data.to_proto() for _, data in self.async_ops.since_last_update()
                ],
                stats_update=self.async_op_stats.as_proto(Include.UPDATED_ONLY),
                dropped_events=self.shared.dropped_async_ops.take(),
            ),
        )

        self.watchers = [watch for watch in self.watchers if watch.update(update)]

        remaining: dict[int, list[Watch]] = {}
        for id, watchers in self.details_watchers.items():
            stats = self.task_stats.get(id)
            if stats is None:
                continue
            details = TaskDetails(
                task_id=Id(id),
                now=now,
                poll_times_histogram=stats.serialize_histogram(),
            )
            alive = [watch for watch in watchers if watch.update(details)]
            if alive:
                remaining[id] = alive
        self.details_watchers = remaining

    def update_state(self, event: Any) -> None:
        """Fold a single event into the aggregated state."""
        if isinstance(event, MetadataEvent):
            self.all_metadata.append(new_metadata(event.metadata))
            self.new_metadata.append(new_metadata(event.metadata))
        elif isinstance(event, SpawnEvent):
            self.tasks.insert(
                event.id,
                TaskData(
                    id=event.id,
                    metadata=event.metadata,
                    fields=tuple(event.fields),
                    location=event.location,
                ),
            )
            self.task_stats.insert(event.id, event.stats)
        elif isinstance(event, ResourceEvent):
            self.resources.insert(
                event.id,
                ResourceData(
                    id=event.id,
                    metadata=event.metadata,
                    concrete_type=event.concrete_type,
                    kind=event.kind,
                    parent_id=event.parent_id,
                    location=event.location,
                    is_internal=event.is_internal,
                ),
            )
            self.resource_stats.insert(event.id, event.stats)
        elif isinstance(event, PollOpEvent):
            poll_op = PollOp(
                metadata=meta_id(event.metadata),
                resource_id=Id(event.resource_id),
                name=event.op_name,
                task_id=Id(event.task_id),
                async_op_id=Id(event.async_op_id),
                is_ready=event.is_ready,
            )
            self.all_poll_ops.append(poll_op)
            self.new_poll_ops.append(poll_op)
        elif isinstance(event, AsyncResourceOpEvent):
            self.async_ops.insert(
                event.id,
                AsyncOpData(
                    id=event.id,
                    resource_id=event.resource_id,
                    metadata=event.metadata,
                    source=event.source,
                    parent_id=event.parent_id,
                ),
            )
            self.async_op_stats.insert(event.id, event.stats)
        else:
            raise TypeError(f"unknown event: {type(event).__name__}")