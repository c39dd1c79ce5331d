"""Events sent from the layer to the aggregator, client commands, and shared state."""

from __future__ import annotations

import asyncio
import copy
import threading
from dataclasses import dataclass, field
from typing import Any, Optional

from taskconsole.proto import Location, Metadata, ResourceKind
from taskconsole.stats import AsyncOpStats, ResourceStats, TaskStats


@dataclass(frozen=True)
class MetadataEvent:
    """A callsite was registered."""

    metadata: Metadata


@dataclass(frozen=True)
class SpawnEvent:
    """A task was spawned."""

    id: int
    metadata: Metadata
    stats: TaskStats
    fields: tuple = ()
    location: Optional[Location] = None


@dataclass(frozen=True)
class ResourceEvent:
    """A resource was created."""

    id: int
    parent_id: Optional[int]
    metadata: Metadata
    concrete_type: str
    kind: ResourceKind
    location: Optional[Location]
    is_internal: bool
    stats: ResourceStats


@dataclass(frozen=True)
class PollOpEvent:
    """A poll operation was invoked on a resource."""

    metadata: Metadata
    resource_id: int
    op_name: str
    async_op_id: int
    task_id: int
    is_ready: bool


@dataclass(frozen=True)
class AsyncResourceOpEvent:
    """An async operation on a resource was created."""

    id: int
    parent_id: Optional[int]
    resource_id: int
    metadata: Metadata
    source: str
    stats: AsyncOpStats


class Watch:
    """A bounded stream of updates to one client."""

    def __init__(self, capacity: int) -> None:
        if capacity <= 0:
            raise ValueError("watch capacity must be positive")
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=capacity)
        self._closed = False

    def update(self, update: Any) -> bool:
        """Queue a copy of ``update``; return ``False`` if the client is gone or lagging."""
        if self._closed:
            return False
        try:
            self._queue.put_nowait(copy.copy(update))
        except asyncio.QueueFull:
            return False
        return True

    def close(self) -> None:
        """Mark the receiving side as gone."""
        self._closed = True

    @property
    def closed(self) -> bool:
        return self._closed

    def __len__(self) -> int:
        return self._queue.qsize()

    async def get(self) -> Any:
        """Wait for the next update."""
        return await self._queue.get()

    def get_nowait(self) -> Any:
        """Return the next queued update; raises ``asyncio.QueueEmpty`` if there is none."""
        return self._queue.get_nowait()


@dataclass
class WatchRequest:
    """A request to watch one task's details; the answer is delivered through ``stream``."""

    id: int
    stream: asyncio.Future
    buffer: int

    def send(self, watch: Watch) -> bool:
        """Deliver the stream to the requester; ``False`` if it no longer waits."""
        if self.stream.done():
            return False
        self.stream.set_result(watch)
        return True

    def reject(self) -> None:
        """Tell the requester that the task was not found."""
        if not self.stream.done():
            self.stream.set_exception(LookupError(f"task {self.id} not found"))


@dataclass(frozen=True)
class InstrumentCommand:
    watch: Watch


@dataclass(frozen=True)
class WatchTaskDetailCommand:
    request: WatchRequest


@dataclass(frozen=True)
class PauseCommand:
    pass


@dataclass(frozen=True)
class ResumeCommand:
    pass


class Flush:
    """Tells the aggregator, from any thread, that the event buffer should be drained."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._triggered = False
        self._permit = False
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._event: Optional[asyncio.Event] = None

    def trigger(self) -> None:
        """Request a flush unless one is already pending."""
        with self._lock:
            if self._triggered:
                return
            self._triggered = True
            self._notify_locked()

    def _notify_locked(self) -> None:
        if self._event is None or self._loop is None:
            self._permit = True
            return
        try:
            self._loop.call_soon_threadsafe(self._event.set)
        except RuntimeError:
            self._permit = True

    def has_flushed(self) -> None:
        """Record that the buffer was drained."""
        with self._lock:
            self._triggered = False

    def is_triggered(self) -> bool:
        with self._lock:
            return self._triggered

    async def notified(self) -> None:
        """Wait until a flush is requested."""
        with self._lock:
            if self._permit:
                self._permit = False
                return
            loop = asyncio.get_running_loop()
            if self._event is None or self._loop is not loop:
                self._loop = loop
                self._event = asyncio.Event()
            event = self._event
        await event.wait()
        event.clear()


class _Counter:
    """A thread-safe counter that can be read and reset at once."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._value = 0

    def increment(self) -> None:
        with self._lock:
            self._value += 1

    def take(self) -> int:
        """Return the count and reset it to zero."""
        with self._lock:
            value, self._value = self._value, 0
            return value

    @property
    def value(self) -> int:
        return self._value


@dataclass
class Shared:
    """State shared between the layer and the aggregator."""

    flush: Flush = field(default_factory=Flush)
    dropped_tasks: _Counter = field(default_factory=_Counter)
    dropped_async_ops: _Counter = field(default_factory=_Counter)
    dropped_resources: _Counter = field(default_factory=_Counter)