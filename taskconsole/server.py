"""The client-facing side of the console: watches, task details, pause and resume."""

from __future__ import annotations

import asyncio
from typing import Any, Optional

from taskconsole.aggregator import Aggregator
from taskconsole.events import (
    InstrumentCommand,
    PauseCommand,
    ResumeCommand,
    Watch,
    WatchRequest,
    WatchTaskDetailCommand,
)

INTERNAL = "internal"
INVALID_ARGUMENT = "invalid_argument"
NOT_FOUND = "not_found"


class StatusError(Exception):
    """A request failed; ``code`` says how."""

    def __init__(self, code: str, message: str) -> None:
        super().__init__(f"{code}: {message}")
        self.code = code
        self.message = message


class Server:
    """Hands clients update streams fed by the aggregator.

    ``subscribe`` is the command queue read by ``aggregator``.
    """

    DEFAULT_IP = "127.0.0.1"
    DEFAULT_PORT = 6669

    def __init__(
        self,
        subscribe: asyncio.Queue,
        addr: Any,
        aggregator: Optional[Aggregator],
        client_buffer: int,
    ) -> None:
        self._subscribe = subscribe
        self.addr = addr
        self._aggregator = aggregator
        self.client_buffer = client_buffer
        self._stopped = False

    async def serve(self) -> None:
        """Run the event aggregation until its channels close."""
        aggregator, self._aggregator = self._aggregator, None
        if aggregator is None:
            raise RuntimeError("cannot start server multiple times")
        try:
            await aggregator.run()
        finally:
            self._stopped = True

    def _ensure_running(self, message: str) -> None:
        if self._stopped:
            raise StatusError(INTERNAL, message)

    async def watch_updates(self) -> Watch:
        """Start a stream of state updates; the first one holds the full state."""
        self._ensure_running("cannot start new watch, aggregation task is not running")
        watch = Watch(self.client_buffer)
        await self._subscribe.put(InstrumentCommand(watch))
        return watch

    async def watch_task_details(self, task_id: Optional[int]) -> Watch:
        """Start a stream of details about one task."""
        if task_id is None:
            raise StatusError(INVALID_ARGUMENT, "missing task_id")
        task_id = int(task_id)
        if task_id == 0:
            raise StatusError(INVALID_ARGUMENT, "task_id cannot be 0")
        self._ensure_running("cannot start new watch, aggregation task is not running")
        stream = asyncio.get_running_loop().create_future()
        request = WatchRequest(id=task_id, stream=stream, buffer=self.client_buffer)
        await self._subscribe.put(WatchTaskDetailCommand(request))
        try:
            return await stream
        except LookupError:
            raise StatusError(NOT_FOUND, "task not found") from None

    async def pause(self) -> None:
        """Stop publishing updates until resumed."""
        self._ensure_running("cannot pause, aggregation task is not running")
        await self._subscribe.put(PauseCommand())

    async def resume(self) -> None:
        """Publish updates again."""
        self._ensure_running("cannot resume, aggregation task is not running")
        await self._subscribe.put(ResumeCommand())