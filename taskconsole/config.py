"""Configuration for the console layer and its server."""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Union

DEFAULT_EVENT_BUFFER_CAPACITY = 1024 * 100
DEFAULT_CLIENT_BUFFER_CAPACITY = 1024 * 4
DEFAULT_PUBLISH_INTERVAL = 1.0
DEFAULT_RETENTION = 60.0 * 60.0
DEFAULT_IP = "127.0.0.1"
DEFAULT_PORT = 6669


@dataclass(frozen=True)
class ConsoleConfig:
    """Immutable settings; the ``with_*`` methods return modified copies.

    Intervals and retention are in seconds.
    """

    event_buffer_capacity: int = DEFAULT_EVENT_BUFFER_CAPACITY
    client_buffer_capacity: int = DEFAULT_CLIENT_BUFFER_CAPACITY
    publish_interval: float = DEFAULT_PUBLISH_INTERVAL
    retention: float = DEFAULT_RETENTION
    server_addr: tuple = (DEFAULT_IP, DEFAULT_PORT)
    recording_path: Optional[Path] = None

    def __post_init__(self) -> None:
        if self.event_buffer_capacity <= 0:
            raise ValueError("event buffer capacity must be positive")
        if self.client_buffer_capacity <= 0:
            raise ValueError("client buffer capacity must be positive")
        if self.publish_interval <= 0:
            raise ValueError("publish interval must be positive")
        if self.retention < 0:
            raise ValueError("retention cannot be negative")

    def with_event_buffer_capacity(self, capacity: int) -> ConsoleConfig:
        return dataclasses.replace(self, event_buffer_capacity=capacity)

    def with_client_buffer_capacity(self, capacity: int) -> ConsoleConfig:
        return dataclasses.replace(self, client_buffer_capacity=capacity)

    def with_publish_interval(self, interval: float) -> ConsoleConfig:
        return dataclasses.replace(self, publish_interval=interval)

    def with_retention(self, retention: float) -> ConsoleConfig:
        return dataclasses.replace(self, retention=retention)

    def with_server_addr(self, addr: tuple) -> ConsoleConfig:
        host, port = addr
        return dataclasses.replace(self, server_addr=(str(host), int(port)))

    def with_recording_path(self, path: Union[str, Path]) -> ConsoleConfig:
        return dataclasses.replace(self, recording_path=Path(path))

    def flush_under_capacity(self) -> int:
        """Remaining channel capacity below which a flush is triggered: half the buffer."""
        return self.event_buffer_capacity // 2