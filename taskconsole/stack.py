"""Per-thread stack of currently entered spans."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterator


@dataclass(frozen=True)
class ContextId:
    """An entered span id, and whether it was already on the stack."""

    id: int
    duplicate: bool


class SpanStack:
    """Tracks which spans are currently executing."""

    def __init__(self) -> None:
        self._stack: list[ContextId] = []

    def push(self, id: int) -> bool:
        """Enter a span; return ``True`` unless it was already entered."""
        duplicate = any(entry.id == id for entry in self._stack)
        self._stack.append(ContextId(id, duplicate))
        return not duplicate

    def pop(self, expected_id: int) -> bool:
        """Exit the most recent entry of a span; return ``True`` if it was really exited."""
        for index in range(len(self._stack) - 1, -1, -1):
            if self._stack[index].id == expected_id:
                return not self._stack.pop(index).duplicate
        return False

    def __iter__(self) -> Iterator[int]:
        return (entry.id for entry in self._stack if not entry.duplicate)

    def __len__(self) -> int:
        return len(self._stack)

    def entries(self) -> tuple[ContextId, ...]:
        """All entries, duplicates included, from the oldest to the newest."""
        return tuple(self._stack)