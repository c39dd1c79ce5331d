"""Per-id storage of static data and stats, with pruning of closed entries."""

from __future__ import annotations

import enum
import logging
from typing import Any, Dict, Generic, Iterator, Optional, Tuple, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Include(enum.Enum):
    """Which entries to include when building a wire-level snapshot."""

    ALL = "all"
    UPDATED_ONLY = "updated_only"


class IdData(Generic[T]):
    """Data keyed by span id.

    Stored values have ``take_unsent`` and ``is_unsent``; stats passed to
    :meth:`drop_closed` also have ``dropped_at``.
    """

    def __init__(self) -> None:
        self._data: Dict[int, T] = {}

    def insert(self, id: int, data: T) -> None:
        self._data[id] = data

    def since_last_update(self) -> Iterator[Tuple[int, T]]:
        """Yield entries with unsent changes, marking each one as sent."""
        for id, data in list(self._data.items()):
            if data.take_unsent():
                yield id, data

    def all(self) -> Iterator[Tuple[int, T]]:
        return iter(list(self._data.items()))

    def get(self, id: int) -> Optional[T]:
        return self._data.get(id)

    def __contains__(self, id: object) -> bool:
        return id in self._data

    def __len__(self) -> int:
        return len(self._data)

    def as_proto(self, include: Include) -> Dict[int, Any]:
        """Map ids to the wire form of their data."""
        if include is Include.UPDATED_ONLY:
            entries = self.since_last_update()
        elif include is Include.ALL:
            entries = self.all()
        else:
            raise ValueError(f"unknown include mode: {include!r}")
        return {int(id): data.to_proto() for id, data in entries}

    def drop_closed(
        self, stats: IdData, now: float, retention: float, has_watchers: bool
    ) -> None:
        """Remove closed stats past retention, then data whose stats are gone.

        Closed stats with unsent changes are also removed while clients are watching.
        """
        logger.debug(
            "dropping closed (retention=%s, has_watchers=%s)", retention, has_watchers
        )
        kept: Dict[int, Any] = {}
        for id, entry in stats._data.items():
            dropped_at = entry.dropped_at()
            if dropped_at is None:
                kept[id] = entry
                continue
            dropped_for = max(now - dropped_at, 0.0)
            dirty = entry.is_unsent()
            should_drop = (dirty and has_watchers) or dropped_for > retention
            logger.debug(
                "stats %s dropped_at=%s dropped_for=%s dirty=%s should_drop=%s",
                id,
                dropped_at,
                dropped_for,
                dirty,
                should_drop,
            )
            if not should_drop:
                kept[id] = entry
        if len(kept) < len(stats._data):
            logger.debug("dropped %d unused stats", len(stats._data) - len(kept))
        stats._data = kept

        remaining = {id: data for id, data in self._data.items() if id in kept}
        if len(remaining) < len(self._data):
            logger.debug("dropped %d unused entries", len(self._data) - len(remaining))
        self._data = remaining