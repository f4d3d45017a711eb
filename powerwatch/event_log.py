"""
Bounded, newest-first event log. Oldest entries fall off once max_events is exceeded.
"""
import itertools
import logging
from datetime import datetime
from typing import Iterable, Optional

from powerwatch.models import Event
from powerwatch.storage import StorageAdapter

logger = logging.getLogger("powerwatch.events")

DEFAULT_MAX_EVENTS = 1000


class EventIdGenerator:
    """
    Ids look like "<epoch-ms>-<seq>". seq grows by one per id for the whole process,
    so two events in the same millisecond still differ and ids follow generation order.
    """

    def __init__(self, start: int = 1) -> None:
        self._seq = itertools.count(start)

    @staticmethod
    def sequence_of(event_id: str) -> Optional[int]:
        _, sep, tail = event_id.rpartition("-")
        if not sep or not tail.isdigit():
            return None
        return int(tail)

    @classmethod
    def after(cls, events: Iterable[Event]) -> "EventIdGenerator":
        """Generator that continues past the highest sequence seen in `events`."""
        seqs = [s for s in (cls.sequence_of(e.id) for e in events) if s is not None]
        return cls(start=max(seqs, default=0) + 1)

    def __call__(self, now: datetime) -> str:
        return f"{int(now.timestamp() * 1000)}-{next(self._seq)}"


class EventLog:
    def __init__(self, storage: StorageAdapter, max_events: int = DEFAULT_MAX_EVENTS) -> None:
        if max_events < 1:
            raise ValueError("max_events must be >= 1")
        self._storage = storage
        self.max_events = max_events
        self._events: list[Event] = []  # newest first

    def __len__(self) -> int:
        return len(self._events)

    def load(self, events: list[Event]) -> None:
        """Replace contents with already-persisted events (newest first)."""
        self._events = list(events[: self.max_events])

    async def append(self, event: Event) -> None:
        """Memory is updated (and trimmed) before storage is touched."""
        self._events.insert(0, event)
        overflow = len(self._events) > self.max_events
        if overflow:
            del self._events[self.max_events:]
        await self._storage.append_event(event)
        if overflow:
            await self._storage.trim_events(self.max_events)
            logger.debug("Event log at %d, oldest dropped", self.max_events)

    def recent(self, n: int) -> list[Event]:
        if n <= 0:
            return []
        return self._events[:n]

    def all(self) -> list[Event]:
        return list(self._events)
