from __future__ import annotations

from typing import Iterable, Iterator

from .types import EventRecord


class ReadyQueue:
    """In-memory FIFO of records waiting for the next flush.

    Producers only append. Removal is by record identity (``event_id``), so a
    snapshot taken before a network call can be removed exactly even when
    new records were appended while the call was in flight.
    """

    def __init__(self) -> None:
        self._items: list[EventRecord] = []

    @property
    def size(self) -> int:
        return len(self._items)

    def append(self, record: EventRecord) -> None:
        self._items.append(record)

    def snapshot(self, limit: int) -> list[EventRecord]:
        """Copy of the ``limit`` oldest records; the queue is left untouched."""
        if limit <= 0:
            return []
        return list(self._items[:limit])

    def remove(self, records: Iterable[EventRecord]) -> int:
        """Remove the given records by identity; returns how many were present."""
        ids = {r.event_id for r in records}
        if not ids:
            return 0
        before = len(self._items)
        self._items = [r for r in self._items if r.event_id not in ids]
        return before - len(self._items)

    def take(self, records: Iterable[EventRecord]) -> list[EventRecord]:
        """Remove the given records by identity and return those that were present, in queue order."""
        ids = {r.event_id for r in records}
        taken = [r for r in self._items if r.event_id in ids]
        if taken:
            self._items = [r for r in self._items if r.event_id not in ids]
        return taken

    def drain_all(self) -> list[EventRecord]:
        """Remove and return every record, oldest first."""
        items, self._items = self._items, []
        return items

    def clear(self) -> None:
        self._items.clear()

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self) -> Iterator[EventRecord]:
        return iter(list(self._items))
