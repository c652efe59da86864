"""
Durable store for events that could not be delivered.

Records are kept in order in memory and mirrored to a backend after every
mutation. The file backend writes NDJSON (one record per line) so a store
survives restarts; if the backend fails the store degrades to memory-only
and keeps working.
"""

from __future__ import annotations

import json
import os
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Iterable, Optional

from loguru import logger

from ..errors import StorageError
from ..metrics import metrics_registry as m
from .types import EventRecord


class OfflineBackend(ABC):
    """Persistence for the offline store's record list."""

    @abstractmethod
    def load(self) -> list[dict]:
        ...

    @abstractmethod
    def save(self, rows: list[dict]) -> None:
        ...

    @abstractmethod
    def clear(self) -> None:
        ...


class MemoryBackend(OfflineBackend):
    """Process-local backend; also the fallback after storage failures."""

    def __init__(self) -> None:
        self._rows: list[dict] = []

    def load(self) -> list[dict]:
        return list(self._rows)

    def save(self, rows: list[dict]) -> None:
        self._rows = list(rows)

    def clear(self) -> None:
        self._rows = []


class FileBackend(OfflineBackend):
    """NDJSON file rewritten atomically (temp file + ``os.replace``)."""

    def __init__(self, path: str | os.PathLike, mkdirs: bool = True, encoding: str = "utf-8"):
        self.path = Path(path)
        self.encoding = encoding
        if mkdirs:
            self.path.parent.mkdir(parents=True, exist_ok=True)

    def load(self) -> list[dict]:
        if not self.path.exists():
            return []
        rows: list[dict] = []
        try:
            with open(self.path, "r", encoding=self.encoding) as f:
                for lineno, line in enumerate(f, 1):
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        rows.append(json.loads(line))
                    except json.JSONDecodeError:
                        logger.warning(f"Skipping unreadable offline record {self.path}:{lineno}")
        except OSError as exc:
            raise StorageError(f"cannot read {self.path}: {exc}") from exc
        return rows

    def save(self, rows: list[dict]) -> None:
        tmp = self.path.with_name(self.path.name + ".tmp")
        try:
            with open(tmp, "w", encoding=self.encoding) as f:
                for row in rows:
                    f.write(json.dumps(row, default=str) + "\n")
            os.replace(tmp, self.path)
        except (OSError, TypeError, ValueError) as exc:
            raise StorageError(f"cannot write {self.path}: {exc}") from exc

    def clear(self) -> None:
        try:
            self.path.unlink(missing_ok=True)
        except OSError as exc:
            raise StorageError(f"cannot remove {self.path}: {exc}") from exc


class OfflineStore:
    """Bounded, ordered, durable list of undelivered records.

    Overflow evicts the oldest records first; the order of the rest is kept.
    """

    def __init__(
        self,
        max_size: int = 100,
        backend: Optional[OfflineBackend] = None,
        *,
        agent_id: str = "default",
    ):
        if max_size <= 0:
            raise ValueError("max_size must be > 0")
        self._max_size = max_size
        self._backend = backend or MemoryBackend()
        self._agent_id = agent_id
        self._degraded = False
        self._records: list[EventRecord] = []
        # beacon confirmations remove records from a worker thread
        self._lock = threading.RLock()
        self._load()

    # ---------- state

    @property
    def max_size(self) -> int:
        return self._max_size

    @property
    def degraded(self) -> bool:
        """True once persistence failed and the store went memory-only."""
        return self._degraded

    @property
    def backend(self) -> OfflineBackend:
        return self._backend

    def records(self) -> list[EventRecord]:
        with self._lock:
            return list(self._records)

    def __len__(self) -> int:
        return len(self._records)

    # ---------- mutation

    def extend(self, records: Iterable[EventRecord]) -> int:
        """Append ``records`` in order, evict overflow, persist. Returns evictions."""
        records = list(records)
        if not records:
            return 0
        with self._lock:
            self._records.extend(records)
            m.events_stored_offline_total.labels(agent=self._agent_id).inc(len(records))
            evicted = self._trim()
            self._persist()
        logger.debug(f"Stored {len(records)} events offline (total={len(self._records)})")
        return evicted

    def peek(self, limit: int) -> list[EventRecord]:
        """Oldest ``limit`` records without removing them."""
        with self._lock:
            return list(self._records[: max(0, limit)])

    def remove(self, records: Iterable[EventRecord]) -> int:
        """Remove records by identity and persist the remainder."""
        ids = {r.event_id for r in records}
        if not ids:
            return 0
        with self._lock:
            before = len(self._records)
            self._records = [r for r in self._records if r.event_id not in ids]
            removed = before - len(self._records)
            if removed:
                self._persist()
        return removed

    def clear(self) -> None:
        with self._lock:
            self._records = []
            self._persist()

    # ---------- internals

    def _trim(self) -> int:
        overflow = len(self._records) - self._max_size
        if overflow <= 0:
            return 0
        del self._records[:overflow]
        m.offline_evicted_total.labels(agent=self._agent_id).inc(overflow)
        logger.warning(
            f"Offline store full (max={self._max_size}), evicted {overflow} oldest events"
        )
        return overflow

    def _load(self) -> None:
        try:
            rows = self._backend.load()
        except StorageError as exc:
            self._degrade(exc)
            return

        for row in rows:
            try:
                self._records.append(EventRecord.from_dict(row))
            except (KeyError, TypeError, ValueError) as exc:
                logger.warning(f"Dropping malformed offline record: {type(exc).__name__}: {exc}")
        if self._trim():
            self._persist()
        if self._records:
            logger.info(f"Loaded {len(self._records)} offline events")
        self._update_gauge()

    def _persist(self) -> None:
        try:
            if self._records:
                self._backend.save([r.to_dict() for r in self._records])
            else:
                self._backend.clear()
        except StorageError as exc:
            self._degrade(exc)
            self._backend.save([r.to_dict() for r in self._records])
        finally:
            self._update_gauge()

    def _degrade(self, exc: StorageError) -> None:
        logger.warning(f"Offline storage unavailable, continuing memory-only: {exc}")
        self._backend = MemoryBackend()
        self._degraded = True

    def _update_gauge(self) -> None:
        m.offline_queue_depth.labels(agent=self._agent_id).set(len(self._records))
