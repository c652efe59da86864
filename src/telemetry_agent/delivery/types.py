from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Mapping, Optional, Sequence

from ..utils import content_hash, generate_id, iso_timestamp

SCHEMA_VERSION = 1

NetworkCallback = Callable[["NetworkChange"], Awaitable[None]]


@dataclass(frozen=True)
class EventRecord:
    """A deduplicated event waiting for delivery.

    ``event_id`` is the record's identity inside the queues; ``content_hash``
    is its identity for duplicate suppression.
    """

    name: str
    payload: dict
    content_hash: str
    created_at: float
    event_id: str = field(default_factory=lambda: generate_id().replace("-", ""))

    @classmethod
    def create(
        cls,
        name: str,
        payload: dict,
        *,
        created_at: float,
        event_time: float | None = None,
    ) -> EventRecord:
        """Build a record.

        A producer-supplied ``event_time`` is part of the content hash, so a
        resent event hashes the same. Without it the hash covers name and
        payload only and the duplicate filter applies its time window.
        """
        ts_ms = None if event_time is None else int(event_time * 1000)
        return cls(
            name=name,
            payload=payload,
            content_hash=content_hash(name, ts_ms, payload),
            created_at=created_at,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "eventId": self.event_id,
            "eventName": self.name,
            "eventData": self.payload,
            "contentHash": self.content_hash,
            "timestamp": iso_timestamp(self.created_at),
            "createdAt": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> EventRecord:
        return cls(
            name=data["eventName"],
            payload=dict(data.get("eventData") or {}),
            content_hash=data["contentHash"],
            created_at=float(data["createdAt"]),
            event_id=data["eventId"],
        )


@dataclass(frozen=True)
class BatchEnvelope:
    """Events sent together in one network call."""

    events: tuple[EventRecord, ...]
    created_at: float
    batch_id: str = field(default_factory=generate_id)

    @classmethod
    def of(cls, events: Sequence[EventRecord], created_at: float) -> BatchEnvelope:
        return cls(events=tuple(events), created_at=created_at)

    def __len__(self) -> int:
        return len(self.events)

    def to_wire(self) -> dict[str, Any]:
        """JSON-serializable body posted to the ingestion endpoint."""
        return {
            "events": [e.to_dict() for e in self.events],
            "batchId": self.batch_id,
            "timestamp": iso_timestamp(self.created_at),
            "schemaVersion": SCHEMA_VERSION,
        }


@dataclass(frozen=True)
class NetworkStatus:
    is_online: bool = True
    last_offline_at: Optional[float] = None
    last_online_at: Optional[float] = None


@dataclass(frozen=True)
class NetworkChange:
    """Published by NetworkMonitor on every online/offline transition."""

    status: NetworkStatus
    previous: NetworkStatus

    @property
    def restored(self) -> bool:
        return self.status.is_online and not self.previous.is_online


class FlushOutcome(str, Enum):
    """What a flush or drain pass achieved."""

    DELIVERED = "delivered"
    EMPTY = "empty"  # nothing to send
    OFFLINE = "offline"  # moved to offline store without a network call
    FAILED = "failed"  # dispatch exhausted, records stored offline
    RATE_LIMITED = "rate_limited"  # server asked us to wait


@dataclass(frozen=True)
class FlushResult:
    """Outcome of ``flush()``.

    A non-ok result means "no delivery guarantee", never a fatal condition.
    """

    outcome: FlushOutcome
    sent: int = 0
    stored: int = 0

    @property
    def ok(self) -> bool:
        return self.outcome in (FlushOutcome.DELIVERED, FlushOutcome.EMPTY)


@dataclass(frozen=True)
class TransportResponse:
    status_code: int
    headers: Mapping[str, str] = field(default_factory=dict)

    @property
    def is_success(self) -> bool:
        return 200 <= self.status_code < 300

    def header(self, name: str) -> Optional[str]:
        lname = name.lower()
        for k, v in self.headers.items():
            if k.lower() == lname:
                return v
        return None


class Transport(ABC):
    """Network primitive used by the dispatcher and the unload guard."""

    @abstractmethod
    async def send(
        self, endpoint: str, body: dict[str, Any], headers: Mapping[str, str]
    ) -> TransportResponse:
        """POST one envelope. Raise on network errors; return the status otherwise."""
        ...

    def beacon(
        self,
        endpoint: str,
        body: dict[str, Any],
        headers: Mapping[str, str],
        on_delivered: Optional[Callable[[], None]] = None,
    ) -> bool:
        """Fire-and-forget delivery that never waits for a response.

        Returns True if the request was handed off. ``on_delivered`` is called
        (possibly from another thread) once the endpoint answered 2xx.
        Transports without such a primitive return False.
        """
        return False

    async def aclose(self) -> None:
        pass
