"""Event delivery pipeline

Producer → dedup → priority → ready queue → flush coordinator → dispatcher:
- DuplicateFilter (bounded content-hash window)
- PriorityClassifier (critical / high / normal)
- ReadyQueue (snapshot + removal by identity)
- Dispatcher with endpoint failover, backoff and rate-limit handling
- OfflineStore (bounded, NDJSON-backed, memory fallback)
- FlushCoordinator (single-flight flush and offline drain)
- NetworkMonitor (online/offline signals)
- UnloadGuard (fire-and-forget delivery on teardown)
"""

from .types import (
    EventRecord,
    BatchEnvelope,
    NetworkStatus,
    NetworkChange,
    FlushOutcome,
    FlushResult,
    Transport,
    TransportResponse,
)
from .dedup import DuplicateFilter
from .priority import Priority, PriorityClassifier
from .ready_queue import ReadyQueue
from .policy import RetryPolicy
from .dispatcher import Dispatcher
from .offline import OfflineStore, OfflineBackend, FileBackend, MemoryBackend
from .flight import SingleFlight
from .scheduler import Scheduler, AsyncioScheduler, Timer
from .network import NetworkMonitor
from .flush import FlushCoordinator
from .transport import HttpTransport
from .unload import UnloadGuard

__all__ = [
    # types
    "EventRecord",
    "BatchEnvelope",
    "NetworkStatus",
    "NetworkChange",
    "FlushOutcome",
    "FlushResult",
    "Transport",
    "TransportResponse",
    # classification
    "DuplicateFilter",
    "Priority",
    "PriorityClassifier",
    # policies
    "RetryPolicy",
    # runtime
    "ReadyQueue",
    "Dispatcher",
    "SingleFlight",
    "Scheduler",
    "AsyncioScheduler",
    "Timer",
    "NetworkMonitor",
    "FlushCoordinator",
    "UnloadGuard",
    # persistence / transport
    "OfflineStore",
    "OfflineBackend",
    "FileBackend",
    "MemoryBackend",
    "HttpTransport",
]
