"""
Telemetry Agent

Client-side event delivery: duplicate suppression, priority batching,
failover/backoff dispatch and a durable offline queue.

Usage:
    from telemetry_agent import TelemetryAgent, AgentSettings

    async with TelemetryAgent(AgentSettings(batch_size=20)) as agent:
        agent.track("signup", {"plan": "pro"})
"""

from .agent import TelemetryAgent, AgentHealth
from .settings import AgentSettings, get_settings
from .models import EventPayload
from .errors import (
    TelemetryError,
    TransientNetworkError,
    RateLimited,
    DeliveryFailed,
    StorageError,
    InvalidEvent,
)
from .delivery import EventRecord, FlushOutcome, FlushResult, NetworkStatus, Priority

__version__ = "1.0.0"
__all__ = [
    "TelemetryAgent",
    "AgentHealth",
    "AgentSettings",
    "get_settings",
    "EventPayload",
    "EventRecord",
    "FlushOutcome",
    "FlushResult",
    "NetworkStatus",
    "Priority",
    "TelemetryError",
    "TransientNetworkError",
    "RateLimited",
    "DeliveryFailed",
    "StorageError",
    "InvalidEvent",
]
