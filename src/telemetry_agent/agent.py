"""
Telemetry agent: the producer-facing API of the delivery pipeline.

Usage:
    from telemetry_agent import TelemetryAgent, AgentSettings

    async with TelemetryAgent(AgentSettings(endpoint="https://ingest.example.com/v1/batch")) as agent:
        agent.track("view_item", {"sku": "A-1"})
        agent.track("purchase", {"order_id": "o-17", "value": 42.0})
    # stop() flushes, then anything undelivered is kept in the offline store

Each agent is built from injected collaborators (transport, scheduler,
offline backend, clock), so several agents can run side by side and tests
can drive one deterministically.
"""

from __future__ import annotations

import asyncio
import random
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Mapping, Optional, Union

from loguru import logger
from pydantic import ValidationError

from .delivery import (
    AsyncioScheduler,
    Dispatcher,
    DuplicateFilter,
    EventRecord,
    FileBackend,
    FlushCoordinator,
    FlushResult,
    HttpTransport,
    MemoryBackend,
    NetworkChange,
    NetworkMonitor,
    NetworkStatus,
    OfflineBackend,
    OfflineStore,
    Priority,
    PriorityClassifier,
    ReadyQueue,
    RetryPolicy,
    Scheduler,
    Timer,
    Transport,
    UnloadGuard,
)
from .errors import InvalidEvent, StorageError
from .metrics import metrics_registry as m
from .models import EventPayload
from .settings import AgentSettings
from .utils import parse_timestamp, sanitize_event_data

EventInput = Union[EventPayload, Mapping[str, Any]]


@dataclass(frozen=True)
class AgentHealth:
    queue_size: int
    offline_queue_size: int
    offline_capacity: int
    is_online: bool
    flushing: bool
    draining: bool
    offline_degraded: bool
    rate_limited_for: float
    delivered: int


class TelemetryAgent:
    """Accepts events, deduplicates and classifies them, and delivers them.

    ``enqueue`` never raises. ``flush`` reports a ``FlushResult``; a non-ok
    result means "not guaranteed delivered", never a fatal condition.
    """

    def __init__(
        self,
        settings: Optional[AgentSettings] = None,
        *,
        transport: Optional[Transport] = None,
        scheduler: Optional[Scheduler] = None,
        backend: Optional[OfflineBackend] = None,
        network: Optional[NetworkMonitor] = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: Optional[random.Random] = None,
        install_hooks: bool = False,
    ):
        s = settings or AgentSettings()
        self.settings = s
        self._clock = clock
        self._install_hooks = install_hooks

        self._transport = transport or HttpTransport(
            timeout=s.request_timeout_s, beacon_timeout=s.beacon_timeout_s
        )
        self._scheduler = scheduler or AsyncioScheduler()
        self._network = network or NetworkMonitor(clock=clock)

        self._dedup = DuplicateFilter(s.dedup_history_size)
        self._classifier = PriorityClassifier(s.critical_event_names, s.high_priority_event_names)
        self._ready = ReadyQueue()
        self._offline = OfflineStore(
            s.max_offline_queue_size,
            backend or self._default_backend(s),
            agent_id=s.agent_id,
        )
        self._dispatcher = Dispatcher(
            self._transport,
            s.endpoint,
            s.fallback_endpoints,
            RetryPolicy(
                max_retries=s.max_retries,
                base_delay_ms=s.base_retry_delay_ms,
                max_delay_ms=s.max_retry_delay_ms,
            ),
            default_retry_after=s.default_retry_after_s,
            workspace_id=s.workspace_id,
            clock=clock,
            sleep=sleep,
            rng=rng,
            agent_id=s.agent_id,
        )
        self._coord = FlushCoordinator(
            self._ready,
            self._offline,
            self._dispatcher,
            self._network,
            self._scheduler,
            batch_size=s.batch_size,
            flush_interval=s.flush_interval,
            high_priority_delay=s.high_priority_delay,
            agent_id=s.agent_id,
        )
        self._unload = UnloadGuard(self._coord, self._transport)
        self._network.subscribe(self._on_network_change)

        self._tick: Optional[Timer] = None
        self._started = False
        self._destroyed = False

    @staticmethod
    def _default_backend(s: AgentSettings) -> OfflineBackend:
        if not s.offline_queue_path:
            return MemoryBackend()
        try:
            return FileBackend(s.offline_queue_path)
        except OSError as exc:
            logger.warning(
                f"Offline storage unavailable, continuing memory-only: {StorageError(str(exc))}"
            )
            return MemoryBackend()

    # ---------- context management

    async def __aenter__(self) -> "TelemetryAgent":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.stop()

    async def start(self) -> None:
        """Arm the periodic tick and drain whatever the offline store loaded."""
        if self._started or self._destroyed:
            return
        self._started = True
        self._arm_tick()
        if self._install_hooks:
            self.install_unload_hooks()
        if self._offline and self._network.is_online:
            self._scheduler.spawn(self._coord.drain_offline(), name="startup-drain")
        if self._ready:
            self._coord.schedule_flush(self.settings.flush_interval)
        logger.info(
            f"Telemetry agent '{self.settings.agent_id}' started "
            f"(endpoint={self.settings.endpoint}, batch_size={self.settings.batch_size})"
        )

    async def stop(self) -> None:
        """Final flush, wait for background work, then ``destroy()``."""
        if self._destroyed:
            return
        self._cancel_tick()
        await self._scheduler.wait_idle()
        await self.flush()
        await self._scheduler.wait_idle()
        self.destroy()
        await self._scheduler.wait_idle()
        logger.info(f"Telemetry agent '{self.settings.agent_id}' stopped. Stats: {self.stats}")

    # ---------- producer API

    def enqueue(self, event: EventInput) -> None:
        """Accept one event. Never raises; failures are handled internally."""
        try:
            self._enqueue(event)
        except InvalidEvent as exc:
            logger.warning(f"Dropping invalid event: {exc}")
        except Exception as exc:
            logger.error(f"Unexpected enqueue error (event dropped): {type(exc).__name__}: {exc}")

    def track(
        self,
        name: str,
        properties: Optional[Mapping[str, Any]] = None,
        timestamp: Any = None,
    ) -> None:
        self.enqueue({"name": name, "properties": dict(properties or {}), "timestamp": timestamp})

    def _enqueue(self, event: EventInput) -> None:
        if self._destroyed:
            logger.warning("Telemetry agent destroyed, dropping event")
            return

        record, timed = self._to_record(event)
        # producer-timed events are duplicates for as long as their hash is remembered
        window = None if timed else self.settings.dedup_window_ms / 1000.0
        if self._dedup.seen(record.content_hash, record.created_at, window):
            m.events_duplicate_total.labels(agent=self.settings.agent_id).inc()
            logger.debug(f"Duplicate event suppressed: {record.name}")
            return

        priority = self._classifier.classify(record.name)
        m.events_enqueued_total.labels(agent=self.settings.agent_id, priority=priority.value).inc()

        if priority is Priority.CRITICAL:
            logger.debug(f"Critical event, sending immediately: {record.name}")
            if Scheduler.has_running_loop():
                self._scheduler.spawn(self._coord.dispatch_critical(record), name="critical")
            else:
                self._offline.extend([record])
            return

        self._ready.append(record)
        m.ready_queue_depth.labels(agent=self.settings.agent_id).set(len(self._ready))
        logger.debug(f"Event queued: {record.name} ({priority.value})")
        if Scheduler.has_running_loop():
            self._coord.on_enqueued(priority)

    def _to_record(self, event: EventInput) -> tuple[EventRecord, bool]:
        """Validate and sanitize ``event``; the flag tells whether it carried its own timestamp."""
        try:
            payload = (
                event if isinstance(event, EventPayload) else EventPayload.model_validate(event)
            )
        except ValidationError as exc:
            raise InvalidEvent(str(exc)) from exc

        properties = (
            sanitize_event_data(payload.properties)
            if self.settings.sanitize_payloads
            else dict(payload.properties)
        )
        event_time = parse_timestamp(payload.timestamp)
        record = EventRecord.create(
            payload.name,
            properties,
            created_at=self._clock(),
            event_time=event_time,
        )
        return record, event_time is not None

    # ---------- delivery API

    async def flush(self) -> FlushResult:
        """Explicit best-effort flush of the ready queue."""
        return await self._coord.flush()

    async def drain_offline(self) -> FlushResult:
        return await self._coord.drain_offline()

    def force_flush_on_unload(self) -> bool:
        """Best-effort terminal delivery; never waits on the network."""
        return self._unload.on_terminate()

    def on_visibility_change(self, state: str) -> bool:
        return self._unload.on_visibility_change(state)

    def install_unload_hooks(self) -> None:
        """Run ``force_flush_on_unload`` at interpreter exit and on SIGTERM."""
        self._unload.install()

    # ---------- network signals

    async def set_online(self) -> bool:
        return await self._network.set_online()

    async def set_offline(self) -> bool:
        return await self._network.set_offline()

    async def _on_network_change(self, change: NetworkChange) -> None:
        if change.restored and self._offline:
            self._coord.schedule_drain(self.settings.restore_drain_delay)

    # ---------- introspection

    def get_queue_size(self) -> int:
        return len(self._ready)

    def get_offline_queue_size(self) -> int:
        return len(self._offline)

    def get_network_status(self) -> NetworkStatus:
        return self._network.status

    def health(self) -> AgentHealth:
        return AgentHealth(
            queue_size=len(self._ready),
            offline_queue_size=len(self._offline),
            offline_capacity=self._offline.max_size,
            is_online=self._network.is_online,
            flushing=self._coord.flushing,
            draining=self._coord.draining,
            offline_degraded=self._offline.degraded,
            rate_limited_for=self._coord.rate_limited_for,
            delivered=self._dispatcher.delivered,
        )

    @property
    def stats(self) -> dict:
        h = self.health()
        return {
            "queue_size": h.queue_size,
            "offline_queue_size": h.offline_queue_size,
            "online": h.is_online,
            "offline_degraded": h.offline_degraded,
            "delivered": h.delivered,
        }

    @property
    def coordinator(self) -> FlushCoordinator:
        return self._coord

    @property
    def offline_store(self) -> OfflineStore:
        return self._offline

    # ---------- teardown

    def clear(self) -> None:
        """Drop everything in the ready queue and cancel the pending flush timer."""
        self._ready.clear()
        self._coord.cancel_flush_timer()
        m.ready_queue_depth.labels(agent=self.settings.agent_id).set(0)

    def destroy(self) -> None:
        """Stop timers and hooks, keep queued events offline, close the transport."""
        if self._destroyed:
            return
        self._cancel_tick()
        self._coord.cancel_timers()
        self._unload.uninstall()
        if self._ready:
            moved = self._coord.move_ready_to_offline()
            logger.info(f"Saved {moved} queued events to offline store")
        self._network.unsubscribe(self._on_network_change)
        self._destroyed = True
        if Scheduler.has_running_loop():
            self._scheduler.spawn(self._transport.aclose(), name="transport-close")

    # ---------- periodic tick

    def _arm_tick(self) -> None:
        interval = self.settings.flush_interval
        if interval <= 0 or self._destroyed:
            return
        self._tick = self._scheduler.call_later(interval, self._on_tick, name="periodic-flush")

    def _cancel_tick(self) -> None:
        if self._tick is not None:
            self._tick.cancel()
            self._tick = None

    def _on_tick(self):
        self._arm_tick()
        return self._periodic()

    async def _periodic(self) -> None:
        if self._ready:
            await self._coord.flush()
        if self._offline and self._network.is_online:
            await self._coord.drain_offline()
