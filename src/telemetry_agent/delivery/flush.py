"""
Flush coordination: decides when to dispatch and reconciles the outcome.

The coordinator is the only component that removes records from the ready
queue or writes dispatch failures to the offline store. Flush and offline
drain run through one ``SingleFlight`` so they never overlap:

    Idle ──flush()──▶ Flushing ──▶ Idle
             ▲            │
             └── joins ◀──┘  (a flush requested while Flushing shares the
                              in-flight outcome instead of dispatching again)

A flush snapshots the oldest ``batch_size`` records *without* removing them,
dispatches, and only then removes exactly those records by identity (success)
or moves them to the offline store (failure). A network call that throws
partway through therefore cannot lose events.
"""

from __future__ import annotations

from typing import Optional

from loguru import logger

from ..errors import RateLimited
from ..metrics import metrics_registry as m
from .dispatcher import Dispatcher
from .flight import SingleFlight
from .network import NetworkMonitor
from .offline import OfflineStore
from .priority import Priority
from .ready_queue import ReadyQueue
from .scheduler import Scheduler, Timer
from .types import EventRecord, FlushOutcome, FlushResult

FLUSH = "flush"
DRAIN = "drain"


class FlushCoordinator:
    """Single-flight controller over the ready queue and the offline store.

    Args:
        ready: Ready queue fed by producers
        offline: Offline store for undelivered records
        dispatcher: Network delivery with failover/backoff
        network: Connectivity status
        scheduler: Timers and background tasks
        batch_size: Max records per dispatch; also the immediate-flush threshold
        flush_interval: Normal-priority flush delay (seconds)
        high_priority_delay: High-priority flush delay (seconds)
    """

    def __init__(
        self,
        ready: ReadyQueue,
        offline: OfflineStore,
        dispatcher: Dispatcher,
        network: NetworkMonitor,
        scheduler: Scheduler,
        *,
        batch_size: int = 10,
        flush_interval: float = 5.0,
        high_priority_delay: float = 1.0,
        agent_id: str = "default",
    ):
        if batch_size <= 0:
            raise ValueError("batch_size must be > 0")
        self.ready = ready
        self.offline = offline
        self.dispatcher = dispatcher
        self.network = network
        self.scheduler = scheduler
        self.batch_size = batch_size
        self.flush_interval = flush_interval
        self.high_priority_delay = high_priority_delay
        self._agent_id = agent_id

        self._flight: SingleFlight[FlushResult] = SingleFlight()
        self._flush_timer: Optional[Timer] = None
        self._drain_timer: Optional[Timer] = None
        self._hold_until: float = 0.0

    # ---------- state

    @property
    def flushing(self) -> bool:
        return self._flight.in_flight(FLUSH)

    @property
    def draining(self) -> bool:
        return self._flight.in_flight(DRAIN)

    @property
    def flush_timer(self) -> Optional[Timer]:
        t = self._flush_timer
        return t if t is not None and t.active else None

    @property
    def drain_timer(self) -> Optional[Timer]:
        t = self._drain_timer
        return t if t is not None and t.active else None

    @property
    def rate_limited_for(self) -> float:
        """Seconds left before the server-directed rate-limit wait ends."""
        return max(0.0, self._hold_until - self.scheduler.now())

    # ---------- triggers

    def on_enqueued(self, priority: Priority) -> None:
        """Apply the batching rules after a high/normal record was appended."""
        if len(self.ready) >= self.batch_size:
            self.request_flush()
            return
        if priority is Priority.HIGH:
            self.schedule_flush(self.high_priority_delay, supersede=True)
        else:
            self.schedule_flush(self.flush_interval)

    def schedule_flush(self, delay: float, *, supersede: bool = False) -> Timer:
        """Arm the flush timer.

        Without ``supersede`` an already pending timer is kept. With it, a
        pending timer is replaced unless it would fire sooner anyway.
        """
        current = self.flush_timer
        if current is not None:
            if not supersede or current.when <= self.scheduler.now() + delay:
                return current
            current.cancel()
        self._flush_timer = self.scheduler.call_later(delay, self._on_flush_timer, name="flush-timer")
        logger.debug(f"Flush scheduled in {delay:.3f}s")
        return self._flush_timer

    def schedule_drain(self, delay: float) -> Timer:
        current = self.drain_timer
        if current is not None and current.when <= self.scheduler.now() + delay:
            return current
        if current is not None:
            current.cancel()
        self._drain_timer = self.scheduler.call_later(delay, self._on_drain_timer, name="drain-timer")
        return self._drain_timer

    def request_flush(self) -> None:
        """Start a flush in the background (joins one already in flight)."""
        self.scheduler.spawn(self.flush(), name="flush")

    def cancel_timers(self) -> None:
        for timer in (self._flush_timer, self._drain_timer):
            if timer is not None:
                timer.cancel()
        self._flush_timer = None
        self._drain_timer = None

    # ---------- flush

    async def flush(self) -> FlushResult:
        return await self._flight.run(FLUSH, self._flush)

    async def _flush(self) -> FlushResult:
        self.cancel_flush_timer()

        if not self.ready:
            return FlushResult(FlushOutcome.EMPTY)

        if not self.network.is_online:
            stored = self.move_ready_to_offline()
            logger.info(f"Network offline, moved {stored} events to offline store")
            return FlushResult(FlushOutcome.OFFLINE, stored=stored)

        if self.rate_limited_for > 0:
            self.schedule_flush(self.rate_limited_for, supersede=True)
            return FlushResult(FlushOutcome.RATE_LIMITED)

        snapshot = self.ready.snapshot(self.batch_size)
        try:
            await self.dispatcher.send(snapshot)
        except RateLimited as exc:
            # Snapshot stays in the ready queue until the server's wait is over.
            self._hold(exc.retry_after)
            self.schedule_flush(exc.retry_after, supersede=True)
            return FlushResult(FlushOutcome.RATE_LIMITED)
        except Exception as exc:
            failed = self.ready.take(snapshot)
            self.offline.extend(failed)
            self._update_gauge()
            logger.warning(
                f"Flush failed, {len(failed)} events moved to offline store: "
                f"{type(exc).__name__}: {exc}"
            )
            if self.ready:
                self.schedule_flush(self.flush_interval)
            return FlushResult(FlushOutcome.FAILED, stored=len(failed))

        self.ready.remove(snapshot)
        self._update_gauge()
        self._reschedule_remaining()
        return FlushResult(FlushOutcome.DELIVERED, sent=len(snapshot))

    def _reschedule_remaining(self) -> None:
        if not self.ready:
            return
        if len(self.ready) >= self.batch_size:
            self.request_flush()
        else:
            self.schedule_flush(self.flush_interval)

    # ---------- offline drain

    async def drain_offline(self) -> FlushResult:
        """Send the offline store in ``batch_size`` chunks, oldest first.

        Stops at the first failing chunk, which stays at the head in its
        original order; the next restore signal or periodic tick resumes.
        """
        return await self._flight.run(DRAIN, self._drain)

    async def _drain(self) -> FlushResult:
        self._cancel_drain_timer()

        if not self.offline:
            return FlushResult(FlushOutcome.EMPTY)
        if not self.network.is_online:
            return FlushResult(FlushOutcome.OFFLINE)
        if self.rate_limited_for > 0:
            self.schedule_drain(self.rate_limited_for)
            return FlushResult(FlushOutcome.RATE_LIMITED)

        logger.info(f"Processing {len(self.offline)} offline events")
        sent = 0
        while self.offline and self.network.is_online:
            chunk = self.offline.peek(self.batch_size)
            try:
                await self.dispatcher.send(chunk)
            except RateLimited as exc:
                self._hold(exc.retry_after)
                self.schedule_drain(exc.retry_after)
                return FlushResult(FlushOutcome.RATE_LIMITED, sent=sent)
            except Exception as exc:
                logger.warning(
                    f"Offline drain stopped, {len(self.offline)} events kept: "
                    f"{type(exc).__name__}: {exc}"
                )
                return FlushResult(FlushOutcome.FAILED, sent=sent)
            sent += self.offline.remove(chunk)

        return FlushResult(FlushOutcome.DELIVERED if sent else FlushOutcome.EMPTY, sent=sent)

    # ---------- critical path

    async def dispatch_critical(self, record: EventRecord) -> FlushResult:
        """Send one record immediately, bypassing the ready queue.

        Any failure (offline, rate limited, exhausted retries) stores the
        record in the offline store; it is never dropped.
        """
        if not self.network.is_online or self.rate_limited_for > 0:
            self.offline.extend([record])
            reason = "offline" if not self.network.is_online else "rate limited"
            logger.info(f"Critical event '{record.name}' stored offline ({reason})")
            outcome = FlushOutcome.OFFLINE if not self.network.is_online else FlushOutcome.RATE_LIMITED
            return FlushResult(outcome, stored=1)

        try:
            await self.dispatcher.send([record])
        except RateLimited as exc:
            self._hold(exc.retry_after)
            self.offline.extend([record])
            self.schedule_drain(exc.retry_after)
            return FlushResult(FlushOutcome.RATE_LIMITED, stored=1)
        except Exception as exc:
            self.offline.extend([record])
            logger.warning(
                f"Critical event '{record.name}' stored offline: {type(exc).__name__}: {exc}"
            )
            return FlushResult(FlushOutcome.FAILED, stored=1)
        return FlushResult(FlushOutcome.DELIVERED, sent=1)

    # ---------- helpers

    def move_ready_to_offline(self) -> int:
        records = self.ready.drain_all()
        self.offline.extend(records)
        self._update_gauge()
        return len(records)

    def _hold(self, retry_after: float) -> None:
        self._hold_until = max(self._hold_until, self.scheduler.now() + retry_after)

    def cancel_flush_timer(self) -> None:
        if self._flush_timer is not None:
            self._flush_timer.cancel()
            self._flush_timer = None

    def _cancel_drain_timer(self) -> None:
        if self._drain_timer is not None:
            self._drain_timer.cancel()
            self._drain_timer = None

    def _on_flush_timer(self):
        self._flush_timer = None
        return self.flush()

    def _on_drain_timer(self):
        self._drain_timer = None
        return self.drain_offline()

    def _update_gauge(self) -> None:
        m.ready_queue_depth.labels(agent=self._agent_id).set(len(self.ready))
