"""
Pytest configuration and fixtures for telemetry-agent.

Provides a manually driven scheduler, a scripted transport and an agent
factory so delivery behaviour can be tested without real time or network.
"""

import asyncio
from typing import Any, Mapping, Optional

import pytest

from telemetry_agent import AgentSettings, TelemetryAgent
from telemetry_agent.delivery import (
    Dispatcher,
    EventRecord,
    FlushCoordinator,
    NetworkMonitor,
    OfflineStore,
    ReadyQueue,
    RetryPolicy,
    Scheduler,
    Timer,
    Transport,
    TransportResponse,
)


class ManualScheduler(Scheduler):
    """Scheduler whose clock only moves when the test calls ``advance``.

    Timer callbacks fire synchronously inside ``advance``; the coroutines
    they return run as real asyncio tasks (await ``wait_idle`` to finish them).
    """

    def __init__(self, start: float = 1000.0):
        super().__init__()
        self._now = start

    def now(self) -> float:
        return self._now

    def _arm(self, timer: Timer, delay: float) -> None:
        pass

    def advance(self, seconds: float) -> None:
        target = self._now + seconds
        while True:
            due = [t for t in self.active_timers if t.when <= target]
            if not due:
                break
            timer = due[0]
            self._now = max(self._now, timer.when)
            self._fire(timer)
        self._now = target

    async def run_for(self, seconds: float) -> None:
        self.advance(seconds)
        await self.wait_idle()


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class FakeTransport(Transport):
    """Scripted transport.

    ``script`` items are consumed one per ``send``: an int status, a
    ``(status, headers)`` tuple, or an exception instance to raise. Once the
    script is empty every send answers ``default_status``. Setting ``gate``
    holds every send until the event is set. An accepted beacon confirms
    delivery at once unless ``beacon_delivers`` is False.
    """

    def __init__(self, script=None, default_status: int = 200, beacon_ok: bool = False):
        self.script = list(script or [])
        self.default_status = default_status
        self.beacon_ok = beacon_ok
        self.beacon_delivers = True
        self.gate: Optional[asyncio.Event] = None
        self.calls: list[tuple[str, dict, dict]] = []
        self.beacons: list[tuple[str, dict, dict]] = []
        self.delivered: list[dict] = []
        self.closed = False

    async def send(self, endpoint: str, body: dict, headers: Mapping[str, str]) -> TransportResponse:
        self.calls.append((endpoint, body, dict(headers)))
        if self.gate is not None:
            await self.gate.wait()
        item: Any = self.script.pop(0) if self.script else self.default_status
        if isinstance(item, BaseException):
            raise item
        status, resp_headers = item if isinstance(item, tuple) else (item, {})
        if 200 <= status < 300:
            self.delivered.append(body)
        return TransportResponse(status_code=status, headers=resp_headers)

    def beacon(self, endpoint: str, body: dict, headers: Mapping[str, str], on_delivered=None) -> bool:
        self.beacons.append((endpoint, body, dict(headers)))
        if not self.beacon_ok:
            return False
        if self.beacon_delivers and on_delivered is not None:
            on_delivered()
        return True

    async def aclose(self) -> None:
        self.closed = True

    @property
    def endpoints_called(self) -> list[str]:
        return [c[0] for c in self.calls]

    def delivered_names(self) -> list[str]:
        return [e["eventName"] for body in self.delivered for e in body["events"]]


async def no_sleep(_delay: float) -> None:
    await asyncio.sleep(0)


@pytest.fixture
def scheduler():
    return ManualScheduler()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def settings_factory():
    def _make(**overrides) -> AgentSettings:
        base = dict(
            endpoint="https://primary.test/v1/batch",
            batch_size=3,
            flush_interval_ms=5000,
            max_retries=2,
            base_retry_delay_ms=10,
            max_offline_queue_size=100,
            agent_id="test",
        )
        base.update(overrides)
        return AgentSettings(**base)

    return _make


@pytest.fixture
def make_agent(settings_factory, scheduler, clock, transport):
    """Factory for agents wired to the manual scheduler and fake transport."""

    def _make(settings: Optional[AgentSettings] = None, *, network=None, backend=None, **overrides) -> TelemetryAgent:
        return TelemetryAgent(
            settings or settings_factory(**overrides),
            transport=transport,
            scheduler=scheduler,
            network=network,
            backend=backend,
            clock=clock,
            sleep=no_sleep,
        )

    return _make


@pytest.fixture
def make_record(clock):
    counter = {"n": 0}

    def _make(name: str = "page_view", **payload) -> EventRecord:
        counter["n"] += 1
        payload = payload or {"seq": counter["n"]}
        return EventRecord.create(name, payload, created_at=clock())

    return _make


@pytest.fixture
def network():
    return NetworkMonitor()


@pytest.fixture
def coord(transport, scheduler, network, clock):
    """Coordinator with batch size 3, 5s interval and one retry per batch."""
    dispatcher = Dispatcher(
        transport,
        "https://a.test/batch",
        retry_policy=RetryPolicy(max_retries=1, base_delay_ms=1),
        clock=clock,
        sleep=no_sleep,
    )
    return FlushCoordinator(
        ReadyQueue(),
        OfflineStore(max_size=50),
        dispatcher,
        network,
        scheduler,
        batch_size=3,
        flush_interval=5.0,
        high_priority_delay=1.0,
    )
