"""
Tests for Dispatcher failover, backoff and rate-limit handling.
"""

import random
from datetime import datetime, timezone
from email.utils import format_datetime

import pytest

from telemetry_agent.delivery import Dispatcher, RetryPolicy
from telemetry_agent.delivery.dispatcher import parse_retry_after
from telemetry_agent.errors import DeliveryFailed, RateLimited

PRIMARY = "https://a.test/batch"
FALLBACK = "https://b.test/batch"


class RecordingSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


@pytest.fixture
def sleep():
    return RecordingSleep()


def make_dispatcher(transport, sleep, clock, *, fallbacks=(FALLBACK,), max_retries=2, **kw):
    return Dispatcher(
        transport,
        PRIMARY,
        fallbacks,
        RetryPolicy(max_retries=max_retries, base_delay_ms=100, max_delay_ms=1000, jitter=0.1),
        clock=clock,
        sleep=sleep,
        rng=random.Random(1),
        **kw,
    )


@pytest.mark.asyncio
async def test_primary_success(transport, sleep, clock, make_record):
    """A 2xx from the primary endpoint delivers in one attempt."""
    d = make_dispatcher(transport, sleep, clock)
    records = [make_record(), make_record()]

    endpoint = await d.send(records)

    assert endpoint == PRIMARY
    assert transport.endpoints_called == [PRIMARY]
    body = transport.calls[0][1]
    assert [e["eventId"] for e in body["events"]] == [r.event_id for r in records]
    assert body["schemaVersion"] == 1
    assert sleep.delays == []


@pytest.mark.asyncio
async def test_failover_to_fallback(transport, sleep, clock, make_record):
    """A 5xx on the primary moves straight to the fallback without waiting."""
    transport.script = [503]
    d = make_dispatcher(transport, sleep, clock)

    endpoint = await d.send([make_record()])

    assert endpoint == FALLBACK
    assert transport.endpoints_called == [PRIMARY, FALLBACK]
    assert sleep.delays == []


@pytest.mark.asyncio
async def test_network_exception_is_transient(transport, sleep, clock, make_record):
    """Exceptions raised by the transport are retried like 5xx responses."""
    transport.script = [ConnectionError("reset")]
    d = make_dispatcher(transport, sleep, clock)

    assert await d.send([make_record()]) == FALLBACK


@pytest.mark.asyncio
async def test_retries_last_endpoint_with_backoff(transport, sleep, clock, make_record):
    """After failover the last endpoint is retried with exponential backoff."""
    transport.script = [500, 500, 500]
    d = make_dispatcher(transport, sleep, clock, max_retries=3)

    endpoint = await d.send([make_record()])

    assert endpoint == FALLBACK
    assert transport.endpoints_called == [PRIMARY, FALLBACK, FALLBACK, FALLBACK]
    assert len(sleep.delays) == 2
    assert 0.1 <= sleep.delays[0] <= 0.11
    assert 0.2 <= sleep.delays[1] <= 0.22


@pytest.mark.asyncio
async def test_exhaustion_raises_delivery_failed(transport, sleep, clock, make_record):
    """Every endpoint plus max_retries failing raises DeliveryFailed."""
    transport.default_status = 500
    d = make_dispatcher(transport, sleep, clock, max_retries=2)

    with pytest.raises(DeliveryFailed) as ei:
        await d.send([make_record()])

    assert ei.value.attempts == 4
    assert ei.value.last_error.status_code == 500
    assert transport.endpoints_called == [PRIMARY, FALLBACK, FALLBACK, FALLBACK]
    assert len(sleep.delays) == 2


@pytest.mark.asyncio
async def test_same_envelope_on_every_attempt(transport, sleep, clock, make_record):
    """Retries resend the identical batch."""
    transport.script = [500, 500]
    d = make_dispatcher(transport, sleep, clock)

    await d.send([make_record()])

    batch_ids = {body["batchId"] for _, body, _ in transport.calls}
    assert len(batch_ids) == 1


@pytest.mark.asyncio
async def test_rate_limit_not_retried(transport, sleep, clock, make_record):
    """A 429 raises RateLimited immediately with the server's wait."""
    transport.script = [(429, {"retry-after": "30"})]
    d = make_dispatcher(transport, sleep, clock)

    with pytest.raises(RateLimited) as ei:
        await d.send([make_record()])

    assert ei.value.retry_after == 30.0
    assert ei.value.endpoint == PRIMARY
    assert transport.endpoints_called == [PRIMARY]
    assert sleep.delays == []


@pytest.mark.asyncio
async def test_rate_limit_default_wait(transport, sleep, clock, make_record):
    """A 429 without Retry-After uses the configured default."""
    transport.script = [429]
    d = make_dispatcher(transport, sleep, clock, default_retry_after=12.0)

    with pytest.raises(RateLimited) as ei:
        await d.send([make_record()])
    assert ei.value.retry_after == 12.0


@pytest.mark.asyncio
async def test_headers(transport, sleep, clock, make_record):
    """Requests carry JSON content type, batch size and workspace id."""
    d = make_dispatcher(transport, sleep, clock, workspace_id="ws-1")

    await d.send([make_record(), make_record(), make_record()])

    headers = transport.calls[0][2]
    assert headers["Content-Type"] == "application/json"
    assert headers["X-Batch-Size"] == "3"
    assert headers["X-Workspace-Id"] == "ws-1"


def test_endpoint_required(transport):
    """An empty primary endpoint is rejected."""
    with pytest.raises(ValueError):
        Dispatcher(transport, "")


def test_parse_retry_after():
    """Retry-After accepts delta-seconds and HTTP-dates."""
    now = datetime(2024, 1, 1, tzinfo=timezone.utc).timestamp()
    later = datetime(2024, 1, 1, 0, 0, 45, tzinfo=timezone.utc)

    assert parse_retry_after("120", now, 60.0) == 120.0
    assert parse_retry_after(format_datetime(later, usegmt=True), now, 60.0) == pytest.approx(45.0)
    assert parse_retry_after(None, now, 60.0) == 60.0
    assert parse_retry_after("soon", now, 60.0) == 60.0
    assert parse_retry_after("-5", now, 60.0) == 0.0
