"""
Tests for FlushCoordinator: batching triggers, snapshot reconciliation,
offline routing, rate limiting and offline drain.
"""

import asyncio

import pytest

from telemetry_agent.delivery import FlushOutcome, Priority


def fill(coord, make_record, n):
    records = [make_record() for _ in range(n)]
    for r in records:
        coord.ready.append(r)
    return records


async def until_called(transport, n=1):
    for _ in range(100):
        if len(transport.calls) >= n:
            return
        await asyncio.sleep(0)
    raise AssertionError("transport was not called")


@pytest.mark.asyncio
async def test_flush_empty_queue(coord, transport):
    """Flushing an empty queue makes no network call."""
    result = await coord.flush()

    assert result.outcome is FlushOutcome.EMPTY
    assert result.ok
    assert transport.calls == []


@pytest.mark.asyncio
async def test_flush_sends_oldest_batch(coord, transport, scheduler, make_record):
    """One flush sends batch_size oldest records and reschedules the rest."""
    records = fill(coord, make_record, 5)

    result = await coord.flush()

    assert result.outcome is FlushOutcome.DELIVERED
    assert result.sent == 3
    sent_ids = [e["eventId"] for e in transport.calls[0][1]["events"]]
    assert sent_ids == [r.event_id for r in records[:3]]
    assert list(coord.ready) == records[3:]
    assert coord.flush_timer is not None
    assert coord.flush_timer.when == scheduler.now() + 5.0


@pytest.mark.asyncio
async def test_records_appended_during_flight_survive(coord, transport, make_record):
    """Success removes exactly the snapshot, not records added mid-flight."""
    fill(coord, make_record, 3)
    transport.gate = asyncio.Event()

    task = asyncio.create_task(coord.flush())
    await until_called(transport)
    late = make_record()
    coord.ready.append(late)
    transport.gate.set()
    result = await task

    assert result.sent == 3
    assert list(coord.ready) == [late]


@pytest.mark.asyncio
async def test_offline_flush_moves_to_store(coord, transport, network, make_record):
    """While offline a flush stores the queue without a network call."""
    records = fill(coord, make_record, 2)
    await network.set_offline()

    result = await coord.flush()

    assert result.outcome is FlushOutcome.OFFLINE
    assert result.stored == 2
    assert not result.ok
    assert len(coord.ready) == 0
    assert coord.offline.records() == records
    assert transport.calls == []


@pytest.mark.asyncio
async def test_failed_dispatch_moves_snapshot_offline(coord, transport, make_record):
    """Exhausted retries store exactly the snapshot in the offline store."""
    transport.default_status = 500
    records = fill(coord, make_record, 4)

    result = await coord.flush()

    assert result.outcome is FlushOutcome.FAILED
    assert result.stored == 3
    assert coord.offline.records() == records[:3]
    assert list(coord.ready) == records[3:]
    # primary + one retry
    assert len(transport.calls) == 2


@pytest.mark.asyncio
async def test_failure_after_clear_stores_nothing(coord, transport, make_record):
    """Records removed from the queue mid-flight are not resurrected on failure."""
    fill(coord, make_record, 3)
    transport.default_status = 500
    transport.gate = asyncio.Event()

    task = asyncio.create_task(coord.flush())
    await until_called(transport)
    coord.ready.clear()
    transport.gate.set()
    result = await task

    assert result.outcome is FlushOutcome.FAILED
    assert result.stored == 0
    assert len(coord.offline) == 0


@pytest.mark.asyncio
async def test_rate_limited_flush_waits_retry_after(coord, transport, scheduler, make_record):
    """A 429 keeps the batch queued and retries after Retry-After."""
    records = fill(coord, make_record, 2)
    transport.script = [(429, {"Retry-After": "30"})]

    result = await coord.flush()

    assert result.outcome is FlushOutcome.RATE_LIMITED
    assert list(coord.ready) == records
    assert len(coord.offline) == 0
    assert coord.rate_limited_for == pytest.approx(30.0)
    assert coord.flush_timer.when == pytest.approx(scheduler.now() + 30.0)

    # inside the wait nothing is sent
    again = await coord.flush()
    assert again.outcome is FlushOutcome.RATE_LIMITED
    assert len(transport.calls) == 1

    await scheduler.run_for(30.0)

    assert len(transport.calls) == 2
    assert len(coord.ready) == 0
    assert coord.rate_limited_for == 0


@pytest.mark.asyncio
async def test_concurrent_flushes_share_one_dispatch(coord, transport, make_record):
    """A flush requested while one is in flight joins it."""
    fill(coord, make_record, 2)
    transport.gate = asyncio.Event()

    first = asyncio.create_task(coord.flush())
    await until_called(transport)
    assert coord.flushing
    second = asyncio.create_task(coord.flush())
    await asyncio.sleep(0)
    transport.gate.set()

    r1, r2 = await asyncio.gather(first, second)

    assert r1 == r2
    assert len(transport.calls) == 1
    assert not coord.flushing


@pytest.mark.asyncio
async def test_flush_and_drain_never_overlap(coord, transport, make_record):
    """A drain requested during a flush waits for it to finish."""
    fill(coord, make_record, 2)
    coord.offline.extend([make_record(), make_record()])
    transport.gate = asyncio.Event()

    flush = asyncio.create_task(coord.flush())
    await until_called(transport)
    drain = asyncio.create_task(coord.drain_offline())
    for _ in range(10):
        await asyncio.sleep(0)
    assert len(transport.calls) == 1

    transport.gate.set()
    await asyncio.gather(flush, drain)

    assert len(transport.calls) == 2
    assert len(coord.ready) == 0
    assert len(coord.offline) == 0


@pytest.mark.asyncio
async def test_drain_sends_in_batches(coord, transport, make_record):
    """Seven stored records with batch size 3 drain in three ordered chunks."""
    records = [make_record() for _ in range(7)]
    coord.offline.extend(records)

    result = await coord.drain_offline()

    assert result.outcome is FlushOutcome.DELIVERED
    assert result.sent == 7
    assert [len(body["events"]) for _, body, _ in transport.calls] == [3, 3, 1]
    sent = [e["eventId"] for _, body, _ in transport.calls for e in body["events"]]
    assert sent == [r.event_id for r in records]
    assert len(coord.offline) == 0


@pytest.mark.asyncio
async def test_drain_stops_at_first_failure(coord, transport, make_record):
    """A failing chunk stays at the head of the store in order."""
    records = [make_record() for _ in range(5)]
    coord.offline.extend(records)
    transport.script = [200]
    transport.default_status = 500

    result = await coord.drain_offline()

    assert result.outcome is FlushOutcome.FAILED
    assert result.sent == 3
    assert coord.offline.records() == records[3:]


@pytest.mark.asyncio
async def test_drain_offline_is_noop(coord, transport, network, make_record):
    """No drain is attempted without connectivity."""
    coord.offline.extend([make_record()])
    await network.set_offline()

    result = await coord.drain_offline()

    assert result.outcome is FlushOutcome.OFFLINE
    assert transport.calls == []
    assert len(coord.offline) == 1


@pytest.mark.asyncio
async def test_drain_rate_limited_reschedules(coord, transport, scheduler, make_record):
    """A 429 during drain keeps the store and arms a drain after the wait."""
    coord.offline.extend([make_record(), make_record()])
    transport.script = [(429, {"Retry-After": "10"})]

    result = await coord.drain_offline()

    assert result.outcome is FlushOutcome.RATE_LIMITED
    assert len(coord.offline) == 2
    assert coord.drain_timer.when == pytest.approx(scheduler.now() + 10.0)

    await scheduler.run_for(10.0)

    assert len(coord.offline) == 0


@pytest.mark.asyncio
async def test_batch_threshold_triggers_flush(coord, transport, scheduler, make_record):
    """Reaching batch_size starts a flush without waiting for a timer."""
    fill(coord, make_record, 3)

    coord.on_enqueued(Priority.NORMAL)
    await scheduler.wait_idle()

    assert len(transport.calls) == 1
    assert len(coord.ready) == 0


@pytest.mark.asyncio
async def test_normal_priority_keeps_existing_timer(coord, scheduler, make_record):
    """Later normal events do not push the pending flush back."""
    fill(coord, make_record, 1)
    coord.on_enqueued(Priority.NORMAL)
    first = coord.flush_timer

    scheduler.advance(2.0)
    fill(coord, make_record, 1)
    coord.on_enqueued(Priority.NORMAL)

    assert coord.flush_timer is first
    assert first.when == pytest.approx(1000.0 + 5.0)


@pytest.mark.asyncio
async def test_high_priority_shortens_timer(coord, scheduler, make_record):
    """A high-priority event replaces a later normal timer with the short delay."""
    fill(coord, make_record, 1)
    coord.on_enqueued(Priority.NORMAL)
    normal = coord.flush_timer

    fill(coord, make_record, 1)
    coord.on_enqueued(Priority.HIGH)

    assert normal.cancelled
    assert coord.flush_timer.when == pytest.approx(scheduler.now() + 1.0)


@pytest.mark.asyncio
async def test_timer_flushes_queue(coord, transport, scheduler, make_record):
    """The flush timer delivers queued records when it fires."""
    fill(coord, make_record, 2)
    coord.on_enqueued(Priority.NORMAL)

    await scheduler.run_for(4.9)
    assert transport.calls == []

    await scheduler.run_for(0.2)
    assert len(transport.calls) == 1
    assert len(coord.ready) == 0


@pytest.mark.asyncio
async def test_critical_dispatch(coord, transport, make_record):
    """Critical records are sent alone, bypassing the ready queue."""
    result = await coord.dispatch_critical(make_record("purchase"))

    assert result.outcome is FlushOutcome.DELIVERED
    assert len(transport.calls[0][1]["events"]) == 1


@pytest.mark.asyncio
async def test_critical_offline_goes_to_store(coord, transport, network, make_record):
    """Critical records are stored while offline."""
    await network.set_offline()
    record = make_record("purchase")

    result = await coord.dispatch_critical(record)

    assert result.outcome is FlushOutcome.OFFLINE
    assert coord.offline.records() == [record]
    assert transport.calls == []


@pytest.mark.asyncio
async def test_critical_failure_goes_to_store(coord, transport, make_record):
    """A critical record that cannot be delivered is stored, not dropped."""
    transport.default_status = 502
    record = make_record("purchase")

    result = await coord.dispatch_critical(record)

    assert result.outcome is FlushOutcome.FAILED
    assert coord.offline.records() == [record]


@pytest.mark.asyncio
async def test_critical_rate_limited(coord, transport, scheduler, make_record):
    """A rate-limited critical record is stored and a drain is armed."""
    transport.script = [(429, {"Retry-After": "5"})]
    record = make_record("purchase")

    result = await coord.dispatch_critical(record)

    assert result.outcome is FlushOutcome.RATE_LIMITED
    assert coord.offline.records() == [record]
    assert coord.drain_timer is not None

    follow_up = make_record("purchase")
    result = await coord.dispatch_critical(follow_up)
    assert result.outcome is FlushOutcome.RATE_LIMITED
    assert len(transport.calls) == 1

    await scheduler.run_for(5.0)
    assert len(coord.offline) == 0
