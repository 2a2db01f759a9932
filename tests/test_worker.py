"""Tests for the background worker pool."""

import asyncio

import pytest

from settlement_engine.engine.worker import WorkerPool
from settlement_engine.models.events import InvoiceDeleted
from settlement_engine.models.tables import AmountReceived, Invoice


async def _wait_for(predicate, timeout=5.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while loop.time() < deadline:
        if await predicate():
            return True
        await asyncio.sleep(0.02)
    return False


@pytest.mark.asyncio
async def test_workers_drain_the_store(flow, processor):
    for i in range(1, 6):
        await flow.request_invoice(f"INVC-{i}", "USD", [
            {"order_id": f"ORD-{i}", "seller_id": "SELLER-A", "seller_currency": "USD", "total_amount": 1_000},
        ], run=False)
        await flow.receive(f"INVC-{i}", 1_000, f"tx-{i}", "USD", run=False)

    pool = WorkerPool(processor, workers=1, poll_interval=0.01, batch_size=2)
    pool.start()
    try:
        async def settled():
            events = await flow.events()
            return all(e.status in ("done", "dead") for e in events) and len(await flow.events("fee.charge_requested")) == 5

        assert await _wait_for(settled)
    finally:
        await pool.stop()

    assert not pool.running
    assert await flow.count(Invoice) == 5
    assert await flow.count(AmountReceived) == 5
    for i in range(1, 6):
        invoice = await flow.invoice(f"INVC-{i}")
        assert invoice.paid_at is not None
        await flow.assert_ledger_consistent(f"INVC-{i}")
    assert all(e.attempt_count == 0 for e in await flow.events())


@pytest.mark.asyncio
async def test_worker_survives_poll_errors(processor):
    calls = 0
    run_once = processor.run_once

    async def flaky(limit=None):
        nonlocal calls
        calls += 1
        if calls == 1:
            raise RuntimeError("database is locked")
        return await run_once(limit)

    processor.run_once = flaky
    pool = WorkerPool(processor, workers=1, poll_interval=0.01)
    pool.start()
    try:
        async def polled_again():
            return calls >= 3

        assert await _wait_for(polled_again)
        assert pool.running
    finally:
        await pool.stop()


@pytest.mark.asyncio
async def test_start_is_idempotent(processor):
    pool = WorkerPool(processor, workers=2, poll_interval=0.01)
    pool.start()
    tasks = list(pool._tasks)
    pool.start()

    assert pool._tasks == tasks
    await pool.stop()
    assert not pool.running


def _slow_handler(started: asyncio.Event, seconds: float):
    async def handler(event):
        started.set()
        await asyncio.sleep(seconds)
    return handler


@pytest.mark.asyncio
async def test_stop_waits_for_the_event_in_flight(flow, processor):
    started = asyncio.Event()
    processor._handlers[InvoiceDeleted] = _slow_handler(started, 0.2)
    event_id = await flow.store.append(InvoiceDeleted(invoice_id="INVC-1"))

    pool = WorkerPool(processor, workers=1, poll_interval=0.01)
    pool.start()
    await asyncio.wait_for(started.wait(), timeout=5.0)
    await pool.stop(timeout=5.0)

    entry = await flow.event(event_id)
    assert entry.status == "done"
    assert entry.attempt_count == 0


@pytest.mark.asyncio
async def test_stop_timeout_hands_events_back(flow, processor):
    started = asyncio.Event()
    processor._handlers[InvoiceDeleted] = _slow_handler(started, 30.0)
    in_flight = await flow.store.append(InvoiceDeleted(invoice_id="INVC-1"))
    queued = await flow.store.append(InvoiceDeleted(invoice_id="INVC-2"))

    pool = WorkerPool(processor, workers=1, poll_interval=0.01, batch_size=2)
    pool.start()
    await asyncio.wait_for(started.wait(), timeout=5.0)
    await pool.stop(timeout=0.05)

    assert not pool.running
    entry = await flow.event(in_flight)
    assert entry.status == "failed"
    assert entry.attempt_count == 1
    assert entry.last_error.startswith("Cancelled")
    # Claimed in the same batch but never started: back to new, no attempt spent
    entry = await flow.event(queued)
    assert entry.status == "new"
    assert entry.attempt_count == 0
