"""Two workers racing on the same invoice or the same orders."""

import asyncio
from datetime import datetime, timezone

import pytest

from settlement_engine.engine.errors import ConflictError, InvalidError
from settlement_engine.engine.invoices import record_amount_received
from settlement_engine.engine.payouts import aggregate_payout
from settlement_engine.engine.worker import WorkerPool
from settlement_engine.models.events import PayoutRequested
from settlement_engine.models.tables import Fee, OrderPayout, Payout
from settlement_engine.repos import PayoutRepo

ONE_ORDER = [{"order_id": "ORD-1", "seller_id": "SELLER-A", "seller_currency": "USD", "total_amount": 10_000}]
SELLER_A_ORDERS = ONE_ORDER + [
    {"order_id": "ORD-2", "seller_id": "SELLER-A", "seller_currency": "USD", "total_amount": 3_333},
]


async def _receive(session_factory, event_store, source_key, amount=10_000):
    async with session_factory() as session, session.begin():
        return await record_amount_received(
            session,
            event_store,
            invoice_id="INVC-1",
            amount=amount,
            currency="USD",
            source_key=source_key,
            received_at=datetime.now(timezone.utc),
        )


async def _aggregate(session_factory, payout_id, order_ids=None):
    async with session_factory() as session, session.begin():
        return await aggregate_payout(session, PayoutRequested(
            payout_id=payout_id,
            seller_id="SELLER-A",
            currency="USD",
            target_type="bank_wallet",
            order_ids=order_ids,
        ))


@pytest.mark.asyncio
async def test_concurrent_receipts_mark_invoice_paid_once(flow, session_factory, event_store):
    await flow.request_invoice("INVC-1", "USD", ONE_ORDER)

    results = await asyncio.gather(
        _receive(session_factory, event_store, "tx:a"),
        _receive(session_factory, event_store, "tx:b"),
    )

    assert sorted(r.became_paid for r in results) == [False, True]
    assert sorted(r.overpayment for r in results) == [False, True]
    assert len(await flow.events("invoice.paid")) == 1
    assert len(await flow.audit("invoice_paid", invoice_id="INVC-1")) == 1
    assert len(await flow.audit("overpayment", invoice_id="INVC-1")) == 1

    invoice = await flow.invoice("INVC-1")
    assert invoice.final_amount_paid == 10_000
    assert invoice.amount_captured == 20_000
    await flow.assert_ledger_consistent("INVC-1")


@pytest.mark.asyncio
async def test_concurrently_processed_receipts_settle_once(flow, processor, event_store):
    await flow.request_invoice("INVC-1", "USD", ONE_ORDER)
    await flow.receive("INVC-1", 10_000, "tx-a", "USD", run=False)
    await flow.receive("INVC-1", 10_000, "tx-b", "USD", run=False)

    claimed = await event_store.claim_batch(10)
    assert [e.kind for e in claimed] == ["amount.received", "amount.received"]
    await asyncio.gather(*(processor.process(e) for e in claimed))
    await processor.run_until_idle()

    assert all(e.status == "done" for e in await flow.events())
    assert len(await flow.events("invoice.paid")) == 1
    assert len(await flow.events("fee.charge_requested")) == 1
    assert await flow.count(Fee) == 1
    await flow.assert_ledger_consistent("INVC-1")


@pytest.mark.asyncio
async def test_worker_pool_settles_invoice_once(flow, processor):
    await flow.request_invoice("INVC-1", "USD", ONE_ORDER)
    for tx in ("tx-a", "tx-b", "tx-c"):
        await flow.receive("INVC-1", 5_000, tx, "USD", run=False)

    pool = WorkerPool(processor, workers=2, poll_interval=0.01, batch_size=1)
    pool.start()
    try:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + 5.0
        while loop.time() < deadline:
            events = await flow.events()
            if all(e.status == "done" for e in events) and await flow.count(Fee) == 1:
                break
            await asyncio.sleep(0.02)
    finally:
        await pool.stop()

    assert all(e.status == "done" for e in await flow.events())
    assert len(await flow.events("invoice.paid")) == 1
    assert len(await flow.audit("invoice_paid", invoice_id="INVC-1")) == 1
    assert len(await flow.audit("overpayment", invoice_id="INVC-1")) == 1
    assert (await flow.invoice("INVC-1")).amount_captured == 15_000


@pytest.mark.asyncio
async def test_racing_payouts_pay_each_order_once(flow, session_factory):
    await flow.request_invoice("INVC-1", "USD", SELLER_A_ORDERS)
    await flow.receive("INVC-1", 13_333, "tx-1", "USD")

    results = await asyncio.gather(
        _aggregate(session_factory, "PO-1"),
        _aggregate(session_factory, "PO-2"),
        return_exceptions=True,
    )

    payouts = [r for r in results if isinstance(r, Payout)]
    errors = [r for r in results if not isinstance(r, Payout)]
    assert len(payouts) == 1
    assert len(errors) == 1
    assert isinstance(errors[0], (InvalidError, ConflictError))

    assert await flow.count(Payout) == 1
    assert await flow.count(OrderPayout) == 2
    async with session_factory() as session:
        assert await PayoutRepo(session).order_ids(payouts[0].id) == ["ORD-1", "ORD-2"]


@pytest.mark.asyncio
async def test_racing_payout_events_for_the_same_order(flow, processor, event_store):
    await flow.request_invoice("INVC-1", "USD", SELLER_A_ORDERS)
    await flow.receive("INVC-1", 13_333, "tx-1", "USD")
    first = await flow.request_payout("PO-1", "SELLER-A", "USD", order_ids=["ORD-1"], run=False)
    second = await flow.request_payout("PO-2", "SELLER-A", "USD", order_ids=["ORD-1"], run=False)

    claimed = await event_store.claim_batch(10)
    assert {e.id for e in claimed} == {first, second}
    await asyncio.gather(*(processor.process(e) for e in claimed))

    assert (await flow.event(first)).status == "done"
    assert (await flow.event(second)).status == "done"
    assert await flow.count(Payout) == 1
    assert await flow.count(OrderPayout) == 1
    [ignored] = await flow.audit("duplicate_ignored")
    assert ignored.event_id in (first, second)
