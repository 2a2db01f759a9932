"""Tests for per-order exchange-rate locking."""

from decimal import Decimal

import pytest
from sqlalchemy import select

from settlement_engine.engine.errors import NotFoundError
from settlement_engine.engine.exchange_rates import lock_rate
from settlement_engine.models.events import InvoiceDeleted
from settlement_engine.models.tables import Fee, OrderExchangeRate


async def _rate(session_factory, order_id) -> OrderExchangeRate:
    async with session_factory() as session:
        result = await session.execute(select(OrderExchangeRate).where(OrderExchangeRate.order_id == order_id))
        return result.scalars().one()


@pytest.mark.asyncio
async def test_same_currency_locks_at_one_without_oracle(flow, session_factory, oracle):
    await flow.request_invoice("INVC-1", "USD", [
        {"order_id": "ORD-1", "seller_id": "SELLER-A", "seller_currency": "USD", "total_amount": 1_000},
    ])

    rate = await _rate(session_factory, "ORD-1")
    assert rate.status == "locked"
    assert rate.rate == Decimal(1)
    assert oracle.calls == 0


@pytest.mark.asyncio
async def test_locked_rate_survives_oracle_drift(flow, session_factory, event_store, oracle, mixed_orders):
    await flow.request_invoice("INVC-1", "EUR", mixed_orders)
    calls = oracle.calls

    oracle.rates[("USD", "EUR")] = Decimal("2.5")
    result = await lock_rate(session_factory, event_store, oracle, "ORD-1")

    assert result.locked_now is False
    assert result.rate == Decimal("0.9")
    assert oracle.calls == calls
    assert (await _rate(session_factory, "ORD-1")).rate == Decimal("0.9")

    # Fees after payment still use the rate frozen at checkout
    await flow.receive("INVC-1", 9_000 + 5_289, "tx-1", "EUR")
    async with session_factory() as session:
        fee = (await session.execute(select(Fee).where(Fee.order_id == "ORD-1"))).scalars().one()
    assert fee.metadata_json["rate"] == "0.9"
    assert fee.metadata_json["settled_amount"] == 9_000
    assert (await _rate(session_factory, "ORD-1")).status == "applied"


@pytest.mark.asyncio
async def test_oracle_outage_is_retried(flow, session_factory, oracle, mixed_orders):
    oracle.available = False
    await flow.request_invoice("INVC-1", "EUR", mixed_orders)

    lock_events = await flow.events("order.rate_lock_requested")
    assert [e.status for e in lock_events] == ["failed", "failed"]
    assert all(e.attempt_count == 1 for e in lock_events)
    assert all(e.last_error.startswith("unavailable") for e in lock_events)
    assert (await _rate(session_factory, "ORD-1")).status == "pending"

    oracle.available = True
    await flow.make_due()
    await flow.processor.run_until_idle()

    lock_events = await flow.events("order.rate_lock_requested")
    assert [e.status for e in lock_events] == ["done", "done"]
    assert (await _rate(session_factory, "ORD-2")).rate == Decimal("1.15")


@pytest.mark.asyncio
async def test_missing_quote_ends_dead_after_retries(flow, oracle):
    await flow.request_invoice("INVC-1", "EUR", [
        {"order_id": "ORD-1", "seller_id": "SELLER-A", "seller_currency": "JPY", "total_amount": 5_000},
    ])

    for _ in range(3):
        await flow.make_due()
        await flow.processor.run_until_idle()

    [lock_event] = await flow.events("order.rate_lock_requested")
    assert lock_event.status == "dead"
    assert lock_event.attempt_count == 3


@pytest.mark.asyncio
async def test_lock_for_unknown_order(session_factory, event_store, oracle):
    with pytest.raises(NotFoundError):
        await lock_rate(session_factory, event_store, oracle, "ORD-404")


@pytest.mark.asyncio
async def test_lock_after_invoice_deleted(flow, session_factory, event_store, oracle, mixed_orders):
    oracle.available = False
    await flow.request_invoice("INVC-1", "EUR", mixed_orders)
    await flow.submit(InvoiceDeleted(invoice_id="INVC-1"))

    oracle.available = True
    await flow.make_due()
    await flow.processor.run_until_idle()

    lock_events = await flow.events("order.rate_lock_requested")
    assert [e.status for e in lock_events] == ["dead", "dead"]
    assert all(e.last_error.startswith("not_found") for e in lock_events)
