"""Integration tests for the invoice/order aggregate and the account ledger."""

from decimal import Decimal

import pytest
from sqlalchemy import select

from settlement_engine.engine.invoices import get_invoice_price
from settlement_engine.models.events import InvoiceDeleted
from settlement_engine.models.tables import Account, Invoice, Order, OrderExchangeRate

MIXED_TOTAL = 9_000 + 5_289  # ORD-1 and ORD-2 of mixed_orders in EUR


async def _rates(session_factory) -> dict[str, OrderExchangeRate]:
    async with session_factory() as session:
        rows = (await session.execute(select(OrderExchangeRate))).scalars().all()
    return {r.order_id: r for r in rows}


@pytest.mark.asyncio
async def test_invoice_created_with_locked_rates(flow, session_factory, mixed_orders):
    await flow.request_invoice("INVC-1", "EUR", mixed_orders)

    invoice = await flow.invoice("INVC-1")
    assert invoice.buyer_currency == "EUR"
    assert invoice.amount_captured == 0
    assert invoice.paid_at is None
    assert invoice.account_id is not None

    rates = await _rates(session_factory)
    assert rates["ORD-1"].status == "locked"
    assert rates["ORD-1"].rate == Decimal("0.9")
    assert rates["ORD-2"].rate == Decimal("1.15")

    lock_events = await flow.events("order.rate_lock_requested")
    assert len(lock_events) == 2
    assert all(e.status == "done" for e in lock_events)

    async with session_factory() as session:
        price = await get_invoice_price(session, await session.get(Invoice, "INVC-1"))
    assert price.total_price == MIXED_TOTAL
    assert price.total_cashback == 139  # floor(155 * 0.9)


@pytest.mark.asyncio
async def test_invoice_request_is_idempotent(flow, mixed_orders):
    await flow.request_invoice("INVC-1", "EUR", mixed_orders)
    second = await flow.request_invoice("INVC-1", "EUR", mixed_orders)

    assert (await flow.event(second)).status == "done"
    assert await flow.count(Invoice) == 1
    assert await flow.count(Order) == 2
    assert await flow.count(Account) == 1


@pytest.mark.asyncio
async def test_order_cannot_join_two_invoices(flow, mixed_orders):
    await flow.request_invoice("INVC-1", "EUR", mixed_orders)
    event_id = await flow.request_invoice("INVC-2", "EUR", mixed_orders[:1])

    entry = await flow.event(event_id)
    assert entry.status == "dead"
    assert "ORD-1" in entry.last_error
    assert await flow.invoice("INVC-2") is None


@pytest.mark.asyncio
@pytest.mark.parametrize("arrival", [["tx-a", "tx-b"], ["tx-b", "tx-a"]])
async def test_partial_payments_in_any_order(flow, arrival):
    """10000 required, 6000 and 4000 received: paid exactly once, on the second receipt."""
    amounts = {"tx-a": 6_000, "tx-b": 4_000}
    await flow.request_invoice("INVC-1", "USD", [
        {"order_id": "ORD-1", "seller_id": "SELLER-A", "seller_currency": "USD", "total_amount": 10_000},
    ])

    await flow.receive("INVC-1", amounts[arrival[0]], arrival[0], "USD")
    invoice = await flow.invoice("INVC-1")
    assert invoice.paid_at is None
    assert invoice.amount_captured == amounts[arrival[0]]
    await flow.assert_ledger_consistent("INVC-1")

    await flow.receive("INVC-1", amounts[arrival[1]], arrival[1], "USD")
    invoice = await flow.invoice("INVC-1")
    assert invoice.amount_captured == 10_000
    assert invoice.paid_at is not None
    assert invoice.final_amount_paid == 10_000
    await flow.assert_ledger_consistent("INVC-1")

    assert len(await flow.audit("invoice_paid", invoice_id="INVC-1")) == 1
    assert len(await flow.events("invoice.paid")) == 1


@pytest.mark.asyncio
async def test_replayed_receipt_is_ledgered_once(flow):
    await flow.request_invoice("INVC-1", "USD", [
        {"order_id": "ORD-1", "seller_id": "SELLER-A", "seller_currency": "USD", "total_amount": 10_000},
    ])

    first = await flow.receive("INVC-1", 3_000, "tx-1", "USD")
    second = await flow.receive("INVC-1", 3_000, "tx-1", "USD")

    assert first != second
    assert (await flow.event(second)).status == "done"
    assert len(await flow.received("INVC-1")) == 1
    assert (await flow.invoice("INVC-1")).amount_captured == 3_000


@pytest.mark.asyncio
async def test_payment_after_paid_is_overpayment(flow):
    await flow.request_invoice("INVC-1", "USD", [
        {"order_id": "ORD-1", "seller_id": "SELLER-A", "seller_currency": "USD", "total_amount": 10_000},
    ])
    await flow.receive("INVC-1", 10_000, "tx-1", "USD")
    paid_at = (await flow.invoice("INVC-1")).paid_at

    await flow.receive("INVC-1", 500, "tx-2", "USD")

    invoice = await flow.invoice("INVC-1")
    assert invoice.paid_at == paid_at
    assert invoice.final_amount_paid == 10_000
    assert invoice.amount_captured == 10_500
    await flow.assert_ledger_consistent("INVC-1")
    assert len(await flow.audit("overpayment", invoice_id="INVC-1")) == 1
    assert len(await flow.events("invoice.paid")) == 1


@pytest.mark.asyncio
async def test_receipt_in_wrong_currency_is_dead(flow):
    await flow.request_invoice("INVC-1", "USD", [
        {"order_id": "ORD-1", "seller_id": "SELLER-A", "seller_currency": "USD", "total_amount": 10_000},
    ])

    event_id = await flow.receive("INVC-1", 10_000, "tx-1", "EUR")

    assert (await flow.event(event_id)).status == "dead"
    assert (await flow.invoice("INVC-1")).amount_captured == 0


@pytest.mark.asyncio
async def test_receipt_for_unknown_invoice_is_dead(flow):
    event_id = await flow.receive("INVC-404", 100, "tx-1", "USD")

    entry = await flow.event(event_id)
    assert entry.status == "dead"
    assert entry.last_error.startswith("not_found")


@pytest.mark.asyncio
async def test_funds_waiting_on_rate_settle_when_locked(flow, oracle, mixed_orders):
    oracle.available = False
    await flow.request_invoice("INVC-1", "EUR", mixed_orders)
    await flow.receive("INVC-1", MIXED_TOTAL, "tx-1", "EUR")

    invoice = await flow.invoice("INVC-1")
    assert invoice.paid_at is None
    assert invoice.amount_captured == MIXED_TOTAL

    oracle.available = True
    await flow.make_due()
    await flow.processor.run_until_idle()

    invoice = await flow.invoice("INVC-1")
    assert invoice.paid_at is not None
    assert invoice.final_amount_paid == MIXED_TOTAL
    assert invoice.final_cashback_amount == 139


@pytest.mark.asyncio
async def test_delete_unpaid_invoice_cascades(flow, session_factory, mixed_orders):
    await flow.request_invoice("INVC-1", "EUR", mixed_orders)
    await flow.receive("INVC-1", 1_000, "tx-1", "EUR")

    event_id = await flow.submit(InvoiceDeleted(invoice_id="INVC-1"))

    assert (await flow.event(event_id)).status == "done"
    assert await flow.invoice("INVC-1") is None
    assert await flow.count(Order) == 0
    assert await _rates(session_factory) == {}
    assert await flow.received("INVC-1") == []


@pytest.mark.asyncio
async def test_delete_paid_invoice_is_rejected(flow):
    await flow.request_invoice("INVC-1", "USD", [
        {"order_id": "ORD-1", "seller_id": "SELLER-A", "seller_currency": "USD", "total_amount": 1_000},
    ])
    await flow.receive("INVC-1", 1_000, "tx-1", "USD")

    event_id = await flow.submit(InvoiceDeleted(invoice_id="INVC-1"))

    assert (await flow.event(event_id)).status == "done"
    assert len(await flow.audit("duplicate_ignored", event_id=event_id)) == 1
    assert (await flow.invoice("INVC-1")).paid_at is not None


@pytest.mark.asyncio
async def test_paid_invoice_releases_account_for_reuse(flow, session_factory):
    await flow.request_invoice("INVC-1", "USD", [
        {"order_id": "ORD-1", "seller_id": "SELLER-A", "seller_currency": "USD", "total_amount": 1_000},
    ])
    account_id = (await flow.invoice("INVC-1")).account_id

    await flow.receive("INVC-1", 1_000, "tx-1", "USD")
    assert (await flow.invoice("INVC-1")).account_id is None

    await flow.request_invoice("INVC-2", "USD", [
        {"order_id": "ORD-2", "seller_id": "SELLER-A", "seller_currency": "USD", "total_amount": 2_000},
    ])
    assert (await flow.invoice("INVC-2")).account_id == account_id

    async with session_factory() as session:
        pooled = (await session.execute(select(Account).where(Account.is_pooled.is_(True)))).scalars().all()
    assert [a.currency for a in pooled] == ["USD"]
    assert len(await flow.audit("account_swept", invoice_id="INVC-1")) == 1


@pytest.mark.asyncio
async def test_open_invoices_get_distinct_accounts(flow):
    for i in (1, 2):
        await flow.request_invoice(f"INVC-{i}", "USD", [
            {"order_id": f"ORD-{i}", "seller_id": "SELLER-A", "seller_currency": "USD", "total_amount": 1_000},
        ])

    first, second = await flow.invoice("INVC-1"), await flow.invoice("INVC-2")
    assert first.account_id != second.account_id


@pytest.mark.asyncio
async def test_amounts_beyond_64_bits(flow):
    """18-decimal token amounts survive storage and arithmetic exactly."""
    await flow.request_invoice("INVC-ETH", "ETH", [
        {"order_id": "ORD-1", "seller_id": "SELLER-A", "seller_currency": "USD", "total_amount": 1_500_000},
    ])
    required = 1_500_000 * 10**13  # 15 ETH in wei
    assert required > 2**63

    await flow.receive("INVC-ETH", required - 1, "0xabc", "ETH")
    assert (await flow.invoice("INVC-ETH")).paid_at is None

    await flow.receive("INVC-ETH", 1, "0xdef", "ETH")
    invoice = await flow.invoice("INVC-ETH")
    assert invoice.amount_captured == required
    assert invoice.final_amount_paid == required
