"""
Invoice/order aggregate.

An invoice is the buyer's side of a cart; each order in it is one seller's
share. Funds arrive as AmountReceived ledger rows and the invoice becomes
paid the moment the ledger total reaches the price computed from the
orders' locked exchange rates. That transition happens once, as a
compare-and-set on ``paid_at`` inside a transaction holding the invoice
row, and publishes an ``invoice.paid`` event
that drives fees for every order.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from settlement_engine.audit.logger import log_event
from settlement_engine.engine.accounts import acquire_account, get_pooled_account, release_account, validate_currency
from settlement_engine.engine.errors import ConflictError, InvalidError, NotFoundError
from settlement_engine.engine.event_store import EventStore
from settlement_engine.engine.pricing import InvoicePrice, price_invoice
from settlement_engine.models.events import InvoicePaid, InvoiceRequested, OrderRateLockRequested
from settlement_engine.models.tables import Invoice
from settlement_engine.repos import InvoiceRepo, OrderRepo

logger = logging.getLogger("settlement_engine.invoices")


@dataclass
class ReceiptResult:
    """Outcome of recording funds against an invoice."""

    recorded: bool
    amount_captured: int
    became_paid: bool = False
    overpayment: bool = False


async def create_invoice(
    session: AsyncSession,
    event_store: EventStore,
    payload: InvoiceRequested,
    event_id: Optional[int] = None,
) -> Invoice:
    """
    Create an invoice with its orders, or return it if it already exists.

    Each order gets a pending exchange-rate row and an
    ``order.rate_lock_requested`` event; the invoice cannot become paid
    until every order's rate is locked.
    """
    invoices = InvoiceRepo(session)
    orders = OrderRepo(session)

    existing = await invoices.get(payload.invoice_id)
    if existing is not None:
        if existing.buyer_currency != payload.buyer_currency:
            raise InvalidError(
                f"Invoice {payload.invoice_id} already exists in {existing.buyer_currency}"
            )
        logger.info("Invoice %s already exists, skipping create", payload.invoice_id)
        return existing

    validate_currency(payload.buyer_currency)
    seen: set[str] = set()
    for line in payload.orders:
        validate_currency(line.seller_currency)
        if line.order_id in seen or await orders.get(line.order_id) is not None:
            raise InvalidError(f"Order {line.order_id} is already attached to an invoice")
        seen.add(line.order_id)

    account = await acquire_account(session, payload.buyer_currency)
    invoice = await invoices.create(payload.invoice_id, payload.buyer_currency, account.id)

    for line in payload.orders:
        await orders.create(
            order_id=line.order_id,
            invoice_id=invoice.id,
            seller_id=line.seller_id,
            seller_currency=line.seller_currency,
            total_amount=line.total_amount,
            cashback_amount=line.cashback_amount,
        )
        await event_store.append(OrderRateLockRequested(order_id=line.order_id), session=session)

    await log_event(session, "invoice_created", event_id=event_id, invoice_id=invoice.id, details={
        "buyer_currency": invoice.buyer_currency,
        "account_id": account.id,
        "orders": [line.order_id for line in payload.orders],
    })
    return invoice


async def delete_invoice(session: AsyncSession, invoice_id: str, event_id: Optional[int] = None) -> bool:
    """
    Delete an unpaid invoice together with its orders.

    Returns False if the invoice is already gone. A paid invoice is settled
    and cannot be deleted.
    """
    invoices = InvoiceRepo(session)
    invoice = await invoices.get(invoice_id, for_update=True)
    if invoice is None:
        return False
    if invoice.paid_at is not None:
        raise ConflictError(f"Invoice {invoice_id} is paid and cannot be deleted")

    await invoices.delete(invoice_id)
    await log_event(session, "invoice_deleted", event_id=event_id, invoice_id=invoice_id)
    return True


async def get_invoice_price(session: AsyncSession, invoice: Invoice) -> InvoicePrice:
    orders_repo = OrderRepo(session)
    orders = await orders_repo.list_by_invoice(invoice.id)
    rates = await orders_repo.rates_for_orders([o.id for o in orders])
    return price_invoice(invoice.buyer_currency, orders, rates)


async def settle_if_paid(
    session: AsyncSession,
    event_store: EventStore,
    invoice: Invoice,
    paid_at: datetime,
    event_id: Optional[int] = None,
) -> bool:
    """
    Mark the invoice paid if the ledger covers its price.

    The caller must hold the invoice row (``InvoiceRepo.get(for_update=True)``)
    in the current transaction. The write itself is a compare-and-set on
    ``paid_at IS NULL``, so of two transactions that both saw the invoice
    unpaid only one performs the transition. Returns True only for that one.
    """
    if invoice.paid_at is not None:
        return False

    price = await get_invoice_price(session, invoice)
    required = price.total_price
    if required is None or invoice.amount_captured < required:
        return False

    won = await InvoiceRepo(session).mark_paid(
        invoice,
        final_amount_paid=required,
        final_cashback_amount=price.total_cashback or 0,
        paid_at=paid_at,
    )
    if not won:
        logger.info("Invoice %s was marked paid by a concurrent transaction", invoice.id)
        return False

    await event_store.append(InvoicePaid(invoice_id=invoice.id), session=session)
    await log_event(session, "invoice_paid", event_id=event_id, invoice_id=invoice.id, details={
        "amount_captured": invoice.amount_captured,
        "final_amount_paid": required,
        "final_cashback_amount": price.total_cashback or 0,
    })
    logger.info(
        "Invoice %s paid: captured %d %s of %d required",
        invoice.id,
        invoice.amount_captured,
        invoice.buyer_currency,
        required,
    )
    return True


async def record_amount_received(
    session: AsyncSession,
    event_store: EventStore,
    invoice_id: str,
    amount: int,
    currency: str,
    source_key: str,
    received_at: datetime,
    payment_intent_id: Optional[str] = None,
    event_id: Optional[int] = None,
) -> ReceiptResult:
    """
    Ledger funds received for an invoice and evaluate the paid transition.

    Idempotent on ``source_key``: a replayed receipt records nothing. Funds
    arriving after the invoice is paid are still ledgered, as an
    overpayment, and never trigger a second paid transition.
    """
    invoices = InvoiceRepo(session)
    invoice = await invoices.get(invoice_id, for_update=True)
    if invoice is None:
        raise NotFoundError(f"Invoice not found: {invoice_id}")
    if currency != invoice.buyer_currency:
        raise InvalidError(
            f"Received {currency} for invoice {invoice_id} billed in {invoice.buyer_currency}"
        )
    if amount <= 0:
        raise InvalidError(f"Received amount must be positive, got {amount}")

    if await invoices.has_received(source_key):
        logger.info("Amount %s already recorded for invoice %s", source_key, invoice_id)
        return ReceiptResult(recorded=False, amount_captured=invoice.amount_captured)

    captured = await invoices.add_amount_received(invoice, amount, source_key, payment_intent_id)
    await log_event(session, "amount_received", event_id=event_id, invoice_id=invoice_id, details={
        "amount": amount,
        "source_key": source_key,
        "amount_captured": captured,
    })

    if invoice.paid_at is None:
        if await settle_if_paid(session, event_store, invoice, received_at, event_id=event_id):
            return ReceiptResult(recorded=True, amount_captured=captured, became_paid=True)
        if invoice.paid_at is None:
            return ReceiptResult(recorded=True, amount_captured=captured)

    # Paid before this receipt, or by a concurrent one that won the transition
    await log_event(session, "overpayment", event_id=event_id, invoice_id=invoice_id, details={
        "amount": amount,
        "final_amount_paid": invoice.final_amount_paid,
        "amount_captured": captured,
    })
    logger.warning("Overpayment of %d on paid invoice %s (%s)", amount, invoice_id, source_key)
    return ReceiptResult(recorded=True, amount_captured=captured, overpayment=True)


async def close_paid_invoice(
    session: AsyncSession,
    invoice_id: str,
    event_id: Optional[int] = None,
) -> Invoice:
    """
    Post-payment housekeeping for ``invoice.paid``.

    Applies the orders' locked rates, sweeps the captured funds to the
    pooled account of the currency and releases the dedicated account.
    Safe to repeat.
    """
    invoices = InvoiceRepo(session)
    invoice = await invoices.get(invoice_id, for_update=True)
    if invoice is None:
        raise NotFoundError(f"Invoice not found: {invoice_id}")
    if invoice.paid_at is None:
        raise InvalidError(f"Invoice {invoice_id} is not paid")

    orders_repo = OrderRepo(session)
    orders = await orders_repo.list_by_invoice(invoice_id)
    await orders_repo.mark_rates_applied([o.id for o in orders])

    if invoice.account_id is not None:
        pooled = await get_pooled_account(session, invoice.buyer_currency)
        await log_event(session, "account_swept", event_id=event_id, invoice_id=invoice_id, details={
            "from_account": invoice.account_id,
            "to_account": pooled.id,
            "amount": invoice.amount_captured,
            "currency": invoice.buyer_currency,
        })
        await release_account(session, invoice)

    return invoice
