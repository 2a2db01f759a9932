"""
Per-order exchange-rate lock.

The oracle is asked once per order, outside any transaction, and the quote
is frozen on the order's rate row. Every later computation for the order
(invoice price, fee, payout) reads that frozen rate and never the live one,
so sellers and buyers are protected from drift between checkout and
settlement. Locking is idempotent on the order id.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from sqlalchemy.ext.asyncio import async_sessionmaker

from settlement_engine.audit.logger import log_event
from settlement_engine.engine.errors import InvalidError, NotFoundError, UnavailableError
from settlement_engine.engine.event_store import EventStore
from settlement_engine.engine.invoices import settle_if_paid
from settlement_engine.models.enums import ExchangeRateStatus
from settlement_engine.providers.base import ExchangeRateOracle, RateQuote, RateUnavailable
from settlement_engine.repos import InvoiceRepo, OrderRepo

logger = logging.getLogger("settlement_engine.exchange_rates")


@dataclass
class LockResult:
    order_id: str
    status: str
    rate: Optional[Decimal]
    locked_now: bool = False


async def lock_rate(
    session_factory: async_sessionmaker,
    event_store: EventStore,
    oracle: ExchangeRateOracle,
    order_id: str,
    event_id: Optional[int] = None,
) -> LockResult:
    """
    Lock the exchange rate for an order.

    Raises:
        NotFoundError: Unknown order.
        UnavailableError: The oracle has no rate right now; the row stays
            pending and the request is retried.
    """
    # 1. Read the order and its current lock
    async with session_factory() as session:
        orders = OrderRepo(session)
        order = await orders.get(order_id)
        if order is None:
            raise NotFoundError(f"Order not found: {order_id}")
        rate_row = await orders.get_rate(order_id)
        if rate_row is None:
            raise InvalidError(f"Order {order_id} has no exchange-rate row")
        if rate_row.status != ExchangeRateStatus.PENDING.value:
            return LockResult(order_id=order_id, status=rate_row.status, rate=rate_row.rate)

        invoice = await InvoiceRepo(session).get(order.invoice_id)
        seller_currency = order.seller_currency
        buyer_currency = invoice.buyer_currency
        invoice_id = invoice.id

    # 2. Ask the oracle, outside any transaction
    if seller_currency == buyer_currency:
        quote = RateQuote(rate=Decimal(1))
    else:
        try:
            quote = await oracle.get_rate(seller_currency, buyer_currency)
        except RateUnavailable as e:
            raise UnavailableError(
                f"No {seller_currency}->{buyer_currency} rate for order {order_id}: {e}"
            ) from e
        if quote.rate <= 0:
            raise UnavailableError(f"Oracle returned non-positive rate {quote.rate} for order {order_id}")

    # 3. Freeze it, and settle the invoice if funds were already waiting on this rate
    async with session_factory() as session, session.begin():
        invoices = InvoiceRepo(session)
        invoice = await invoices.get(invoice_id, for_update=True)
        if invoice is None:
            raise NotFoundError(f"Invoice {invoice_id} of order {order_id} was deleted")
        locked_now = await OrderRepo(session).lock_rate(order_id, quote.rate, quote.exchange_id)
        rate_row = await OrderRepo(session).get_rate(order_id)

        if locked_now:
            await log_event(session, "rate_locked", event_id=event_id, invoice_id=invoice_id, order_id=order_id, details={
                "from": seller_currency,
                "to": buyer_currency,
                "rate": str(quote.rate),
                "exchange_id": quote.exchange_id,
            })
            logger.info(
                "Locked %s->%s rate %s for order %s", seller_currency, buyer_currency, quote.rate, order_id
            )
            await settle_if_paid(session, event_store, invoice, datetime.now(timezone.utc), event_id=event_id)

    return LockResult(
        order_id=order_id,
        status=rate_row.status,
        rate=rate_row.rate,
        locked_now=locked_now,
    )
