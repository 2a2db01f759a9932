"""
Fee ledger.

When an invoice is paid every order gets one platform fee, a share of the
order's total in the seller's currency, and a ``fee.charge_requested``
event. The order's locked rate and the buyer-side amount it settled for are
kept in the fee metadata. Charging calls the gateway outside any
transaction with the idempotency key ``fee-<order id>``, so a retry after a
lost local write is answered with the original charge instead of a second
one.
"""

import logging
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from settlement_engine.audit.logger import log_event
from settlement_engine.config import settings
from settlement_engine.engine.errors import InvalidError, NotFoundError
from settlement_engine.engine.event_store import EventStore
from settlement_engine.engine.pricing import fee_for, price_order
from settlement_engine.engine.retry import ProviderError
from settlement_engine.models.enums import FeeStatus
from settlement_engine.models.events import FeeChargeRequested
from settlement_engine.models.tables import Fee, Invoice
from settlement_engine.providers.base import PaymentGateway
from settlement_engine.repos import FeeRepo, OrderRepo

logger = logging.getLogger("settlement_engine.fees")


def fee_idempotency_key(order_id: str) -> str:
    return f"fee-{order_id}"


async def create_fees_for_invoice(
    session: AsyncSession,
    event_store: EventStore,
    invoice: Invoice,
    fee_bps: Optional[int] = None,
    event_id: Optional[int] = None,
) -> list[Fee]:
    """
    Create the pending fee of every order of a paid invoice.

    Orders that already have a fee are skipped, so handling the same
    ``invoice.paid`` twice creates nothing new.
    """
    bps = fee_bps if fee_bps is not None else settings.platform_fee_bps
    orders_repo = OrderRepo(session)
    fees = FeeRepo(session)

    orders = await orders_repo.list_by_invoice(invoice.id)
    rates = await orders_repo.rates_for_orders([o.id for o in orders])
    existing = await fees.for_orders([o.id for o in orders])

    created = []
    for order in orders:
        if order.id in existing:
            continue
        price = price_order(order, rates.get(order.id))
        if price.buyer_total is None:
            raise InvalidError(f"Order {order.id} of paid invoice {invoice.id} has no locked rate")

        amount = fee_for(order.total_amount, bps)
        fee = await fees.create_pending(
            order_id=order.id,
            amount=amount,
            currency=order.seller_currency,
            metadata={
                "fee_bps": bps,
                "rate": str(price.rate),
                "settled_amount": price.buyer_total,
            },
        )
        await event_store.append(
            FeeChargeRequested(order_id=order.id),
            dedup_key=f"fee-charge:{order.id}",
            session=session,
        )
        await log_event(session, "fee_created", event_id=event_id, invoice_id=invoice.id, order_id=order.id, details={
            "amount": amount,
            "currency": order.seller_currency,
            "order_amount": order.total_amount,
            "fee_bps": bps,
        })
        created.append(fee)

    return created


async def charge_fee(
    session_factory: async_sessionmaker,
    gateway: PaymentGateway,
    order_id: str,
    event_id: Optional[int] = None,
) -> Fee:
    """
    Charge an order's pending (or previously failed) fee at the gateway.

    Raises:
        NotFoundError: The order has no fee.
        ProviderError: The gateway call failed; the fee is marked failed and
            the error propagates so the event is retried or dead-lettered.
    """
    # 1. Read the fee
    async with session_factory() as session:
        fee = await FeeRepo(session).get_by_order(order_id)
        if fee is None:
            raise NotFoundError(f"No fee for order {order_id}")
        if fee.status == FeeStatus.CHARGED.value:
            logger.info("Fee for order %s already charged (%s)", order_id, fee.charge_id)
            return fee
        amount = fee.amount
        currency = fee.currency

    # 2. Charge at the gateway, outside any transaction
    try:
        response = await gateway.charge_fee(
            order_id=order_id,
            amount=amount,
            currency=currency,
            idempotency_key=fee_idempotency_key(order_id),
        )
    except ProviderError as e:
        async with session_factory() as session, session.begin():
            fees = FeeRepo(session)
            fee = await fees.get_by_order(order_id, for_update=True)
            if fee is not None and fee.status != FeeStatus.CHARGED.value:
                await fees.mark_failed(fee, str(e))
                await log_event(session, "fee_failed", event_id=event_id, order_id=order_id, details={
                    "amount": amount,
                    "currency": currency,
                    "error": str(e),
                    "status_code": e.status_code,
                    "retriable": e.retriable,
                })
        logger.warning("Fee charge for order %s failed: %s", order_id, e)
        raise

    # 3. Record the charge
    async with session_factory() as session, session.begin():
        fees = FeeRepo(session)
        fee = await fees.get_by_order(order_id, for_update=True)
        if fee is None:
            raise NotFoundError(f"Fee for order {order_id} disappeared while charging")
        if fee.status != FeeStatus.CHARGED.value:
            await fees.mark_charged(fee, response.charge_id)
            await log_event(session, "fee_charged", event_id=event_id, order_id=order_id, details={
                "amount": amount,
                "currency": currency,
                "charge_id": response.charge_id,
                "provider": response.provider,
            })
            logger.info("Charged fee %d %s for order %s", amount, currency, order_id)

    return fee
