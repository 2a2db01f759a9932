"""
Payout aggregator.

Batches a seller's settled orders into one payout, in the seller's currency:

    gross = Σ order total
    fees  = Σ charged platform fees of those orders
    net   = gross - fees - blockchain_fee

Only orders priced in the payout currency, whose invoice is paid, whose fee
is charged and which are not linked to a payout yet are eligible. The links
in ``order_payouts`` are unique per order, so an order can never be paid
out twice even if two requests race.
"""

import logging
from dataclasses import dataclass, field
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from settlement_engine.audit.logger import log_event
from settlement_engine.engine.errors import ConflictError, InvalidError, NotFoundError
from settlement_engine.models.enums import PayoutTargetType
from settlement_engine.models.events import PayoutCompleted, PayoutRequested
from settlement_engine.models.tables import Payout
from settlement_engine.repos import PayoutRepo

logger = logging.getLogger("settlement_engine.payouts")


@dataclass
class PayoutCalculation:
    """What a payout for these orders would be, before anything is written."""

    seller_id: str
    currency: str
    order_ids: list[str]
    gross_amount: int
    total_fees: int
    blockchain_fee: int
    net_amount: int


@dataclass
class PayoutsByOrders:
    payouts: dict[str, Payout] = field(default_factory=dict)
    order_ids_without_payout: list[str] = field(default_factory=list)


async def calculate_payout(
    session: AsyncSession,
    seller_id: str,
    currency: str,
    order_ids: Optional[list[str]] = None,
    blockchain_fee: int = 0,
) -> PayoutCalculation:
    """
    Sum up the seller's eligible orders, or the given ones.

    With no eligible orders the calculation is empty (gross 0). The net
    amount is not checked here; it may be negative.

    Raises:
        InvalidError: An explicit order list is empty or names an order that
            is not eligible.
        ConflictError: An explicit order is already part of a payout.
    """
    payouts = PayoutRepo(session)

    requested = None
    if order_ids is not None:
        requested = sorted(set(order_ids))
        if not requested:
            raise InvalidError(f"Payout for {seller_id} lists no orders")
        linked = await payouts.linked(requested)
        if linked:
            raise ConflictError(
                "Orders already paid out: "
                + ", ".join(f"{o} (payout {p})" for o, p in sorted(linked.items()))
            )

    eligible = await payouts.eligible_orders(seller_id, currency, requested)
    if requested is not None:
        missing = set(requested) - {order.id for order, _ in eligible}
        if missing:
            raise InvalidError(
                f"Orders not eligible for payout to {seller_id} in {currency}: "
                + ", ".join(sorted(missing))
            )

    gross = sum(order.total_amount for order, _ in eligible)
    total_fees = sum(fee.amount for _, fee in eligible)
    return PayoutCalculation(
        seller_id=seller_id,
        currency=currency,
        order_ids=[order.id for order, _ in eligible],
        gross_amount=gross,
        total_fees=total_fees,
        blockchain_fee=blockchain_fee,
        net_amount=gross - total_fees - blockchain_fee,
    )


async def get_payouts_for_orders(session: AsyncSession, order_ids: list[str]) -> PayoutsByOrders:
    """Payouts of the given orders, keyed by order id, plus the orders not paid out yet."""
    requested = sorted(set(order_ids))
    payouts = await PayoutRepo(session).by_order_ids(requested)
    return PayoutsByOrders(
        payouts=payouts,
        order_ids_without_payout=[o for o in requested if o not in payouts],
    )


async def aggregate_payout(
    session: AsyncSession,
    payload: PayoutRequested,
    event_id: Optional[int] = None,
) -> Payout:
    """
    Create a payout for the seller's eligible orders.

    Replaying a request for an existing payout id returns that payout.

    Raises:
        InvalidError: No eligible orders, an explicit order is not eligible,
            an on-chain payout without a wallet, or fees exceeding gross.
        ConflictError: An explicit order is already part of a payout.
    """
    payouts = PayoutRepo(session)

    existing = await payouts.get(payload.payout_id)
    if existing is not None:
        logger.info("Payout %s already exists, skipping", payload.payout_id)
        return existing

    if payload.target_type == PayoutTargetType.ONCHAIN_WALLET.value and not payload.wallet_address:
        raise InvalidError(f"Payout {payload.payout_id} targets an on-chain wallet but has no address")

    calc = await calculate_payout(
        session,
        payload.seller_id,
        payload.currency,
        order_ids=payload.order_ids,
        blockchain_fee=payload.blockchain_fee,
    )
    if not calc.order_ids:
        raise InvalidError(f"No eligible orders for seller {payload.seller_id} in {payload.currency}")
    if calc.net_amount < 0:
        raise InvalidError(
            f"Payout {payload.payout_id} would be negative: gross {calc.gross_amount}, "
            f"fees {calc.total_fees}, blockchain fee {calc.blockchain_fee}"
        )

    payout = Payout(
        id=payload.payout_id,
        seller_id=payload.seller_id,
        currency=payload.currency,
        gross_amount=calc.gross_amount,
        total_fees=calc.total_fees,
        blockchain_fee=payload.blockchain_fee,
        net_amount=calc.net_amount,
        target_type=payload.target_type,
        wallet_address=payload.wallet_address,
    )
    try:
        await payouts.create(payout, calc.order_ids)
    except IntegrityError as e:
        raise ConflictError(f"Orders of payout {payload.payout_id} were paid out concurrently") from e

    await log_event(session, "payout_initiated", event_id=event_id, payout_id=payout.id, details={
        "seller_id": payout.seller_id,
        "currency": payout.currency,
        "orders": calc.order_ids,
        "gross_amount": calc.gross_amount,
        "total_fees": calc.total_fees,
        "blockchain_fee": payload.blockchain_fee,
        "net_amount": calc.net_amount,
    })
    logger.info(
        "Payout %s initiated for seller %s: %d orders, net %d %s",
        payout.id,
        payout.seller_id,
        len(calc.order_ids),
        calc.net_amount,
        payout.currency,
    )
    return payout


async def complete_payout(
    session: AsyncSession,
    payload: PayoutCompleted,
    event_id: Optional[int] = None,
) -> Payout:
    payouts = PayoutRepo(session)
    payout = await payouts.get(payload.payout_id, for_update=True)
    if payout is None:
        raise NotFoundError(f"Payout not found: {payload.payout_id}")
    if payout.completed_at is not None:
        return payout

    await payouts.mark_completed(payout, payload.completed_at, payload.transfer_reference)
    await log_event(session, "payout_completed", event_id=event_id, payout_id=payout.id, details={
        "net_amount": payout.net_amount,
        "currency": payout.currency,
        "transfer_reference": payload.transfer_reference,
    })
    return payout
