"""Payout and OrderPayout persistence."""

from datetime import datetime
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from settlement_engine.models.enums import FeeStatus
from settlement_engine.models.tables import Fee, Invoice, Order, OrderPayout, Payout


class PayoutRepo:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, payout_id: str, for_update: bool = False) -> Optional[Payout]:
        stmt = select(Payout).where(Payout.id == payout_id)
        if for_update:
            stmt = stmt.with_for_update()
        result = await self.session.execute(stmt.execution_options(populate_existing=True))
        return result.scalars().first()

    async def search(self, seller_id: Optional[str] = None) -> list[Payout]:
        stmt = select(Payout)
        if seller_id:
            stmt = stmt.where(Payout.seller_id == seller_id)
        result = await self.session.execute(stmt.order_by(Payout.initiated_at.desc()))
        return list(result.scalars().all())

    async def order_ids(self, payout_id: str) -> list[str]:
        result = await self.session.execute(
            select(OrderPayout.order_id).where(OrderPayout.payout_id == payout_id).order_by(OrderPayout.order_id)
        )
        return list(result.scalars().all())

    async def linked(self, order_ids: list[str]) -> dict[str, str]:
        """order_id → payout_id for the given orders that are already paid out."""
        if not order_ids:
            return {}
        result = await self.session.execute(
            select(OrderPayout.order_id, OrderPayout.payout_id).where(OrderPayout.order_id.in_(order_ids))
        )
        return {order_id: payout_id for order_id, payout_id in result.all()}

    async def by_order_ids(self, order_ids: list[str]) -> dict[str, Payout]:
        """order_id → payout for the given orders that are already paid out."""
        if not order_ids:
            return {}
        result = await self.session.execute(
            select(OrderPayout.order_id, Payout)
            .join(Payout, Payout.id == OrderPayout.payout_id)
            .where(OrderPayout.order_id.in_(order_ids))
            .order_by(OrderPayout.order_id)
        )
        return {order_id: payout for order_id, payout in result.all()}

    async def eligible_orders(
        self,
        seller_id: str,
        currency: str,
        order_ids: Optional[list[str]] = None,
    ) -> list[tuple[Order, Fee]]:
        """
        Orders of a seller in ``currency`` (the seller's currency) whose
        invoice is paid, whose fee is charged and which are not linked to
        any payout yet.
        """
        stmt = (
            select(Order, Fee)
            .join(Invoice, Invoice.id == Order.invoice_id)
            .join(Fee, Fee.order_id == Order.id)
            .outerjoin(OrderPayout, OrderPayout.order_id == Order.id)
            .where(
                Order.seller_id == seller_id,
                Order.seller_currency == currency,
                Invoice.paid_at.is_not(None),
                Fee.status == FeeStatus.CHARGED.value,
                OrderPayout.id.is_(None),
            )
            .order_by(Order.id)
        )
        if order_ids is not None:
            stmt = stmt.where(Order.id.in_(order_ids))
        result = await self.session.execute(stmt)
        return [(order, fee) for order, fee in result.all()]

    async def create(self, payout: Payout, order_ids: list[str]) -> Payout:
        self.session.add(payout)
        await self.session.flush()
        for order_id in order_ids:
            self.session.add(OrderPayout(order_id=order_id, payout_id=payout.id))
        await self.session.flush()
        return payout

    async def mark_completed(
        self,
        payout: Payout,
        completed_at: datetime,
        transfer_reference: Optional[str],
    ) -> None:
        payout.completed_at = completed_at
        if transfer_reference:
            payout.transfer_reference = transfer_reference
        await self.session.flush()
