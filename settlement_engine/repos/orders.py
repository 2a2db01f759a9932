"""Order and OrderExchangeRate persistence."""

from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from settlement_engine.models.enums import ExchangeRateStatus
from settlement_engine.models.tables import Order, OrderExchangeRate


class OrderRepo:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, order_id: str) -> Optional[Order]:
        return await self.session.get(Order, order_id)

    async def list_by_invoice(self, invoice_id: str) -> list[Order]:
        result = await self.session.execute(
            select(Order).where(Order.invoice_id == invoice_id).order_by(Order.id)
        )
        return list(result.scalars().all())

    async def create(
        self,
        order_id: str,
        invoice_id: str,
        seller_id: str,
        seller_currency: str,
        total_amount: int,
        cashback_amount: int,
    ) -> Order:
        order = Order(
            id=order_id,
            invoice_id=invoice_id,
            seller_id=seller_id,
            seller_currency=seller_currency,
            total_amount=total_amount,
            cashback_amount=cashback_amount,
        )
        self.session.add(order)
        self.session.add(OrderExchangeRate(
            order_id=order_id,
            status=ExchangeRateStatus.PENDING.value,
        ))
        await self.session.flush()
        return order

    async def get_rate(self, order_id: str) -> Optional[OrderExchangeRate]:
        result = await self.session.execute(
            select(OrderExchangeRate)
            .where(OrderExchangeRate.order_id == order_id)
            .execution_options(populate_existing=True)
        )
        return result.scalars().first()

    async def rates_for_orders(self, order_ids: list[str]) -> dict[str, OrderExchangeRate]:
        if not order_ids:
            return {}
        result = await self.session.execute(
            select(OrderExchangeRate)
            .where(OrderExchangeRate.order_id.in_(order_ids))
            .execution_options(populate_existing=True)
        )
        return {r.order_id: r for r in result.scalars().all()}

    async def lock_rate(self, order_id: str, rate: Decimal, exchange_id: Optional[str]) -> bool:
        """
        Freeze the rate for an order.

        Only a pending row transitions, so a rate that is already locked is
        never overwritten by a later oracle reading. Returns True if this call
        performed the lock.
        """
        result = await self.session.execute(
            update(OrderExchangeRate)
            .where(
                OrderExchangeRate.order_id == order_id,
                OrderExchangeRate.status == ExchangeRateStatus.PENDING.value,
            )
            .values(
                rate=rate,
                exchange_id=exchange_id,
                status=ExchangeRateStatus.LOCKED.value,
                updated_at=datetime.now(timezone.utc),
            )
        )
        return result.rowcount == 1

    async def mark_rates_applied(self, order_ids: list[str]) -> None:
        if not order_ids:
            return
        await self.session.execute(
            update(OrderExchangeRate)
            .where(
                OrderExchangeRate.order_id.in_(order_ids),
                OrderExchangeRate.status == ExchangeRateStatus.LOCKED.value,
            )
            .values(
                status=ExchangeRateStatus.APPLIED.value,
                updated_at=datetime.now(timezone.utc),
            )
        )
