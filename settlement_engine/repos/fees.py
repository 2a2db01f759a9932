"""Fee persistence. One fee row per order."""

from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from settlement_engine.models.enums import FeeStatus
from settlement_engine.models.tables import Fee


class FeeRepo:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_by_order(self, order_id: str, for_update: bool = False) -> Optional[Fee]:
        stmt = select(Fee).where(Fee.order_id == order_id)
        if for_update:
            stmt = stmt.with_for_update()
        result = await self.session.execute(stmt.execution_options(populate_existing=True))
        return result.scalars().first()

    async def for_orders(self, order_ids: list[str]) -> dict[str, Fee]:
        if not order_ids:
            return {}
        result = await self.session.execute(
            select(Fee).where(Fee.order_id.in_(order_ids)).execution_options(populate_existing=True)
        )
        return {f.order_id: f for f in result.scalars().all()}

    async def create_pending(
        self,
        order_id: str,
        amount: int,
        currency: str,
        metadata: Optional[dict[str, Any]] = None,
    ) -> Fee:
        fee = Fee(
            order_id=order_id,
            amount=amount,
            currency=currency,
            status=FeeStatus.PENDING.value,
            metadata_json=metadata,
        )
        self.session.add(fee)
        await self.session.flush()
        return fee

    async def mark_charged(self, fee: Fee, charge_id: str) -> None:
        fee.status = FeeStatus.CHARGED.value
        fee.charge_id = charge_id
        await self.session.flush()

    async def mark_failed(self, fee: Fee, error: str) -> None:
        fee.status = FeeStatus.FAILED.value
        fee.metadata_json = {**(fee.metadata_json or {}), "last_error": error}
        await self.session.flush()
