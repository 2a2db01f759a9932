"""Account persistence."""

from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from settlement_engine.models.tables import Account, Invoice


class AccountRepo:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, account_id: str) -> Optional[Account]:
        return await self.session.get(Account, account_id)

    async def find_free_dedicated(self, currency: str) -> Optional[Account]:
        """A dedicated account of this currency not linked to any invoice."""
        linked = select(Invoice.account_id).where(Invoice.account_id.is_not(None))
        result = await self.session.execute(
            select(Account)
            .where(
                Account.currency == currency,
                Account.is_pooled.is_(False),
                Account.id.not_in(linked),
            )
            .order_by(Account.created_at, Account.id)
            .limit(1)
            .with_for_update(skip_locked=True)
        )
        return result.scalars().first()

    async def get_pooled(self, currency: str) -> Optional[Account]:
        result = await self.session.execute(
            select(Account)
            .where(Account.currency == currency, Account.is_pooled.is_(True))
            .order_by(Account.created_at, Account.id)
            .limit(1)
        )
        return result.scalars().first()

    async def create(self, currency: str, is_pooled: bool = False) -> Account:
        account = Account(currency=currency, is_pooled=is_pooled)
        self.session.add(account)
        await self.session.flush()
        return account
