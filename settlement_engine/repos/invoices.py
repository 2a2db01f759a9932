"""Invoice and AmountReceived persistence."""

from datetime import datetime
from typing import Optional

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from settlement_engine.models.tables import AmountReceived, Invoice


class InvoiceRepo:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, invoice_id: str, for_update: bool = False) -> Optional[Invoice]:
        """Load an invoice, optionally locking its row for the rest of the transaction."""
        stmt = select(Invoice).where(Invoice.id == invoice_id)
        if for_update:
            stmt = stmt.with_for_update()
        result = await self.session.execute(stmt.execution_options(populate_existing=True))
        return result.scalars().first()

    async def create(self, invoice_id: str, buyer_currency: str, account_id: Optional[str]) -> Invoice:
        invoice = Invoice(
            id=invoice_id,
            account_id=account_id,
            buyer_currency=buyer_currency,
            amount_captured=0,
        )
        self.session.add(invoice)
        await self.session.flush()
        return invoice

    async def delete(self, invoice_id: str) -> None:
        """Delete an invoice; orders, rates, fees and ledger rows go with it (ON DELETE CASCADE)."""
        await self.session.execute(delete(Invoice).where(Invoice.id == invoice_id))

    async def has_received(self, source_key: str) -> bool:
        result = await self.session.execute(
            select(AmountReceived.id).where(AmountReceived.source_key == source_key)
        )
        return result.first() is not None

    async def add_amount_received(
        self,
        invoice: Invoice,
        amount: int,
        source_key: str,
        payment_intent_id: Optional[str] = None,
    ) -> int:
        """
        Append a ledger row and re-derive amount_captured from the ledger.

        Returns the new captured total.
        """
        self.session.add(AmountReceived(
            invoice_id=invoice.id,
            amount=amount,
            source_key=source_key,
            payment_intent_id=payment_intent_id,
        ))
        await self.session.flush()

        total = await self.sum_received(invoice.id)
        if total < invoice.amount_captured:
            raise RuntimeError(
                f"Ledger total {total} below captured amount {invoice.amount_captured} "
                f"for invoice {invoice.id}"
            )
        invoice.amount_captured = total
        await self.session.flush()
        return total

    async def sum_received(self, invoice_id: str) -> int:
        # Amounts are stored as exact text on SQLite, so sum in Python
        result = await self.session.execute(
            select(AmountReceived.amount).where(AmountReceived.invoice_id == invoice_id)
        )
        return sum(result.scalars().all())

    async def list_received(self, invoice_id: str) -> list[AmountReceived]:
        result = await self.session.execute(
            select(AmountReceived)
            .where(AmountReceived.invoice_id == invoice_id)
            .order_by(AmountReceived.created_at, AmountReceived.id)
        )
        return list(result.scalars().all())

    async def mark_paid(
        self,
        invoice: Invoice,
        final_amount_paid: int,
        final_cashback_amount: int,
        paid_at: datetime,
    ) -> bool:
        """
        Set paid_at once, as a compare-and-set on ``paid_at IS NULL``.

        Returns False if another transaction already marked the invoice
        paid; the instance is refreshed either way.
        """
        result = await self.session.execute(
            update(Invoice)
            .where(Invoice.id == invoice.id, Invoice.paid_at.is_(None))
            .values(
                final_amount_paid=final_amount_paid,
                final_cashback_amount=final_cashback_amount,
                paid_at=paid_at,
            )
            .execution_options(synchronize_session=False)
        )
        await self.session.refresh(invoice)
        return result.rowcount == 1

    async def unlink_account(self, invoice: Invoice) -> Optional[str]:
        """Detach the invoice's dedicated account. Returns the released account id."""
        account_id = invoice.account_id
        if account_id is not None:
            invoice.account_id = None
            await self.session.flush()
        return account_id
