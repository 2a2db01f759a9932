"""PaymentIntent persistence, keyed by the gateway-assigned intent id."""

from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from settlement_engine.models.enums import PaymentIntentStatus
from settlement_engine.models.tables import PaymentIntent


class PaymentIntentRepo:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, intent_id: str, for_update: bool = False) -> Optional[PaymentIntent]:
        stmt = select(PaymentIntent).where(PaymentIntent.id == intent_id)
        if for_update:
            stmt = stmt.with_for_update()
        result = await self.session.execute(stmt.execution_options(populate_existing=True))
        return result.scalars().first()

    async def list_by_invoice(self, invoice_id: str) -> list[PaymentIntent]:
        result = await self.session.execute(
            select(PaymentIntent).where(PaymentIntent.invoice_id == invoice_id).order_by(PaymentIntent.created_at)
        )
        return list(result.scalars().all())

    async def upsert(
        self,
        intent_id: str,
        invoice_id: str,
        amount: int,
        currency: str,
        status: str,
        client_secret: Optional[str] = None,
        receipt_email: Optional[str] = None,
    ) -> PaymentIntent:
        """
        Insert or update an intent's descriptive fields.

        amount_received is left alone: it only moves forward through
        record_received, so a late "updated" event cannot roll it back.
        """
        intent = await self.get(intent_id, for_update=True)
        if intent is None:
            intent = PaymentIntent(
                id=intent_id,
                invoice_id=invoice_id,
                amount=amount,
                amount_received=0,
                currency=currency,
                status=status,
                client_secret=client_secret,
                receipt_email=receipt_email,
            )
            self.session.add(intent)
        else:
            intent.amount = amount
            intent.currency = currency
            # A succeeded intent stays succeeded whatever order updates arrive in
            if intent.status != PaymentIntentStatus.SUCCEEDED.value:
                intent.status = status
            if client_secret is not None:
                intent.client_secret = client_secret
            if receipt_email is not None:
                intent.receipt_email = receipt_email
        await self.session.flush()
        return intent

    async def record_received(
        self,
        intent: PaymentIntent,
        amount_received: int,
        charge_id: Optional[str],
    ) -> None:
        if amount_received < intent.amount_received:
            raise RuntimeError(
                f"amount_received for intent {intent.id} cannot decrease "
                f"({intent.amount_received} -> {amount_received})"
            )
        intent.amount_received = amount_received
        intent.status = PaymentIntentStatus.SUCCEEDED.value
        if charge_id:
            intent.charge_id = charge_id
        await self.session.flush()

    async def mark_failed(self, intent: PaymentIntent, error_message: Optional[str]) -> None:
        intent.status = PaymentIntentStatus.FAILED.value
        intent.last_payment_error_message = error_message
        await self.session.flush()
