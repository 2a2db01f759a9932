"""
Payment intent reconciler.

Maps the gateway's payment intent lifecycle onto invoice totals. Intents are
upserted by their gateway id, and captures are ledgered under the key
``<intent id>:<cumulative amount received>``, so the same gateway event
processed twice, or a stale event arriving after a newer one, never counts
money twice. Several intents may pay one invoice (retried cards, split
payments); only the capture that completes the price marks it paid, and
anything received after that is recorded as an overpayment.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from settlement_engine.audit.logger import log_event
from settlement_engine.engine.errors import ConflictError, InvalidError, NotFoundError
from settlement_engine.engine.event_store import EventStore
from settlement_engine.engine.invoices import get_invoice_price, record_amount_received
from settlement_engine.models.enums import PaymentIntentStatus
from settlement_engine.models.events import (
    PaymentIntentPaymentFailed,
    PaymentIntentSucceeded,
    PaymentIntentUpdated,
)
from settlement_engine.models.tables import PaymentIntent
from settlement_engine.providers.base import IntentRequest, IntentSnapshot, PaymentGateway
from settlement_engine.repos import InvoiceRepo, PaymentIntentRepo

logger = logging.getLogger("settlement_engine.payment_intents")


@dataclass
class CaptureResult:
    intent_id: str
    duplicate: bool
    delta: int = 0
    became_paid: bool = False
    overpayment: bool = False


async def upsert_intent(
    session: AsyncSession,
    payload: PaymentIntentUpdated,
    event_id: Optional[int] = None,
) -> PaymentIntent:
    invoice = await InvoiceRepo(session).get(payload.invoice_id)
    if invoice is None:
        raise NotFoundError(f"Invoice not found: {payload.invoice_id}")
    if payload.currency != invoice.buyer_currency:
        raise InvalidError(
            f"Intent {payload.intent_id} is in {payload.currency}, invoice in {invoice.buyer_currency}"
        )

    intents = PaymentIntentRepo(session)
    existing = await intents.get(payload.intent_id)
    if existing is not None and existing.invoice_id != payload.invoice_id:
        raise InvalidError(f"Intent {payload.intent_id} belongs to invoice {existing.invoice_id}")

    status = payload.status
    if existing is not None and payload.kind == "payment_intent.created":
        # Creation delivered after later events: keep what those recorded
        status = existing.status

    intent = await intents.upsert(
        intent_id=payload.intent_id,
        invoice_id=payload.invoice_id,
        amount=payload.amount,
        currency=payload.currency,
        status=status,
        client_secret=payload.client_secret,
        receipt_email=payload.receipt_email,
    )
    await log_event(session, "intent_upserted", event_id=event_id, invoice_id=payload.invoice_id, details={
        "intent_id": payload.intent_id,
        "status": intent.status,
        "amount": payload.amount,
    })
    return intent


async def apply_intent_succeeded(
    session: AsyncSession,
    event_store: EventStore,
    payload: PaymentIntentSucceeded,
    event_id: Optional[int] = None,
) -> CaptureResult:
    """
    Ledger the newly captured part of a succeeded intent.

    The gateway reports the cumulative amount received; the difference to
    what we have already mirrored is the new money. Equal or lower means
    the event is a duplicate or stale and nothing changes.
    """
    intents = PaymentIntentRepo(session)
    intent = await intents.get(payload.intent_id, for_update=True)

    if intent is None:
        if not payload.invoice_id:
            raise NotFoundError(f"Unknown payment intent {payload.intent_id} and no invoice reference")
        intent = await upsert_intent(session, PaymentIntentUpdated(
            intent_id=payload.intent_id,
            invoice_id=payload.invoice_id,
            amount=payload.amount,
            currency=payload.currency,
            status=PaymentIntentStatus.PROCESSING.value,
        ), event_id=event_id)
    elif payload.invoice_id and payload.invoice_id != intent.invoice_id:
        raise InvalidError(f"Intent {intent.id} belongs to invoice {intent.invoice_id}")

    if payload.currency != intent.currency:
        raise InvalidError(f"Intent {intent.id} is in {intent.currency}, event reports {payload.currency}")

    if payload.amount_received <= intent.amount_received:
        logger.info(
            "Intent %s already reconciled at %d (event reports %d)",
            intent.id,
            intent.amount_received,
            payload.amount_received,
        )
        return CaptureResult(intent_id=intent.id, duplicate=True)

    delta = payload.amount_received - intent.amount_received
    receipt = await record_amount_received(
        session,
        event_store,
        invoice_id=intent.invoice_id,
        amount=delta,
        currency=payload.currency,
        source_key=f"{intent.id}:{payload.amount_received}",
        received_at=payload.occurred_at,
        payment_intent_id=intent.id,
        event_id=event_id,
    )
    await intents.record_received(intent, payload.amount_received, payload.charge_id)

    return CaptureResult(
        intent_id=intent.id,
        duplicate=not receipt.recorded,
        delta=delta if receipt.recorded else 0,
        became_paid=receipt.became_paid,
        overpayment=receipt.overpayment,
    )


async def apply_intent_failed(
    session: AsyncSession,
    payload: PaymentIntentPaymentFailed,
    event_id: Optional[int] = None,
) -> PaymentIntent:
    """
    Record a failed payment attempt. Invoice totals are never touched.

    A failure can arrive before the intent's creation event; the intent is
    then recorded from the failure's own invoice reference.
    """
    intents = PaymentIntentRepo(session)
    intent = await intents.get(payload.intent_id, for_update=True)
    if intent is None:
        if not payload.invoice_id or payload.amount is None or not payload.currency:
            raise NotFoundError(f"Unknown payment intent {payload.intent_id} and no invoice reference")
        intent = await upsert_intent(session, PaymentIntentUpdated(
            intent_id=payload.intent_id,
            invoice_id=payload.invoice_id,
            amount=payload.amount,
            currency=payload.currency,
            status=PaymentIntentStatus.FAILED.value,
        ), event_id=event_id)
    elif payload.invoice_id and payload.invoice_id != intent.invoice_id:
        raise InvalidError(f"Intent {intent.id} belongs to invoice {intent.invoice_id}")

    if intent.status == PaymentIntentStatus.SUCCEEDED.value:
        logger.info("Ignoring stale failure for succeeded intent %s", intent.id)
        return intent

    await intents.mark_failed(intent, payload.error_message)
    await log_event(session, "intent_failed", event_id=event_id, invoice_id=intent.invoice_id, details={
        "intent_id": intent.id,
        "error": payload.error_message,
    })
    return intent


def _snapshot_payload(snapshot: IntentSnapshot):
    if snapshot.status == PaymentIntentStatus.SUCCEEDED.value:
        return PaymentIntentSucceeded(
            intent_id=snapshot.intent_id,
            invoice_id=snapshot.invoice_id,
            amount=snapshot.amount,
            amount_received=snapshot.amount_received,
            currency=snapshot.currency,
            charge_id=snapshot.charge_id,
        )
    return PaymentIntentUpdated(
        intent_id=snapshot.intent_id,
        invoice_id=snapshot.invoice_id,
        amount=snapshot.amount,
        currency=snapshot.currency,
        status=snapshot.status,
        client_secret=snapshot.client_secret,
    )


async def start_payment(
    session_factory: async_sessionmaker,
    event_store: EventStore,
    gateway: PaymentGateway,
    invoice_id: str,
    receipt_email: Optional[str] = None,
) -> IntentSnapshot:
    """
    Open a gateway payment intent for what is still owed on an invoice.

    The intent itself is recorded through the event store like any webhook.
    The idempotency key includes the captured amount, so asking twice before
    any money arrives returns the same gateway intent.
    """
    async with session_factory() as session:
        invoice = await InvoiceRepo(session).get(invoice_id)
        if invoice is None:
            raise NotFoundError(f"Invoice not found: {invoice_id}")
        if invoice.paid_at is not None:
            raise ConflictError(f"Invoice {invoice_id} is already paid")
        price = await get_invoice_price(session, invoice)
        if price.total_price is None:
            raise ConflictError(f"Invoice {invoice_id} is still waiting for exchange-rate locks")
        outstanding = price.total_price - invoice.amount_captured
        currency = invoice.buyer_currency
        captured = invoice.amount_captured

    snapshot = await gateway.create_intent(IntentRequest(
        invoice_id=invoice_id,
        amount=outstanding,
        currency=currency,
        idempotency_key=f"invoice-{invoice_id}-{captured}",
        receipt_email=receipt_email,
        metadata={"invoice_id": invoice_id},
    ))
    payload = _snapshot_payload(snapshot)
    await event_store.append(payload, dedup_key=f"intent:{snapshot.intent_id}:{snapshot.status}:{snapshot.amount_received}")
    return snapshot


async def sync_intent(event_store: EventStore, gateway: PaymentGateway, intent_id: str) -> IntentSnapshot:
    """Pull an intent's state from the gateway, for webhooks that never arrived."""
    snapshot = await gateway.retrieve_intent(intent_id)
    await event_store.append(
        _snapshot_payload(snapshot),
        dedup_key=f"intent:{snapshot.intent_id}:{snapshot.status}:{snapshot.amount_received}",
    )
    return snapshot


async def confirm_payment(event_store: EventStore, gateway: PaymentGateway, intent_id: str) -> IntentSnapshot:
    """Confirm an intent at the gateway and enqueue the resulting state."""
    snapshot = await gateway.confirm_intent(intent_id)
    await event_store.append(
        _snapshot_payload(snapshot),
        dedup_key=f"intent:{snapshot.intent_id}:{snapshot.status}:{snapshot.amount_received}",
    )
    return snapshot
