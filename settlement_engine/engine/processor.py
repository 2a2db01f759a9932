"""
Event processor — routes claimed events to the aggregate that owns them.

For each claimed event:

  1. Dispatch on the payload type to one handler
  2. Handler mutates its aggregate in one transaction (external calls to the
     gateway or rate oracle run before or after, never inside)
  3. complete() on success, fail() otherwise

How failures are classified:
  - ConflictError: duplicate or already settled → completed, audited
  - NotFoundError / InvalidError: permanent → dead
  - ProviderError: retried unless the gateway says it's permanent
  - anything else (UnavailableError, database errors, bugs) → retried with
    backoff until the attempt limit, then dead
  - cancellation (worker shutdown): failed as retriable, then re-raised
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from sqlalchemy.ext.asyncio import async_sessionmaker

from settlement_engine.audit.logger import log_event
from settlement_engine.config import settings
from settlement_engine.engine.errors import ConflictError, SettlementError
from settlement_engine.engine.event_store import ClaimedEvent, EventStore
from settlement_engine.engine.exchange_rates import lock_rate
from settlement_engine.engine.fees import charge_fee, create_fees_for_invoice
from settlement_engine.engine.invoices import close_paid_invoice, create_invoice, delete_invoice, record_amount_received
from settlement_engine.engine.payment_intents import apply_intent_failed, apply_intent_succeeded, upsert_intent
from settlement_engine.engine.payouts import aggregate_payout, complete_payout
from settlement_engine.engine.retry import ProviderError
from settlement_engine.models.enums import EventStatus
from settlement_engine.models.events import (
    AmountReceivedOnChain,
    FeeChargeRequested,
    InvoiceDeleted,
    InvoicePaid,
    InvoiceRequested,
    OrderRateLockRequested,
    PaymentIntentPaymentFailed,
    PaymentIntentSucceeded,
    PaymentIntentUpdated,
    PayoutCompleted,
    PayoutRequested,
)
from settlement_engine.providers.base import ExchangeRateOracle, PaymentGateway

logger = logging.getLogger("settlement_engine.processor")

Handler = Callable[[ClaimedEvent], Awaitable[None]]


class EventProcessor:
    def __init__(
        self,
        session_factory: async_sessionmaker,
        event_store: EventStore,
        gateway: PaymentGateway,
        oracle: ExchangeRateOracle,
        fee_bps: Optional[int] = None,
    ):
        self._sessions = session_factory
        self.event_store = event_store
        self.gateway = gateway
        self.oracle = oracle
        self.fee_bps = fee_bps if fee_bps is not None else settings.platform_fee_bps
        self._handlers: dict[type, Handler] = {
            InvoiceRequested: self._invoice_requested,
            InvoiceDeleted: self._invoice_deleted,
            OrderRateLockRequested: self._rate_lock_requested,
            PaymentIntentUpdated: self._intent_updated,
            PaymentIntentSucceeded: self._intent_succeeded,
            PaymentIntentPaymentFailed: self._intent_failed,
            AmountReceivedOnChain: self._amount_received,
            InvoicePaid: self._invoice_paid,
            FeeChargeRequested: self._fee_charge_requested,
            PayoutRequested: self._payout_requested,
            PayoutCompleted: self._payout_completed,
        }

    async def run_once(self, limit: Optional[int] = None) -> int:
        """Reset stuck entries, then claim and process one batch. Returns the batch size."""
        await self.event_store.reset_stuck()
        claimed = await self.event_store.claim_batch(limit or settings.claim_batch_size)
        for i, event in enumerate(claimed):
            try:
                await self.process(event)
            except asyncio.CancelledError:
                await asyncio.shield(self.event_store.release([e.id for e in claimed[i + 1:]]))
                raise
        return len(claimed)

    async def run_until_idle(self, max_rounds: int = 100) -> int:
        """Process batches until nothing is due."""
        total = 0
        for _ in range(max_rounds):
            processed = await self.run_once()
            if processed == 0:
                break
            total += processed
        return total

    async def process(self, event: ClaimedEvent) -> EventStatus:
        handler = self._handlers.get(type(event.payload))
        if handler is None:
            return await self.event_store.fail(
                event.id, f"No handler for event kind {event.kind}", permanent=True
            )

        try:
            await handler(event)
        except asyncio.CancelledError:
            # Hand the claim back so the event is retried, then keep unwinding
            logger.warning("Event #%d (%s) cancelled mid-handler", event.id, event.kind)
            await asyncio.shield(self.event_store.fail(event.id, "Cancelled during processing"))
            raise
        except ConflictError as e:
            logger.info("Event #%d (%s) is a no-op: %s", event.id, event.kind, e)
            async with self._sessions() as session, session.begin():
                await log_event(session, "duplicate_ignored", event_id=event.id, details={
                    "kind": event.kind,
                    "reason": str(e),
                })
            await self.event_store.complete(event.id)
            return EventStatus.DONE
        except SettlementError as e:
            return await self.event_store.fail(
                event.id, f"{e.kind.value}: {e}", permanent=e.permanent
            )
        except ProviderError as e:
            return await self.event_store.fail(
                event.id,
                f"provider ({e.status_code}): {e}",
                permanent=not e.retriable,
                retry_after=getattr(e, "retry_after", None),
            )
        except Exception as e:
            logger.exception("Unexpected error processing event #%d (%s)", event.id, event.kind)
            return await self.event_store.fail(event.id, f"{type(e).__name__}: {e}")

        await self.event_store.complete(event.id)
        logger.debug("Event #%d (%s) done", event.id, event.kind)
        return EventStatus.DONE

    # -- handlers ------------------------------------------------------------

    async def _invoice_requested(self, event: ClaimedEvent) -> None:
        async with self._sessions() as session, session.begin():
            await create_invoice(session, self.event_store, event.payload, event_id=event.id)

    async def _invoice_deleted(self, event: ClaimedEvent) -> None:
        async with self._sessions() as session, session.begin():
            await delete_invoice(session, event.payload.invoice_id, event_id=event.id)

    async def _rate_lock_requested(self, event: ClaimedEvent) -> None:
        await lock_rate(
            self._sessions, self.event_store, self.oracle, event.payload.order_id, event_id=event.id
        )

    async def _intent_updated(self, event: ClaimedEvent) -> None:
        async with self._sessions() as session, session.begin():
            await upsert_intent(session, event.payload, event_id=event.id)

    async def _intent_succeeded(self, event: ClaimedEvent) -> None:
        async with self._sessions() as session, session.begin():
            await apply_intent_succeeded(session, self.event_store, event.payload, event_id=event.id)

    async def _intent_failed(self, event: ClaimedEvent) -> None:
        async with self._sessions() as session, session.begin():
            await apply_intent_failed(session, event.payload, event_id=event.id)

    async def _amount_received(self, event: ClaimedEvent) -> None:
        payload: AmountReceivedOnChain = event.payload
        async with self._sessions() as session, session.begin():
            await record_amount_received(
                session,
                self.event_store,
                invoice_id=payload.invoice_id,
                amount=payload.amount,
                currency=payload.currency,
                source_key=f"tx:{payload.transaction_id}",
                received_at=payload.occurred_at,
                event_id=event.id,
            )

    async def _invoice_paid(self, event: ClaimedEvent) -> None:
        async with self._sessions() as session, session.begin():
            invoice = await close_paid_invoice(session, event.payload.invoice_id, event_id=event.id)
            await create_fees_for_invoice(
                session, self.event_store, invoice, fee_bps=self.fee_bps, event_id=event.id
            )

    async def _fee_charge_requested(self, event: ClaimedEvent) -> None:
        await charge_fee(self._sessions, self.gateway, event.payload.order_id, event_id=event.id)

    async def _payout_requested(self, event: ClaimedEvent) -> None:
        async with self._sessions() as session, session.begin():
            await aggregate_payout(session, event.payload, event_id=event.id)

    async def _payout_completed(self, event: ClaimedEvent) -> None:
        async with self._sessions() as session, session.begin():
            await complete_payout(session, event.payload, event_id=event.id)
