"""
Invoice query and payment endpoints.

GET  /invoices/{id}                  — Invoice with orders, locked rates, price, fees and ledger.
POST /invoices/{id}/payment-intents  — Open a gateway payment intent for the outstanding amount.
"""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from settlement_engine.api.deps import get_event_store, get_gateway, get_session_factory, http_error
from settlement_engine.database import get_session
from settlement_engine.engine.errors import SettlementError
from settlement_engine.engine.event_store import EventStore
from settlement_engine.engine.payment_intents import start_payment
from settlement_engine.engine.pricing import price_invoice
from settlement_engine.providers.base import PaymentGateway
from settlement_engine.repos import FeeRepo, InvoiceRepo, OrderRepo, PaymentIntentRepo

router = APIRouter(prefix="/invoices", tags=["invoices"])


class OrderDetail(BaseModel):
    id: str
    seller_id: str
    seller_currency: str
    total_amount: int
    cashback_amount: int
    rate: Optional[str]
    rate_status: Optional[str]
    buyer_total: Optional[int]
    buyer_cashback: Optional[int]
    fee_amount: Optional[int] = None
    fee_status: Optional[str] = None


class ReceivedEntry(BaseModel):
    amount: int
    source_key: str
    payment_intent_id: Optional[str]
    created_at: Optional[str]


class IntentEntry(BaseModel):
    id: str
    status: str
    amount: int
    amount_received: int
    currency: str
    last_payment_error_message: Optional[str]


class InvoiceDetail(BaseModel):
    id: str
    buyer_currency: str
    account_id: Optional[str]
    amount_captured: int
    total_price: Optional[int]
    total_cashback: Optional[int]
    has_missing_rates: bool
    final_amount_paid: Optional[int]
    final_cashback_amount: Optional[int]
    paid_at: Optional[str]
    orders: list[OrderDetail]
    amounts_received: list[ReceivedEntry]
    payment_intents: list[IntentEntry]


class PaymentIntentRequest(BaseModel):
    receipt_email: Optional[str] = None


class PaymentIntentResponse(BaseModel):
    intent_id: str
    invoice_id: str
    amount: int
    currency: str
    status: str
    client_secret: Optional[str]


@router.get("/{invoice_id}", response_model=InvoiceDetail)
async def get_invoice(invoice_id: str, session: AsyncSession = Depends(get_session)):
    """
    Invoice with its current price.

    The price is null while any order's exchange rate is still pending.
    """
    invoice = await InvoiceRepo(session).get(invoice_id)
    if not invoice:
        raise HTTPException(status_code=404, detail=f"Invoice not found: {invoice_id}")

    orders_repo = OrderRepo(session)
    orders = await orders_repo.list_by_invoice(invoice_id)
    rates = await orders_repo.rates_for_orders([o.id for o in orders])
    fees = await FeeRepo(session).for_orders([o.id for o in orders])
    price = price_invoice(invoice.buyer_currency, orders, rates)

    order_details = []
    for order, op in zip(orders, price.orders):
        rate_row = rates.get(order.id)
        fee = fees.get(order.id)
        order_details.append(OrderDetail(
            id=order.id,
            seller_id=order.seller_id,
            seller_currency=order.seller_currency,
            total_amount=order.total_amount,
            cashback_amount=order.cashback_amount,
            rate=str(rate_row.rate) if rate_row and rate_row.rate is not None else None,
            rate_status=rate_row.status if rate_row else None,
            buyer_total=op.buyer_total,
            buyer_cashback=op.buyer_cashback,
            fee_amount=fee.amount if fee else None,
            fee_status=fee.status if fee else None,
        ))

    received = await InvoiceRepo(session).list_received(invoice_id)
    intents = await PaymentIntentRepo(session).list_by_invoice(invoice_id)

    return InvoiceDetail(
        id=invoice.id,
        buyer_currency=invoice.buyer_currency,
        account_id=invoice.account_id,
        amount_captured=invoice.amount_captured,
        total_price=price.total_price,
        total_cashback=price.total_cashback,
        has_missing_rates=price.has_missing_rates,
        final_amount_paid=invoice.final_amount_paid,
        final_cashback_amount=invoice.final_cashback_amount,
        paid_at=invoice.paid_at.isoformat() if invoice.paid_at else None,
        orders=order_details,
        amounts_received=[
            ReceivedEntry(
                amount=r.amount,
                source_key=r.source_key,
                payment_intent_id=r.payment_intent_id,
                created_at=r.created_at.isoformat() if r.created_at else None,
            )
            for r in received
        ],
        payment_intents=[
            IntentEntry(
                id=i.id,
                status=i.status,
                amount=i.amount,
                amount_received=i.amount_received,
                currency=i.currency,
                last_payment_error_message=i.last_payment_error_message,
            )
            for i in intents
        ],
    )


@router.post("/{invoice_id}/payment-intents", response_model=PaymentIntentResponse, status_code=201)
async def create_payment_intent(
    invoice_id: str,
    body: PaymentIntentRequest,
    session_factory: async_sessionmaker = Depends(get_session_factory),
    event_store: EventStore = Depends(get_event_store),
    gateway: PaymentGateway = Depends(get_gateway),
):
    """
    Open a payment intent for what is still owed.

    The intent is recorded through the event store, exactly as if the
    gateway had sent its ``payment_intent.created`` webhook.
    """
    try:
        snapshot = await start_payment(
            session_factory, event_store, gateway, invoice_id, receipt_email=body.receipt_email
        )
    except SettlementError as e:
        raise http_error(e) from e

    return PaymentIntentResponse(
        intent_id=snapshot.intent_id,
        invoice_id=snapshot.invoice_id,
        amount=snapshot.amount,
        currency=snapshot.currency,
        status=snapshot.status,
        client_secret=snapshot.client_secret,
    )
