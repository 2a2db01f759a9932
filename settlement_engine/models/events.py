"""
Typed event payloads.

Every event kind is a pydantic model with a literal ``kind`` tag; the union
is decoded once when an event is claimed from the store, so handlers get a
concrete model instead of a dict. Unknown fields are ignored so producers
can add fields without breaking older consumers. An unknown ``kind`` fails
decoding and the event is treated as permanently invalid.

Amounts are integers in the currency's minimal unit.
"""

from datetime import datetime, timezone
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

Currency = Annotated[str, Field(pattern=r"^[A-Z0-9]{3,10}$")]
MinorAmount = Annotated[int, Field(ge=0)]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class _Payload(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)


class OrderLine(_Payload):
    order_id: str
    seller_id: str
    seller_currency: Currency
    total_amount: Annotated[int, Field(gt=0)]
    cashback_amount: MinorAmount = 0


class InvoiceRequested(_Payload):
    kind: Literal["invoice.requested"] = "invoice.requested"
    invoice_id: str
    buyer_currency: Currency
    orders: Annotated[list[OrderLine], Field(min_length=1)]


class InvoiceDeleted(_Payload):
    kind: Literal["invoice.deleted"] = "invoice.deleted"
    invoice_id: str


class OrderRateLockRequested(_Payload):
    kind: Literal["order.rate_lock_requested"] = "order.rate_lock_requested"
    order_id: str


class PaymentIntentUpdated(_Payload):
    """Intent created or changed at the gateway (anything but a capture)."""

    kind: Literal["payment_intent.created", "payment_intent.updated"] = "payment_intent.updated"
    intent_id: str
    invoice_id: str
    amount: MinorAmount
    currency: Currency
    status: Literal[
        "requires_action",
        "requires_confirmation",
        "processing",
        "succeeded",
        "canceled",
        "failed",
    ]
    client_secret: Optional[str] = None
    receipt_email: Optional[str] = None


class PaymentIntentSucceeded(_Payload):
    kind: Literal["payment_intent.succeeded"] = "payment_intent.succeeded"
    intent_id: str
    invoice_id: Optional[str] = None
    amount: MinorAmount
    amount_received: MinorAmount  # cumulative, as reported by the gateway
    currency: Currency
    charge_id: Optional[str] = None
    occurred_at: datetime = Field(default_factory=_utcnow)


class PaymentIntentPaymentFailed(_Payload):
    kind: Literal["payment_intent.payment_failed"] = "payment_intent.payment_failed"
    intent_id: str
    # Enough to record an intent whose creation event has not arrived yet
    invoice_id: Optional[str] = None
    amount: Optional[MinorAmount] = None
    currency: Optional[Currency] = None
    error_message: Optional[str] = None
    occurred_at: datetime = Field(default_factory=_utcnow)


class AmountReceivedOnChain(_Payload):
    """Inbound transfer to an invoice's account, keyed by the transaction id."""

    kind: Literal["amount.received"] = "amount.received"
    invoice_id: str
    transaction_id: str
    amount: Annotated[int, Field(gt=0)]
    currency: Currency
    occurred_at: datetime = Field(default_factory=_utcnow)


class InvoicePaid(_Payload):
    kind: Literal["invoice.paid"] = "invoice.paid"
    invoice_id: str


class FeeChargeRequested(_Payload):
    kind: Literal["fee.charge_requested"] = "fee.charge_requested"
    order_id: str


class PayoutRequested(_Payload):
    kind: Literal["payout.requested"] = "payout.requested"
    payout_id: str
    seller_id: str
    currency: Currency
    target_type: Literal["bank_wallet", "onchain_wallet"]
    wallet_address: Optional[str] = None
    blockchain_fee: MinorAmount = 0
    order_ids: Optional[list[str]] = None


class PayoutCompleted(_Payload):
    kind: Literal["payout.completed"] = "payout.completed"
    payout_id: str
    transfer_reference: Optional[str] = None
    completed_at: datetime = Field(default_factory=_utcnow)


EventPayload = Annotated[
    Union[
        InvoiceRequested,
        InvoiceDeleted,
        OrderRateLockRequested,
        PaymentIntentUpdated,
        PaymentIntentSucceeded,
        PaymentIntentPaymentFailed,
        AmountReceivedOnChain,
        InvoicePaid,
        FeeChargeRequested,
        PayoutRequested,
        PayoutCompleted,
    ],
    Field(discriminator="kind"),
]

_adapter: TypeAdapter = TypeAdapter(EventPayload)


def decode_payload(data: dict) -> BaseModel:
    """Decode a stored payload dict into its typed variant.

    Raises:
        pydantic.ValidationError: Unknown kind or malformed fields.
    """
    return _adapter.validate_python(data)


def encode_payload(payload: BaseModel) -> dict:
    return payload.model_dump(mode="json")
