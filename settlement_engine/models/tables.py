"""SQLAlchemy models for the settlement engine."""

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, relationship

from settlement_engine.models.enums import PayoutStatus
from settlement_engine.models.types import DecimalText, MinorUnits


class Base(DeclarativeBase):
    pass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


class Account(Base):
    """
    A currency-denominated account backing invoices and payouts.

    Pooled accounts are the per-currency system accounts. Dedicated accounts
    are linked to exactly one invoice at a time and are reused once that
    invoice is paid and releases them. The currency never changes.
    """

    __tablename__ = "accounts"

    id = Column(String(36), primary_key=True, default=_new_id)
    currency = Column(String(10), nullable=False, index=True)
    is_pooled = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), default=_utcnow)


class Invoice(Base):
    """
    Buyer-side settlement unit.

    amount_captured is derived from the AmountReceived ledger. paid_at,
    final_amount_paid and final_cashback_amount are written together, once.
    """

    __tablename__ = "invoices"

    id = Column(String(36), primary_key=True, default=_new_id)
    account_id = Column(
        String(36),
        ForeignKey("accounts.id", ondelete="SET NULL"),
        nullable=True,
        unique=True,
    )
    buyer_currency = Column(String(10), nullable=False)
    amount_captured = Column(MinorUnits, nullable=False, default=0)
    final_amount_paid = Column(MinorUnits, nullable=True)
    final_cashback_amount = Column(MinorUnits, nullable=True)
    paid_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    orders = relationship(
        "Order",
        back_populates="invoice",
        cascade="all, delete-orphan",
        passive_deletes=True,
        lazy="raise",
    )


class AmountReceived(Base):
    """Append-only ledger of funds received against an invoice."""

    __tablename__ = "amounts_received"

    id = Column(String(36), primary_key=True, default=_new_id)
    invoice_id = Column(
        String(36), ForeignKey("invoices.id", ondelete="CASCADE"), nullable=False, index=True
    )
    amount = Column(MinorUnits, nullable=False)
    # Stable external key: "<intent id>:<cumulative amount>" or an on-chain tx id
    source_key = Column(String(200), nullable=False, unique=True)
    payment_intent_id = Column(String(100), nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)


class Order(Base):
    """Seller-side settlement unit. One invoice owns one order per seller in the cart."""

    __tablename__ = "orders"

    id = Column(String(36), primary_key=True, default=_new_id)
    invoice_id = Column(
        String(36), ForeignKey("invoices.id", ondelete="CASCADE"), nullable=False, index=True
    )
    seller_id = Column(String(50), nullable=False, index=True)
    seller_currency = Column(String(10), nullable=False)
    total_amount = Column(MinorUnits, nullable=False)
    cashback_amount = Column(MinorUnits, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    invoice = relationship("Invoice", back_populates="orders")


class OrderExchangeRate(Base):
    """
    Exchange rate frozen for an order.

    rate is buyer-currency minimal units per seller-currency minimal unit.
    Once locked the rate is never rewritten.
    """

    __tablename__ = "order_exchange_rates"

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(
        String(36),
        ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    exchange_id = Column(String(100), nullable=True)
    rate = Column(DecimalText, nullable=True)
    status = Column(String(20), nullable=False, default="pending")
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)


class PaymentIntent(Base):
    """Gateway payment intent mirrored locally, keyed by the gateway's id."""

    __tablename__ = "payment_intents"

    id = Column(String(100), primary_key=True)
    invoice_id = Column(
        String(36), ForeignKey("invoices.id", ondelete="CASCADE"), nullable=False, index=True
    )
    amount = Column(MinorUnits, nullable=False)
    amount_received = Column(MinorUnits, nullable=False, default=0)
    currency = Column(String(10), nullable=False)
    client_secret = Column(String(200), nullable=True)
    receipt_email = Column(String(200), nullable=True)
    charge_id = Column(String(100), nullable=True)
    last_payment_error_message = Column(Text, nullable=True)
    status = Column(String(30), nullable=False)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)


class Fee(Base):
    """Platform fee for one order."""

    __tablename__ = "fees"

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(
        String(36),
        ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    amount = Column(MinorUnits, nullable=False)
    currency = Column(String(10), nullable=False)
    status = Column(String(20), nullable=False, default="pending")
    charge_id = Column(String(100), nullable=True)
    metadata_json = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)


class Payout(Base):
    """
    Outbound transfer of a seller's net proceeds for a batch of orders.

    net_amount = gross_amount - total_fees - blockchain_fee. A payout is
    initiated until the external transfer is confirmed and completed_at is set.
    """

    __tablename__ = "payouts"

    id = Column(String(36), primary_key=True, default=_new_id)
    seller_id = Column(String(50), nullable=False, index=True)
    currency = Column(String(10), nullable=False)
    gross_amount = Column(MinorUnits, nullable=False)
    total_fees = Column(MinorUnits, nullable=False, default=0)
    blockchain_fee = Column(MinorUnits, nullable=True)
    net_amount = Column(MinorUnits, nullable=False)
    target_type = Column(String(20), nullable=False)
    wallet_address = Column(String(200), nullable=True)
    transfer_reference = Column(String(200), nullable=True)
    initiated_at = Column(DateTime(timezone=True), default=_utcnow)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    @property
    def status(self) -> str:
        if self.completed_at is not None:
            return PayoutStatus.COMPLETED.value
        return PayoutStatus.INITIATED.value


class OrderPayout(Base):
    """Links an order to the payout that settles it. An order is paid out once."""

    __tablename__ = "order_payouts"
    __table_args__ = (
        UniqueConstraint("order_id", "payout_id", name="uq_order_payout"),
        UniqueConstraint("order_id", name="uq_order_payout_order"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(String(36), ForeignKey("orders.id", ondelete="CASCADE"), nullable=False)
    payout_id = Column(
        String(36), ForeignKey("payouts.id", ondelete="CASCADE"), nullable=False, index=True
    )


class EventEntry(Base):
    """
    Durable inbox entry.

    Every aggregate mutation happens as the side effect of processing one of
    these. The payload is stored as JSON and decoded into a typed variant
    when claimed.
    """

    __tablename__ = "event_store"

    id = Column(Integer, primary_key=True, autoincrement=True)
    kind = Column(String(50), nullable=False)
    payload = Column(JSON, nullable=False)
    dedup_key = Column(String(200), nullable=True, unique=True)
    status = Column(String(20), nullable=False, default="new", index=True)
    attempt_count = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)
    scheduled_on = Column(DateTime(timezone=True), default=_utcnow, index=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    status_updated_at = Column(DateTime(timezone=True), default=_utcnow)


class AuditLog(Base):
    """
    Immutable audit trail entry.

    Every state change — event processing, paid transitions, rate locks,
    fee charges, payouts — gets an audit log entry. These are append-only
    and never modified.
    """

    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    action = Column(String(50), nullable=False)
    event_id = Column(Integer, nullable=True, index=True)
    invoice_id = Column(String(36), nullable=True, index=True)
    order_id = Column(String(36), nullable=True, index=True)
    payout_id = Column(String(36), nullable=True, index=True)
    details = Column(Text, nullable=True)
    timestamp = Column(DateTime(timezone=True), default=_utcnow)
