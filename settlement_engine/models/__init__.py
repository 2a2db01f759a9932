from settlement_engine.models.enums import (
    EventStatus,
    ExchangeRateStatus,
    FeeStatus,
    PaymentIntentStatus,
    PayoutStatus,
    PayoutTargetType,
)
from settlement_engine.models.tables import (
    Account,
    AmountReceived,
    AuditLog,
    Base,
    EventEntry,
    Fee,
    Invoice,
    Order,
    OrderExchangeRate,
    OrderPayout,
    PaymentIntent,
    Payout,
)

__all__ = [
    "Base",
    "Account",
    "Invoice",
    "AmountReceived",
    "Order",
    "OrderExchangeRate",
    "PaymentIntent",
    "Fee",
    "Payout",
    "OrderPayout",
    "EventEntry",
    "AuditLog",
    "EventStatus",
    "ExchangeRateStatus",
    "FeeStatus",
    "PaymentIntentStatus",
    "PayoutStatus",
    "PayoutTargetType",
]
