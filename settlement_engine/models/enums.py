"""Enumerations for the settlement domain model."""

from enum import Enum


class EventStatus(str, Enum):
    """Lifecycle states for an event store entry."""

    NEW = "new"
    PROCESSING = "processing"
    DONE = "done"
    FAILED = "failed"
    DEAD = "dead"


class ExchangeRateStatus(str, Enum):
    """Lifecycle of an order's exchange-rate lock."""

    PENDING = "pending"
    LOCKED = "locked"
    APPLIED = "applied"
    EXPIRED = "expired"


class PaymentIntentStatus(str, Enum):
    """Gateway-reported payment intent states."""

    REQUIRES_ACTION = "requires_action"
    REQUIRES_CONFIRMATION = "requires_confirmation"
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    CANCELED = "canceled"
    FAILED = "failed"


class FeeStatus(str, Enum):
    """Platform fee charge states."""

    PENDING = "pending"
    CHARGED = "charged"
    FAILED = "failed"


class PayoutTargetType(str, Enum):
    """Where a payout is sent."""

    BANK_WALLET = "bank_wallet"
    ONCHAIN_WALLET = "onchain_wallet"


class PayoutStatus(str, Enum):
    """Derived payout state: completed once the external transfer is confirmed."""

    INITIATED = "initiated"
    COMPLETED = "completed"
