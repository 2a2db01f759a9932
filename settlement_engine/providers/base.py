"""
Abstract collaborator interfaces.

The engine never talks to the gateway's wire protocol or to a rate source
directly. In production these wrap the real payment gateway SDK and a
currency-exchange service; here they're mocked to demonstrate the
integration pattern.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Optional


@dataclass
class IntentRequest:
    """Request to create a payment intent for an invoice."""

    invoice_id: str
    amount: int  # Amount in smallest currency unit
    currency: str
    idempotency_key: str
    receipt_email: Optional[str] = None
    metadata: dict = field(default_factory=dict)


@dataclass
class IntentSnapshot:
    """Gateway view of a payment intent."""

    intent_id: str
    invoice_id: str
    amount: int
    amount_received: int
    currency: str
    status: str
    client_secret: Optional[str] = None
    charge_id: Optional[str] = None


@dataclass
class FeeChargeResponse:
    charge_id: str
    provider: str
    message: str = ""


@dataclass
class RateQuote:
    rate: Decimal  # buyer minimal units per seller minimal unit
    exchange_id: Optional[str] = None


class PaymentGateway(ABC):
    """Abstract payment gateway client."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Gateway identifier (e.g. 'mock_gateway')."""
        ...

    @abstractmethod
    async def create_intent(self, request: IntentRequest) -> IntentSnapshot:
        ...

    @abstractmethod
    async def retrieve_intent(self, intent_id: str) -> IntentSnapshot:
        ...

    @abstractmethod
    async def confirm_intent(self, intent_id: str) -> IntentSnapshot:
        ...

    @abstractmethod
    async def charge_fee(
        self,
        order_id: str,
        amount: int,
        currency: str,
        idempotency_key: str,
    ) -> FeeChargeResponse:
        """
        Charge a platform fee.

        The gateway deduplicates on idempotency_key, so re-driving the same
        fee after a lost local write returns the original charge.

        Raises:
            ProviderError: On transient failure (the event will be retried).
            PermanentError: On non-retriable failure.
        """
        ...


class RateUnavailable(Exception):
    """The oracle could not supply a rate right now."""


class ExchangeRateOracle(ABC):
    """External source of live exchange rates."""

    @abstractmethod
    async def get_rate(self, from_currency: str, to_currency: str) -> RateQuote:
        """
        Current rate converting ``from_currency`` minimal units into
        ``to_currency`` minimal units.

        Raises:
            RateUnavailable: The oracle is down or has no quote for the pair.
        """
        ...
