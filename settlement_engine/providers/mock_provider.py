"""
Mock gateway and rate oracle for demonstration and tests.

Simulates real API behavior:
  - Configurable latency (default from settings)
  - Configurable failure rate (default from settings)
  - Rate limiting simulation (429s)
  - Idempotent fee charges keyed by idempotency key

In production, these would be replaced by adapters for the real payment
gateway and exchange service.
"""

import asyncio
import random
import uuid
from decimal import Decimal
from typing import Optional

from settlement_engine.config import settings
from settlement_engine.engine.retry import PermanentError, ProviderError, RateLimitError
from settlement_engine.providers.base import (
    ExchangeRateOracle,
    FeeChargeResponse,
    IntentRequest,
    IntentSnapshot,
    PaymentGateway,
    RateQuote,
    RateUnavailable,
)


class MockPaymentGateway(PaymentGateway):
    """
    In-memory gateway.

    Keeps created intents and fee charges so retries with the same
    idempotency key return the original result, as a real gateway does.
    ``fail_next`` queues exceptions to raise on the next calls.
    """

    def __init__(
        self,
        failure_rate: Optional[float] = None,
        latency_ms: Optional[int] = None,
    ):
        self._failure_rate = failure_rate if failure_rate is not None else settings.mock_failure_rate
        self._latency_ms = latency_ms if latency_ms is not None else settings.mock_latency_ms
        self.intents: dict[str, IntentSnapshot] = {}
        self._intent_keys: dict[str, str] = {}
        self.charges: dict[str, FeeChargeResponse] = {}
        self.charge_calls = 0
        self.fail_next: list[Exception] = []

    @property
    def name(self) -> str:
        return "mock_gateway"

    async def _simulate(self) -> None:
        # Simulate network latency
        if self._latency_ms > 0:
            jitter = random.uniform(0.5, 1.5)
            await asyncio.sleep(self._latency_ms * jitter / 1000)

        if self.fail_next:
            raise self.fail_next.pop(0)

        roll = random.random()

        if roll < self._failure_rate * 0.3:
            raise RateLimitError(message="Mock rate limit — too many requests", retry_after=1.0)

        if roll < self._failure_rate * 0.6:
            raise ProviderError(
                message="Mock transient error — service temporarily unavailable",
                status_code=503,
                retriable=True,
            )

        if roll < self._failure_rate:
            raise PermanentError(message="Mock permanent error — card declined", status_code=402)

    async def create_intent(self, request: IntentRequest) -> IntentSnapshot:
        await self._simulate()
        existing = self._intent_keys.get(request.idempotency_key)
        if existing:
            return self.intents[existing]

        intent_id = f"pi_{uuid.uuid4().hex[:24]}"
        snapshot = IntentSnapshot(
            intent_id=intent_id,
            invoice_id=request.invoice_id,
            amount=request.amount,
            amount_received=0,
            currency=request.currency,
            status="requires_confirmation",
            client_secret=f"{intent_id}_secret_{uuid.uuid4().hex[:8]}",
        )
        self.intents[intent_id] = snapshot
        self._intent_keys[request.idempotency_key] = intent_id
        return snapshot

    async def retrieve_intent(self, intent_id: str) -> IntentSnapshot:
        await self._simulate()
        if intent_id not in self.intents:
            raise PermanentError(f"No such payment intent: {intent_id}", status_code=404)
        return self.intents[intent_id]

    async def confirm_intent(self, intent_id: str) -> IntentSnapshot:
        snapshot = await self.retrieve_intent(intent_id)
        snapshot.status = "succeeded"
        snapshot.amount_received = snapshot.amount
        snapshot.charge_id = f"ch_{uuid.uuid4().hex[:24]}"
        return snapshot

    async def charge_fee(
        self,
        order_id: str,
        amount: int,
        currency: str,
        idempotency_key: str,
    ) -> FeeChargeResponse:
        self.charge_calls += 1
        await self._simulate()

        if idempotency_key in self.charges:
            return self.charges[idempotency_key]

        response = FeeChargeResponse(
            charge_id=f"ch_fee_{uuid.uuid4().hex[:16]}",
            provider=self.name,
            message=f"Fee charged for order {order_id} ({currency} {amount})",
        )
        self.charges[idempotency_key] = response
        return response


class MockRateOracle(ExchangeRateOracle):
    """
    Table-driven oracle.

    ``rates`` maps (from, to) to a Decimal; missing pairs and ``available =
    False`` both raise RateUnavailable. Tests mutate ``rates`` to simulate
    live rate drift.
    """

    def __init__(self, rates: Optional[dict[tuple[str, str], Decimal]] = None):
        self.rates: dict[tuple[str, str], Decimal] = dict(rates or {})
        self.available = True
        self.calls = 0

    async def get_rate(self, from_currency: str, to_currency: str) -> RateQuote:
        self.calls += 1
        if not self.available:
            raise RateUnavailable("Mock oracle offline")
        rate = self.rates.get((from_currency, to_currency))
        if rate is None:
            raise RateUnavailable(f"No quote for {from_currency}->{to_currency}")
        return RateQuote(rate=Decimal(rate), exchange_id=f"ex_{uuid.uuid4().hex[:12]}")


# Demo quotes in minimal units, e.g. one US cent is 10^13 wei at 1 ETH = 1000 USD
DEMO_RATES: dict[tuple[str, str], Decimal] = {
    ("USD", "EUR"): Decimal("0.92"),
    ("EUR", "USD"): Decimal("1.087"),
    ("USD", "GBP"): Decimal("0.79"),
    ("GBP", "USD"): Decimal("1.266"),
    ("EUR", "GBP"): Decimal("0.858"),
    ("GBP", "EUR"): Decimal("1.165"),
    ("USD", "ETH"): Decimal("10000000000000"),
    ("EUR", "ETH"): Decimal("10870000000000"),
}
