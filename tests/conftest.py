"""Shared test fixtures."""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
import pytest_asyncio
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from settlement_engine.database import configure_sqlite
from settlement_engine.engine.event_store import EventStore
from settlement_engine.engine.processor import EventProcessor
from settlement_engine.models.enums import EventStatus
from settlement_engine.models.events import (
    AmountReceivedOnChain,
    InvoiceRequested,
    OrderLine,
    PayoutRequested,
)
from settlement_engine.models.tables import AmountReceived, AuditLog, Base, EventEntry, Invoice
from settlement_engine.providers.mock_provider import MockPaymentGateway, MockRateOracle

TEST_RATES = {
    ("USD", "EUR"): Decimal("0.9"),
    ("GBP", "EUR"): Decimal("1.15"),
    ("EUR", "USD"): Decimal("1.1"),
    ("USD", "ETH"): Decimal("10000000000000"),
}


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    """Fresh file-backed SQLite database for each test."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'settlement.db'}", echo=False)
    configure_sqlite(engine)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()


@pytest.fixture
def event_store(session_factory):
    # Long base delay: failed events stay parked until a test makes them due
    return EventStore(session_factory, max_attempts=3, base_delay=60.0, max_delay=600.0)


@pytest.fixture
def gateway():
    return MockPaymentGateway(failure_rate=0.0, latency_ms=0)


@pytest.fixture
def oracle():
    return MockRateOracle(TEST_RATES)


@pytest.fixture
def processor(session_factory, event_store, gateway, oracle):
    return EventProcessor(session_factory, event_store, gateway, oracle, fee_bps=500)


class Flow:
    """Drives the engine the way producers do: append events, then process."""

    def __init__(self, session_factory, event_store: EventStore, processor: EventProcessor):
        self.sessions = session_factory
        self.store = event_store
        self.processor = processor

    async def submit(self, payload, dedup_key=None, run=True) -> int:
        event_id = await self.store.append(payload, dedup_key=dedup_key)
        if run:
            await self.processor.run_until_idle()
        return event_id

    async def request_invoice(self, invoice_id, buyer_currency, orders, run=True) -> int:
        return await self.submit(
            InvoiceRequested(
                invoice_id=invoice_id,
                buyer_currency=buyer_currency,
                orders=[OrderLine(**o) for o in orders],
            ),
            run=run,
        )

    async def receive(self, invoice_id, amount, tx, currency, run=True) -> int:
        return await self.submit(
            AmountReceivedOnChain(invoice_id=invoice_id, transaction_id=tx, amount=amount, currency=currency),
            run=run,
        )

    async def request_payout(self, payout_id, seller_id, currency, run=True, **kwargs) -> int:
        kwargs.setdefault("target_type", "bank_wallet")
        return await self.submit(
            PayoutRequested(payout_id=payout_id, seller_id=seller_id, currency=currency, **kwargs),
            run=run,
        )

    async def make_due(self) -> None:
        """Pull every parked retry into the past so the next poll claims it."""
        past = datetime.now(timezone.utc) - timedelta(seconds=1)
        async with self.sessions() as session:
            await session.execute(
                update(EventEntry)
                .where(EventEntry.status == EventStatus.FAILED.value)
                .values(scheduled_on=past)
            )
            await session.commit()

    async def invoice(self, invoice_id) -> Invoice:
        async with self.sessions() as session:
            return await session.get(Invoice, invoice_id)

    async def event(self, event_id) -> EventEntry:
        async with self.sessions() as session:
            return await session.get(EventEntry, event_id)

    async def events(self, kind=None) -> list[EventEntry]:
        async with self.sessions() as session:
            stmt = select(EventEntry).order_by(EventEntry.id)
            if kind:
                stmt = stmt.where(EventEntry.kind == kind)
            return list((await session.execute(stmt)).scalars().all())

    async def audit(self, action, **filters) -> list[AuditLog]:
        async with self.sessions() as session:
            stmt = select(AuditLog).where(AuditLog.action == action)
            for column, value in filters.items():
                stmt = stmt.where(getattr(AuditLog, column) == value)
            return list((await session.execute(stmt.order_by(AuditLog.id))).scalars().all())

    async def received(self, invoice_id) -> list[AmountReceived]:
        async with self.sessions() as session:
            result = await session.execute(
                select(AmountReceived).where(AmountReceived.invoice_id == invoice_id)
            )
            return list(result.scalars().all())

    async def assert_ledger_consistent(self, invoice_id) -> None:
        """amount_captured must equal the sum of the invoice's ledger rows."""
        invoice = await self.invoice(invoice_id)
        rows = await self.received(invoice_id)
        assert invoice.amount_captured == sum(r.amount for r in rows)

    async def count(self, model) -> int:
        async with self.sessions() as session:
            return (await session.execute(select(func.count()).select_from(model))).scalar_one()


@pytest.fixture
def flow(session_factory, event_store, processor):
    return Flow(session_factory, event_store, processor)


# Two sellers, buyer pays in EUR: 10000 USD cents at 0.9 → 9000, 4599 GBP pence at 1.15 → 5289
MIXED_ORDERS = [
    {"order_id": "ORD-1", "seller_id": "SELLER-A", "seller_currency": "USD", "total_amount": 10_000, "cashback_amount": 155},
    {"order_id": "ORD-2", "seller_id": "SELLER-B", "seller_currency": "GBP", "total_amount": 4_599},
]


@pytest.fixture
def mixed_orders():
    return [dict(o) for o in MIXED_ORDERS]
