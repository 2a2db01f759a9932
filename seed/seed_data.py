"""
Seed the event store with realistic sample invoices.

Appends:
  - 5 invoices from buyers paying in USD, EUR and ETH
  - Multi-seller carts where every order converts at its own locked rate
  - Edge cases: same-currency order (rate 1), cashback, an invoice that is
    deleted before payment, a currency the demo oracle has no quote for

Nothing is processed here; run the workers (or POST /api/events/process)
afterwards. Seeding twice appends nothing new: every event carries a dedup key.

Run:
    python -m seed.seed_data
"""

import asyncio
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from settlement_engine.database import async_session, init_db
from settlement_engine.engine.event_store import EventStore
from settlement_engine.models.events import InvoiceDeleted, InvoiceRequested, OrderLine


INVOICES = [
    # Two sellers, two currencies, one buyer in EUR
    {
        "invoice_id": "INVC-001",
        "buyer_currency": "EUR",
        "orders": [
            {"order_id": "ORD-001", "seller_id": "SELLER-ACME", "seller_currency": "USD", "total_amount": 10_000, "cashback_amount": 250},
            {"order_id": "ORD-002", "seller_id": "SELLER-BLUE", "seller_currency": "GBP", "total_amount": 4_599},
        ],
    },
    # Same currency on both sides → rate 1, no oracle call
    {
        "invoice_id": "INVC-002",
        "buyer_currency": "USD",
        "orders": [
            {"order_id": "ORD-003", "seller_id": "SELLER-ACME", "seller_currency": "USD", "total_amount": 2_500},
        ],
    },
    # Buyer pays in ETH (wei); amounts far beyond 64 bits
    {
        "invoice_id": "INVC-003",
        "buyer_currency": "ETH",
        "orders": [
            {"order_id": "ORD-004", "seller_id": "SELLER-ACME", "seller_currency": "USD", "total_amount": 150_000},
            {"order_id": "ORD-005", "seller_id": "SELLER-CRAFT", "seller_currency": "EUR", "total_amount": 89_900, "cashback_amount": 1_000},
        ],
    },
    # Deleted before payment (see DELETED below)
    {
        "invoice_id": "INVC-004",
        "buyer_currency": "USD",
        "orders": [
            {"order_id": "ORD-006", "seller_id": "SELLER-BLUE", "seller_currency": "GBP", "total_amount": 12_000},
        ],
    },
    # No JPY quote in the demo oracle → the rate lock retries, then goes dead
    {
        "invoice_id": "INVC-005",
        "buyer_currency": "USD",
        "orders": [
            {"order_id": "ORD-007", "seller_id": "SELLER-KAI", "seller_currency": "JPY", "total_amount": 50_000},
        ],
    },
]

DELETED = ["INVC-004"]


async def seed():
    """Append the sample events."""
    await init_db()
    store = EventStore(async_session)

    appended = 0
    for data in INVOICES:
        payload = InvoiceRequested(
            invoice_id=data["invoice_id"],
            buyer_currency=data["buyer_currency"],
            orders=[OrderLine(**line) for line in data["orders"]],
        )
        await store.append(payload, dedup_key=f"seed:{data['invoice_id']}")
        appended += 1

    for invoice_id in DELETED:
        await store.append(InvoiceDeleted(invoice_id=invoice_id), dedup_key=f"seed:delete:{invoice_id}")
        appended += 1

    print(f"Submitted {appended} events for {len(INVOICES)} invoices (repeats of earlier seeds are ignored).")


if __name__ == "__main__":
    asyncio.run(seed())
