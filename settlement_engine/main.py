"""
Settlement Engine — event-driven invoice settlement API.

Payments, exchange-rate locks, fees and payouts are all driven by events
from a durable inbox; the HTTP surface only appends events and reads state.

Start the server:
    uvicorn settlement_engine.main:app --reload

Background workers run when WORKER_ENABLED=true;
otherwise POST /api/events/process handles one batch on demand.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from settlement_engine.api.deps import processor
from settlement_engine.api.events import router as events_router
from settlement_engine.api.invoices import router as invoices_router
from settlement_engine.api.payouts import router as payouts_router
from settlement_engine.api.webhooks import router as webhooks_router
from settlement_engine.config import settings
from settlement_engine.database import init_db
from settlement_engine.engine.worker import WorkerPool

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize database on startup, run the worker pool if enabled."""
    await init_db()
    pool = None
    if settings.worker_enabled:
        pool = WorkerPool(processor)
        pool.start()
    yield
    if pool is not None:
        await pool.stop()


app = FastAPI(
    title="Settlement Engine",
    description=(
        "Event-driven settlement of multi-seller invoices: per-order exchange-rate "
        "locks, idempotent payment reconciliation, platform fees and seller payouts, "
        "with a retrying event store and an immutable audit trail."
    ),
    version="0.1.0",
    lifespan=lifespan,
)


@app.get("/health", tags=["health"])
async def health():
    return {"status": "ok"}


app.include_router(webhooks_router, prefix="/api")
app.include_router(events_router, prefix="/api")
app.include_router(invoices_router, prefix="/api")
app.include_router(payouts_router, prefix="/api")
