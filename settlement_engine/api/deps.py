"""
Shared API dependencies.

The event store, gateway, rate oracle and processor are process-wide; tests
swap them with ``app.dependency_overrides``.
"""

from fastapi import HTTPException
from sqlalchemy.ext.asyncio import async_sessionmaker

from settlement_engine.database import async_session
from settlement_engine.engine.errors import ErrorKind, SettlementError
from settlement_engine.engine.event_store import EventStore
from settlement_engine.engine.processor import EventProcessor
from settlement_engine.providers.base import PaymentGateway
from settlement_engine.providers.mock_provider import DEMO_RATES, MockPaymentGateway, MockRateOracle

STATUS_BY_KIND = {
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.CONFLICT: 409,
    ErrorKind.VALIDATION: 422,
    ErrorKind.UNAVAILABLE: 503,
}

event_store = EventStore(async_session)
gateway = MockPaymentGateway()
oracle = MockRateOracle(DEMO_RATES)
processor = EventProcessor(async_session, event_store, gateway, oracle)


def get_session_factory() -> async_sessionmaker:
    return async_session


def get_event_store() -> EventStore:
    return event_store


def get_gateway() -> PaymentGateway:
    return gateway


def get_processor() -> EventProcessor:
    return processor


def http_error(error: SettlementError) -> HTTPException:
    return HTTPException(status_code=STATUS_BY_KIND.get(error.kind, 400), detail=str(error))
