"""
Event store endpoints.

POST /events                — Append a domain event (invoice.requested, payout.requested, ...).
GET  /events?status=dead    — List events in a status.
GET  /events/{id}           — Get a single event.
POST /events/{id}/requeue   — Give a dead event a fresh retry budget.
POST /events/process        — Claim and process one batch now.
"""

from datetime import datetime
from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, ValidationError

from settlement_engine.api.deps import get_event_store, get_processor, http_error
from settlement_engine.engine.errors import SettlementError
from settlement_engine.engine.event_store import EventStore
from settlement_engine.engine.processor import EventProcessor
from settlement_engine.models.enums import EventStatus
from settlement_engine.models.events import decode_payload
from settlement_engine.models.tables import EventEntry

router = APIRouter(prefix="/events", tags=["events"])


class AppendRequest(BaseModel):
    payload: dict[str, Any]
    dedup_key: Optional[str] = None
    scheduled_on: Optional[datetime] = None


class ProcessResponse(BaseModel):
    processed: int


class EventDetail(BaseModel):
    id: int
    kind: str
    status: str
    attempt_count: int
    dedup_key: Optional[str]
    last_error: Optional[str]
    payload: dict[str, Any]
    scheduled_on: Optional[str]
    created_at: Optional[str]
    status_updated_at: Optional[str]


def _event_to_detail(e: EventEntry) -> EventDetail:
    return EventDetail(
        id=e.id,
        kind=e.kind,
        status=e.status,
        attempt_count=e.attempt_count,
        dedup_key=e.dedup_key,
        last_error=e.last_error,
        payload=e.payload,
        scheduled_on=e.scheduled_on.isoformat() if e.scheduled_on else None,
        created_at=e.created_at.isoformat() if e.created_at else None,
        status_updated_at=e.status_updated_at.isoformat() if e.status_updated_at else None,
    )


@router.post("", response_model=EventDetail, status_code=201)
async def append_event(body: AppendRequest, event_store: EventStore = Depends(get_event_store)):
    """
    Append an event for asynchronous processing.

    Idempotent on ``dedup_key``: a repeat returns the original entry.
    """
    try:
        payload = decode_payload(body.payload)
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=f"Invalid event payload: {e.error_count()} error(s)") from e

    event_id = await event_store.append(payload, dedup_key=body.dedup_key, scheduled_on=body.scheduled_on)
    return _event_to_detail(await event_store.get(event_id))


@router.post("/process", response_model=ProcessResponse)
async def process_batch(
    limit: int = Query(10, ge=1, le=1000),
    processor: EventProcessor = Depends(get_processor),
):
    """
    Claim and process one batch of due events.

    For deployments without background workers; with workers running this
    only races them for claims.
    """
    return ProcessResponse(processed=await processor.run_once(limit))


@router.get("", response_model=list[EventDetail])
async def list_events(
    status: EventStatus = Query(EventStatus.DEAD, description="Filter by status"),
    limit: int = Query(100, ge=1, le=1000),
    event_store: EventStore = Depends(get_event_store),
):
    """List events in a status, oldest first. Defaults to the dead letters."""
    return [_event_to_detail(e) for e in await event_store.list_by_status(status, limit=limit)]


@router.get("/{event_id}", response_model=EventDetail)
async def get_event(event_id: int, event_store: EventStore = Depends(get_event_store)):
    entry = await event_store.get(event_id)
    if not entry:
        raise HTTPException(status_code=404, detail=f"Event not found: {event_id}")
    return _event_to_detail(entry)


@router.post("/{event_id}/requeue", response_model=EventDetail)
async def requeue_event(event_id: int, event_store: EventStore = Depends(get_event_store)):
    """Move a dead event back to new after its cause was fixed."""
    try:
        entry = await event_store.requeue_dead(event_id)
    except SettlementError as e:
        raise http_error(e) from e
    return _event_to_detail(entry)
