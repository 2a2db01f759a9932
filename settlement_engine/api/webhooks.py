"""
Gateway webhook endpoint.

POST /webhooks/gateway — Decode a gateway webhook and append it to the event
store. Nothing is processed inline: the response only says whether the
event was accepted, so the gateway's redeliveries are cheap and collapse on
the gateway event id.
"""

from typing import Any, Optional

from fastapi import APIRouter, Body, Depends
from pydantic import BaseModel

from settlement_engine.api.deps import get_event_store, http_error
from settlement_engine.engine.errors import InvalidError
from settlement_engine.engine.event_store import EventStore
from settlement_engine.providers.webhooks import decode_webhook

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


class WebhookAck(BaseModel):
    status: str
    event_id: Optional[int] = None
    kind: Optional[str] = None


@router.post("/gateway", response_model=WebhookAck, status_code=202)
async def receive_gateway_webhook(
    body: dict[str, Any] = Body(...),
    event_store: EventStore = Depends(get_event_store),
):
    try:
        decoded = decode_webhook(body)
    except InvalidError as e:
        raise http_error(e) from e

    if decoded is None:
        return WebhookAck(status="ignored")

    event_id = await event_store.append(decoded.payload, dedup_key=decoded.dedup_key)
    return WebhookAck(status="accepted", event_id=event_id, kind=decoded.payload.kind)
