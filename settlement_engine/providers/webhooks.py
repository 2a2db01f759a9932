"""
Gateway webhook decoder.

Turns a gateway webhook body (``{"id", "type", "created", "data": {"object"}}``)
into a typed event payload plus the gateway's event id, which the event store
uses as its dedup key so upstream redeliveries collapse into one entry.
Webhook types the engine does not consume are ignored.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, ValidationError

from settlement_engine.engine.errors import InvalidError
from settlement_engine.models.events import (
    PaymentIntentPaymentFailed,
    PaymentIntentSucceeded,
    PaymentIntentUpdated,
)

logger = logging.getLogger("settlement_engine.webhooks")

# Gateway intent statuses → local PaymentIntentStatus values
STATUS_MAP = {
    "requires_payment_method": "requires_action",
    "requires_source": "requires_action",
    "requires_action": "requires_action",
    "requires_source_action": "requires_action",
    "requires_confirmation": "requires_confirmation",
    "requires_capture": "processing",
    "processing": "processing",
    "succeeded": "succeeded",
    "canceled": "canceled",
}

UPDATE_TYPES = {
    "payment_intent.created",
    "payment_intent.processing",
    "payment_intent.requires_action",
    "payment_intent.amount_capturable_updated",
    "payment_intent.canceled",
}


@dataclass
class DecodedWebhook:
    dedup_key: str
    payload: BaseModel


def _occurred_at(body: dict[str, Any]) -> datetime:
    created = body.get("created")
    if isinstance(created, (int, float)):
        return datetime.fromtimestamp(created, tz=timezone.utc)
    return datetime.now(timezone.utc)


def decode_webhook(body: dict[str, Any]) -> Optional[DecodedWebhook]:
    """
    Decode a webhook body.

    Returns:
        DecodedWebhook, or None for event types the engine ignores.

    Raises:
        InvalidError: The body is malformed for a type the engine consumes.
    """
    event_id = body.get("id")
    event_type = body.get("type")
    data = body.get("data")
    obj = data.get("object") if isinstance(data, dict) else None
    if not event_id or not isinstance(event_type, str) or not event_type or not isinstance(obj, dict):
        raise InvalidError("Webhook body must carry id, type and data.object")

    if not event_type.startswith("payment_intent."):
        logger.debug("Ignoring webhook %s of type %s", event_id, event_type)
        return None

    metadata = obj.get("metadata") if isinstance(obj.get("metadata"), dict) else {}
    currency = str(obj.get("currency") or "").upper()

    try:
        if event_type == "payment_intent.succeeded":
            payload: BaseModel = PaymentIntentSucceeded(
                intent_id=obj.get("id"),
                invoice_id=metadata.get("invoice_id"),
                amount=obj.get("amount"),
                amount_received=obj.get("amount_received"),
                currency=currency,
                charge_id=obj.get("latest_charge"),
                occurred_at=_occurred_at(body),
            )
        elif event_type == "payment_intent.payment_failed":
            error = obj.get("last_payment_error") if isinstance(obj.get("last_payment_error"), dict) else {}
            payload = PaymentIntentPaymentFailed(
                intent_id=obj.get("id"),
                invoice_id=metadata.get("invoice_id"),
                amount=obj.get("amount"),
                currency=currency or None,
                error_message=error.get("message"),
                occurred_at=_occurred_at(body),
            )
        elif event_type in UPDATE_TYPES:
            payload = PaymentIntentUpdated(
                kind="payment_intent.created" if event_type == "payment_intent.created" else "payment_intent.updated",
                intent_id=obj.get("id"),
                invoice_id=metadata.get("invoice_id"),
                amount=obj.get("amount"),
                currency=currency,
                status=STATUS_MAP.get(obj.get("status"), "processing"),
                client_secret=obj.get("client_secret"),
                receipt_email=obj.get("receipt_email"),
            )
        else:
            logger.debug("Ignoring webhook %s of type %s", event_id, event_type)
            return None
    except ValidationError as e:
        raise InvalidError(f"Malformed {event_type} webhook {event_id}: {e.error_count()} invalid field(s)") from e

    return DecodedWebhook(dedup_key=str(event_id), payload=payload)
