"""
Immutable audit trail for settlement operations.

Every state change gets an append-only audit log entry with:
  - Event ID (which event store entry drove it)
  - Invoice / order / payout IDs it touched
  - Action (what happened)
  - Details (amounts, errors, decisions)
  - Timestamp (UTC)

These records are never modified or deleted. Dead events are audited here
as well as logged at ERROR so an operator can find them.
"""

import json
import logging
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from settlement_engine.models.tables import AuditLog

logger = logging.getLogger("settlement_engine.audit")


def _json_default(value: Any) -> str:
    return str(value)


async def log_event(
    session: AsyncSession,
    action: str,
    event_id: Optional[int] = None,
    invoice_id: Optional[str] = None,
    order_id: Optional[str] = None,
    payout_id: Optional[str] = None,
    details: Optional[dict[str, Any]] = None,
) -> AuditLog:
    """
    Create an immutable audit log entry.

    The entry joins the caller's transaction, so it is committed (or rolled
    back) together with the state change it describes.

    Args:
        session: Database session.
        action: What happened (e.g. "invoice_paid", "fee_charged", "event_dead").
        event_id: The event store entry being processed.
        invoice_id / order_id / payout_id: Aggregates this entry relates to.
        details: Arbitrary context (serialized to JSON).

    Returns:
        The created AuditLog record.
    """
    serialized = json.dumps(details, default=_json_default) if details else None
    entry = AuditLog(
        action=action,
        event_id=event_id,
        invoice_id=invoice_id,
        order_id=order_id,
        payout_id=payout_id,
        details=serialized,
        timestamp=datetime.now(timezone.utc),
    )
    session.add(entry)
    logger.info(
        "AUDIT | event=%s invoice=%s order=%s payout=%s action=%s | %s",
        event_id or "-",
        invoice_id or "-",
        order_id or "-",
        payout_id or "-",
        action,
        serialized[:200] if serialized else "",
    )
    return entry
