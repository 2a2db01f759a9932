"""
Payout query and trace endpoints.

GET /payouts            — List payouts, optionally for one seller.
GET /payouts/preview    — What a payout request would pay out now, without creating it.
GET /payouts/by-orders  — Payouts of the given orders, and which orders have none.
GET /payouts/{id}       — Get a single payout with its orders.
GET /payouts/{id}/trace — Full audit trail for a payout.
"""

import json
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from settlement_engine.api.deps import http_error
from settlement_engine.database import get_session
from settlement_engine.engine.errors import SettlementError
from settlement_engine.engine.payouts import calculate_payout, get_payouts_for_orders
from settlement_engine.models.tables import AuditLog, Payout
from settlement_engine.repos import PayoutRepo

router = APIRouter(prefix="/payouts", tags=["payouts"])


class PayoutDetail(BaseModel):
    id: str
    seller_id: str
    currency: str
    gross_amount: int
    total_fees: int
    blockchain_fee: Optional[int]
    net_amount: int
    target_type: str
    wallet_address: Optional[str]
    transfer_reference: Optional[str]
    status: str
    order_ids: Optional[list[str]] = None
    initiated_at: Optional[str]
    completed_at: Optional[str]

    model_config = {"from_attributes": True}


class AuditEntry(BaseModel):
    id: int
    action: str
    event_id: Optional[int]
    details: Optional[dict] = None
    timestamp: Optional[str]

    model_config = {"from_attributes": True}


class PayoutTrace(BaseModel):
    payout: PayoutDetail
    audit_trail: list[AuditEntry]


class PayoutPreview(BaseModel):
    seller_id: str
    currency: str
    order_ids: list[str]
    gross_amount: int
    total_fees: int
    blockchain_fee: int
    net_amount: int


class PayoutsByOrders(BaseModel):
    payouts: dict[str, PayoutDetail]
    order_ids_without_payout: list[str]


def _payout_to_detail(p: Payout, order_ids: Optional[list[str]] = None) -> PayoutDetail:
    return PayoutDetail(
        id=p.id,
        seller_id=p.seller_id,
        currency=p.currency,
        gross_amount=p.gross_amount,
        total_fees=p.total_fees,
        blockchain_fee=p.blockchain_fee,
        net_amount=p.net_amount,
        target_type=p.target_type,
        wallet_address=p.wallet_address,
        transfer_reference=p.transfer_reference,
        status=p.status,
        order_ids=order_ids,
        initiated_at=p.initiated_at.isoformat() if p.initiated_at else None,
        completed_at=p.completed_at.isoformat() if p.completed_at else None,
    )


@router.get("", response_model=list[PayoutDetail])
async def list_payouts(
    seller_id: Optional[str] = Query(None, description="Filter by seller"),
    session: AsyncSession = Depends(get_session),
):
    """List payouts, newest first."""
    return [_payout_to_detail(p) for p in await PayoutRepo(session).search(seller_id)]


@router.get("/preview", response_model=PayoutPreview)
async def preview_payout(
    seller_id: str = Query(..., description="Seller to pay out"),
    currency: str = Query(..., description="Seller currency of the orders"),
    order_ids: Optional[list[str]] = Query(None, description="Restrict to these orders"),
    blockchain_fee: int = Query(0, ge=0),
    session: AsyncSession = Depends(get_session),
):
    """
    Calculate a payout without creating it.

    Same eligibility and arithmetic as a ``payout.requested`` event. The net
    amount can come out negative when the blockchain fee exceeds what the
    orders would pay.
    """
    try:
        calc = await calculate_payout(session, seller_id, currency.upper(), order_ids, blockchain_fee)
    except SettlementError as e:
        raise http_error(e) from e

    return PayoutPreview(
        seller_id=calc.seller_id,
        currency=calc.currency,
        order_ids=calc.order_ids,
        gross_amount=calc.gross_amount,
        total_fees=calc.total_fees,
        blockchain_fee=calc.blockchain_fee,
        net_amount=calc.net_amount,
    )


@router.get("/by-orders", response_model=PayoutsByOrders)
async def payouts_by_orders(
    order_ids: list[str] = Query(..., description="Orders to look up"),
    session: AsyncSession = Depends(get_session),
):
    found = await get_payouts_for_orders(session, order_ids)
    return PayoutsByOrders(
        payouts={order_id: _payout_to_detail(p) for order_id, p in found.payouts.items()},
        order_ids_without_payout=found.order_ids_without_payout,
    )


@router.get("/{payout_id}", response_model=PayoutDetail)
async def get_payout(payout_id: str, session: AsyncSession = Depends(get_session)):
    repo = PayoutRepo(session)
    payout = await repo.get(payout_id)
    if not payout:
        raise HTTPException(status_code=404, detail=f"Payout not found: {payout_id}")
    return _payout_to_detail(payout, await repo.order_ids(payout_id))


@router.get("/{payout_id}/trace", response_model=PayoutTrace)
async def get_payout_trace(payout_id: str, session: AsyncSession = Depends(get_session)):
    """
    Full audit trail for a payout.

    Returns the payout details plus every audit log entry, ordered
    chronologically.
    """
    repo = PayoutRepo(session)
    payout = await repo.get(payout_id)
    if not payout:
        raise HTTPException(status_code=404, detail=f"Payout not found: {payout_id}")

    result = await session.execute(
        select(AuditLog)
        .where(AuditLog.payout_id == payout_id)
        .order_by(AuditLog.timestamp.asc(), AuditLog.id.asc())
    )
    logs = result.scalars().all()

    audit_trail = []
    for log in logs:
        details = None
        if log.details:
            try:
                details = json.loads(log.details)
            except (json.JSONDecodeError, TypeError):
                details = {"raw": log.details}

        audit_trail.append(AuditEntry(
            id=log.id,
            action=log.action,
            event_id=log.event_id,
            details=details,
            timestamp=log.timestamp.isoformat() if log.timestamp else None,
        ))

    return PayoutTrace(
        payout=_payout_to_detail(payout, await repo.order_ids(payout_id)),
        audit_trail=audit_trail,
    )
