# offerguard/routers/redemptions.py
from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from offerguard.core.db import get_db
from offerguard.core.deps import Actor, get_current_actor
from offerguard.core.errors import ProtocolError, http_error
from offerguard.models.redemption import Redemption
from offerguard.schemas.redemptions import (
    CloseRedemptionRequest,
    CompleteRedemptionRequest,
    InitiateRedemptionRequest,
    InitiateRedemptionResponse,
    RedemptionOut,
    RedemptionPage,
)
from offerguard.services.audit import AuditSink, get_audit_sink
from offerguard.services.redemptions import (
    approve_redemption,
    complete_redemption,
    flag_redemption,
    get_redemption,
    initiate_redemption,
    list_my_redemptions,
    list_venue_redemptions,
    reject_redemption,
)

router = APIRouter(prefix="/redemptions", tags=["Redemptions"])


def _out(redemption: Redemption, actor: Actor) -> RedemptionOut:
    out = RedemptionOut.model_validate(redemption)
    if redemption.user_id != actor.user_id:
        out.otc_token = None
    return out


@router.post("/initiate", response_model=InitiateRedemptionResponse, status_code=201)
async def initiate(
    body: InitiateRedemptionRequest,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
    audit: AuditSink = Depends(get_audit_sink),
):
    try:
        redemption, requires_approval = await initiate_redemption(
            db,
            offer_id=body.offer_id,
            actor=actor,
            mode=body.redemption_mode.value,
            presence_signals=body.presence_signals,
            device_fingerprint=body.device_fingerprint,
            audit=audit,
        )
    except ProtocolError as e:
        raise http_error(e)

    return InitiateRedemptionResponse(
        redemption=RedemptionOut.model_validate(redemption),
        requires_approval=requires_approval,
    )


@router.get("/my", response_model=RedemptionPage)
async def my_redemptions(
    status: str | None = Query(default=None),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    items, total = await list_my_redemptions(db, actor=actor, status=status, page=page, limit=limit)
    return RedemptionPage(items=[_out(r, actor) for r in items], page=page, limit=limit, total=total)


@router.get("/venue/{venue_id}", response_model=RedemptionPage)
async def venue_redemptions(
    venue_id: int,
    status: str | None = Query(default=None),
    start: datetime | None = Query(default=None, alias="from"),
    end: datetime | None = Query(default=None, alias="to"),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    try:
        items, total = await list_venue_redemptions(
            db,
            venue_id=venue_id,
            actor=actor,
            status=status,
            start=start,
            end=end,
            page=page,
            limit=limit,
        )
    except ProtocolError as e:
        raise http_error(e)
    return RedemptionPage(items=[_out(r, actor) for r in items], page=page, limit=limit, total=total)


@router.get("/{redemption_id}", response_model=RedemptionOut)
async def read_redemption(
    redemption_id: int,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    try:
        redemption = await get_redemption(db, redemption_id=redemption_id, actor=actor)
    except ProtocolError as e:
        raise http_error(e)
    return _out(redemption, actor)


@router.post("/{redemption_id}/approve", response_model=RedemptionOut)
async def approve(
    redemption_id: int,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
    audit: AuditSink = Depends(get_audit_sink),
):
    try:
        redemption = await approve_redemption(db, redemption_id=redemption_id, actor=actor, audit=audit)
    except ProtocolError as e:
        raise http_error(e)
    return _out(redemption, actor)


@router.post("/{redemption_id}/redeem", response_model=RedemptionOut)
async def redeem(
    redemption_id: int,
    body: CompleteRedemptionRequest,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
    audit: AuditSink = Depends(get_audit_sink),
):
    try:
        redemption = await complete_redemption(
            db,
            redemption_id=redemption_id,
            actor=actor,
            otc_token=body.otc_token,
            staff_qr_token=body.staff_qr_token,
            audit=audit,
        )
    except ProtocolError as e:
        raise http_error(e)
    return _out(redemption, actor)


@router.post("/{redemption_id}/reject", response_model=RedemptionOut)
async def reject(
    redemption_id: int,
    body: CloseRedemptionRequest,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
    audit: AuditSink = Depends(get_audit_sink),
):
    try:
        redemption = await reject_redemption(
            db, redemption_id=redemption_id, actor=actor, reason=body.reason, audit=audit
        )
    except ProtocolError as e:
        raise http_error(e)
    return _out(redemption, actor)


@router.post("/{redemption_id}/flag", response_model=RedemptionOut)
async def flag(
    redemption_id: int,
    body: CloseRedemptionRequest,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
    audit: AuditSink = Depends(get_audit_sink),
):
    try:
        redemption = await flag_redemption(
            db, redemption_id=redemption_id, actor=actor, reason=body.reason, audit=audit
        )
    except ProtocolError as e:
        raise http_error(e)
    return _out(redemption, actor)
