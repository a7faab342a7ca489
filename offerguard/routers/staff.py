# offerguard/routers/staff.py
from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from offerguard.core.db import get_db
from offerguard.core.deps import Actor, get_current_actor
from offerguard.core.errors import ProtocolError, http_error
from offerguard.schemas.staff import (
    GenerateOnboardQRRequest,
    GenerateStaffQRRequest,
    IssuedQROut,
    LockSessionRequest,
    OpenSessionRequest,
    RosterEntryOut,
    StaffScopeOut,
    StaffSessionOut,
    VerifyQRRequest,
)
from offerguard.services.audit import AuditSink, get_audit_sink
from offerguard.services.roster import lock_staff_session, open_staff_session, touch_staff_session
from offerguard.services.staff_qr import (
    activate_onboard_qr,
    issue_onboard_qr,
    issue_staff_qr,
    verify_staff_qr,
)

router = APIRouter(prefix="/staff", tags=["Staff"])


# -------------------------
# Sessions
# -------------------------
@router.post("/sessions", response_model=StaffSessionOut, status_code=201)
async def open_session(
    body: OpenSessionRequest,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
    audit: AuditSink = Depends(get_audit_sink),
):
    try:
        return await open_staff_session(db, venue_id=body.venue_id, actor=actor, device_id=body.device_id, audit=audit)
    except ProtocolError as e:
        raise http_error(e)


@router.post("/sessions/{session_id}/touch", response_model=StaffSessionOut)
async def touch_session(
    session_id: int,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    try:
        return await touch_staff_session(db, session_id=session_id, actor=actor)
    except ProtocolError as e:
        raise http_error(e)


@router.post("/sessions/{session_id}/lock", response_model=StaffSessionOut)
async def lock_session(
    session_id: int,
    body: LockSessionRequest,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
    audit: AuditSink = Depends(get_audit_sink),
):
    try:
        return await lock_staff_session(db, session_id=session_id, actor=actor, reason=body.reason, audit=audit)
    except ProtocolError as e:
        raise http_error(e)


# -------------------------
# Rotating staff QR
# -------------------------
@router.post("/qr/generate", response_model=IssuedQROut, status_code=201)
async def generate_staff_qr(
    body: GenerateStaffQRRequest,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
    audit: AuditSink = Depends(get_audit_sink),
):
    try:
        return await issue_staff_qr(db, venue_id=body.venue_id, actor=actor, ttl_seconds=body.ttl_seconds, audit=audit)
    except ProtocolError as e:
        raise http_error(e)


@router.post("/qr/rotate", response_model=IssuedQROut, status_code=201)
async def rotate_staff_qr(
    body: GenerateStaffQRRequest,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
    audit: AuditSink = Depends(get_audit_sink),
):
    # issuing always revokes the previous token, so rotate is the same call
    return await generate_staff_qr(body, db=db, actor=actor, audit=audit)


@router.post("/qr/verify", response_model=StaffScopeOut)
async def verify_qr(
    body: VerifyQRRequest,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
    audit: AuditSink = Depends(get_audit_sink),
):
    try:
        return await verify_staff_qr(db, token=body.token, audit=audit)
    except ProtocolError as e:
        raise http_error(e)


# -------------------------
# Onboarding QR
# -------------------------
@router.post("/qr/onboard/generate", response_model=IssuedQROut, status_code=201)
async def generate_onboard_qr(
    body: GenerateOnboardQRRequest,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
    audit: AuditSink = Depends(get_audit_sink),
):
    try:
        return await issue_onboard_qr(
            db,
            venue_id=body.venue_id,
            actor=actor,
            role_scope=body.role_scope,
            ttl_seconds=body.ttl_seconds,
            audit=audit,
        )
    except ProtocolError as e:
        raise http_error(e)


@router.post("/qr/onboard/activate", response_model=RosterEntryOut)
async def activate_onboard(
    body: VerifyQRRequest,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
    audit: AuditSink = Depends(get_audit_sink),
):
    try:
        return await activate_onboard_qr(db, token=body.token, actor=actor, audit=audit)
    except ProtocolError as e:
        raise http_error(e)
