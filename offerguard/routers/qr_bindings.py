# offerguard/routers/qr_bindings.py
from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from offerguard.core.db import get_db
from offerguard.core.deps import Actor, get_current_actor
from offerguard.core.errors import ProtocolError, http_error
from offerguard.schemas.qr_bindings import (
    BindMainQRRequest,
    LinkTableQRRequest,
    QRBindingOut,
    ResolvedQROut,
    RevokeBindingRequest,
)
from offerguard.services.audit import AuditSink, get_audit_sink
from offerguard.services.qr_bindings import (
    bind_main_qr,
    get_main_qr,
    link_table_qr,
    resolve_binding,
    revoke_binding,
)

router = APIRouter(prefix="/qr-bindings", tags=["QR Bindings"])


@router.post("/main", response_model=QRBindingOut, status_code=201)
async def bind_main(
    body: BindMainQRRequest,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
    audit: AuditSink = Depends(get_audit_sink),
):
    try:
        return await bind_main_qr(
            db,
            venue_id=body.venue_id,
            code=body.code,
            actor=actor,
            nfc_uid=body.nfc_uid,
            placement=body.placement,
            placement_note=body.placement_note,
            audit=audit,
        )
    except ProtocolError as e:
        raise http_error(e)


@router.post("/table", response_model=QRBindingOut, status_code=201)
async def link_table(
    body: LinkTableQRRequest,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
    audit: AuditSink = Depends(get_audit_sink),
):
    try:
        return await link_table_qr(
            db,
            venue_id=body.venue_id,
            code=body.code,
            zone=body.zone,
            instance_no=body.instance_no,
            actor=actor,
            nfc_uid=body.nfc_uid,
            placement_note=body.placement_note,
            audit=audit,
        )
    except ProtocolError as e:
        raise http_error(e)


@router.post("/{binding_id}/revoke", response_model=QRBindingOut)
async def revoke(
    binding_id: int,
    body: RevokeBindingRequest,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
    audit: AuditSink = Depends(get_audit_sink),
):
    try:
        return await revoke_binding(db, binding_id=binding_id, actor=actor, reason=body.reason, audit=audit)
    except ProtocolError as e:
        raise http_error(e)


@router.get("/venue/{venue_id}/main", response_model=QRBindingOut)
async def main_for_venue(
    venue_id: int,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    try:
        return await get_main_qr(db, venue_id=venue_id)
    except ProtocolError as e:
        raise http_error(e)


@router.get("/resolve/{code}", response_model=ResolvedQROut)
async def resolve(
    code: str,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    try:
        return await resolve_binding(db, code=code)
    except ProtocolError as e:
        raise http_error(e)
