# offerguard/services/qr_bindings.py
"""
Printed QR codes (and paired NFC tags) bound to a venue counter or a table.

Resolving a binding is what gives the client a trustworthy "recent QR scan"
presence signal.
"""
from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from offerguard.core.db import utcnow
from offerguard.core.deps import Actor
from offerguard.core.errors import InsufficientPermissions, NotFound, QRCodeConflict
from offerguard.core.security import hash_identifier
from offerguard.models.qr_binding import QRBinding, QRBindingState, QRBindingType
from offerguard.models.staff import Permission
from offerguard.models.venue import Venue
from offerguard.services.audit import AuditSink
from offerguard.services.roster import has_venue_permission

logger = logging.getLogger(__name__)

BINDER_ROLES = ("ADMIN", "AGENT")


async def _require_binder(db: AsyncSession, *, actor: Actor, venue_id: int) -> None:
    if actor.role in BINDER_ROLES:
        return
    if not await has_venue_permission(db, actor=actor, venue_id=venue_id, permission=Permission.MANAGE_STAFF):
        raise InsufficientPermissions("Not allowed to bind QR codes for this venue")


async def _require_venue(db: AsyncSession, venue_id: int) -> Venue:
    venue = await db.get(Venue, venue_id)
    if venue is None:
        raise NotFound("Venue not found")
    return venue


async def _active_by_code(db: AsyncSession, code: str) -> QRBinding | None:
    res = await db.execute(
        select(QRBinding).where(
            QRBinding.code == code,
            QRBinding.state == QRBindingState.ACTIVE.value,
        )
    )
    return res.scalar_one_or_none()


async def bind_main_qr(
    db: AsyncSession,
    *,
    venue_id: int,
    code: str,
    actor: Actor,
    nfc_uid: str | None = None,
    placement: str = "counter",
    placement_note: str | None = None,
    audit: AuditSink | None = None,
    now: datetime | None = None,
) -> QRBinding:
    now = now or utcnow()
    await _require_venue(db, venue_id)
    await _require_binder(db, actor=actor, venue_id=venue_id)

    existing = await _active_by_code(db, code)
    if existing is not None:
        if existing.venue_id == venue_id and existing.type == QRBindingType.MAIN.value:
            return existing
        raise QRCodeConflict(f"QR code already bound (binding {existing.id})")

    try:
        replaced = await db.execute(
            update(QRBinding)
            .where(
                QRBinding.venue_id == venue_id,
                QRBinding.type == QRBindingType.MAIN.value,
                QRBinding.state == QRBindingState.ACTIVE.value,
            )
            .values(state=QRBindingState.REVOKED.value, revoked_at=now, revoke_reason="replaced")
            .execution_options(synchronize_session=False)
        )
        binding = QRBinding(
            code=code,
            venue_id=venue_id,
            type=QRBindingType.MAIN.value,
            nfc_uid_hash=hash_identifier(nfc_uid) if nfc_uid else None,
            placement=placement,
            placement_note=placement_note,
            state=QRBindingState.ACTIVE.value,
            bound_by=actor.user_id,
            bound_at=now,
        )
        db.add(binding)
        await db.commit()
    except IntegrityError:
        await db.rollback()
        raise QRCodeConflict("QR code was bound concurrently")
    except Exception:
        await db.rollback()
        raise

    logger.info("main qr bound id=%s venue=%s replaced=%s", binding.id, venue_id, replaced.rowcount)
    if audit:
        await audit.record(
            action="qr_binding.main_linked",
            actor_user_id=actor.user_id,
            actor_role=actor.role,
            venue_id=venue_id,
            meta={"binding_id": binding.id, "code": code, "replaced": replaced.rowcount},
        )
    return binding


async def link_table_qr(
    db: AsyncSession,
    *,
    venue_id: int,
    code: str,
    zone: str,
    instance_no: int,
    actor: Actor,
    nfc_uid: str | None = None,
    placement_note: str | None = None,
    audit: AuditSink | None = None,
    now: datetime | None = None,
) -> QRBinding:
    now = now or utcnow()
    await _require_venue(db, venue_id)
    await _require_binder(db, actor=actor, venue_id=venue_id)

    if await _active_by_code(db, code) is not None:
        raise QRCodeConflict()

    try:
        binding = QRBinding(
            code=code,
            venue_id=venue_id,
            type=QRBindingType.TABLE.value,
            zone=zone,
            instance_no=instance_no,
            nfc_uid_hash=hash_identifier(nfc_uid) if nfc_uid else None,
            placement="table",
            placement_note=placement_note,
            state=QRBindingState.ACTIVE.value,
            bound_by=actor.user_id,
            bound_at=now,
        )
        db.add(binding)
        await db.commit()
    except IntegrityError:
        await db.rollback()
        raise QRCodeConflict("QR code was bound concurrently")
    except Exception:
        await db.rollback()
        raise

    logger.info("table qr linked id=%s venue=%s zone=%s instance=%s", binding.id, venue_id, zone, instance_no)
    if audit:
        await audit.record(
            action="qr_binding.table_linked",
            actor_user_id=actor.user_id,
            actor_role=actor.role,
            venue_id=venue_id,
            meta={"binding_id": binding.id, "code": code, "zone": zone, "instance_no": instance_no},
        )
    return binding


async def revoke_binding(
    db: AsyncSession,
    *,
    binding_id: int,
    actor: Actor,
    reason: str | None = None,
    audit: AuditSink | None = None,
    now: datetime | None = None,
) -> QRBinding:
    now = now or utcnow()
    binding = await db.get(QRBinding, binding_id)
    if binding is None:
        raise NotFound("Binding not found")
    await _require_binder(db, actor=actor, venue_id=binding.venue_id)

    if binding.state == QRBindingState.REVOKED.value:
        return binding

    try:
        binding.state = QRBindingState.REVOKED.value
        binding.revoked_at = now
        binding.revoke_reason = reason
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    logger.info("qr binding revoked id=%s venue=%s", binding.id, binding.venue_id)
    if audit:
        await audit.record(
            action="qr_binding.revoked",
            actor_user_id=actor.user_id,
            actor_role=actor.role,
            venue_id=binding.venue_id,
            meta={"binding_id": binding.id, "reason": reason},
        )
    return binding


async def get_main_qr(db: AsyncSession, *, venue_id: int) -> QRBinding:
    res = await db.execute(
        select(QRBinding).where(
            QRBinding.venue_id == venue_id,
            QRBinding.type == QRBindingType.MAIN.value,
            QRBinding.state == QRBindingState.ACTIVE.value,
        )
    )
    binding = res.scalar_one_or_none()
    if binding is None:
        raise NotFound("No main QR bound for this venue")
    return binding


async def resolve_binding(db: AsyncSession, *, code: str) -> QRBinding:
    binding = await _active_by_code(db, code)
    if binding is None:
        raise NotFound("Unknown QR code")
    return binding
