# offerguard/services/roster.py
from __future__ import annotations

import logging
from datetime import datetime, timedelta

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from offerguard.core.config import settings
from offerguard.core.db import utcnow
from offerguard.core.deps import Actor
from offerguard.core.errors import AlreadyOnRoster, InsufficientPermissions, NoActiveSession, NotFound
from offerguard.models.staff import Permission, RosterEntry, RosterRole, RosterStatus, StaffSession
from offerguard.services.audit import AuditSink

logger = logging.getLogger(__name__)

_MANAGER_PERMISSIONS = [
    Permission.VIEW_DASHBOARD.value,
    Permission.MANAGE_STAFF.value,
    Permission.VIEW_REDEMPTIONS.value,
    Permission.APPROVE_REDEMPTIONS.value,
    Permission.MANAGE_OFFERS.value,
    Permission.MANAGE_EVENTS.value,
]

DEFAULT_PERMISSIONS: dict[str, list[str]] = {
    RosterRole.OWNER.value: _MANAGER_PERMISSIONS,
    RosterRole.MANAGER.value: _MANAGER_PERMISSIONS,
    RosterRole.STAFF.value: [
        Permission.VIEW_DASHBOARD.value,
        Permission.VIEW_REDEMPTIONS.value,
        Permission.APPROVE_REDEMPTIONS.value,
    ],
    RosterRole.MEMBER.value: [
        Permission.VIEW_DASHBOARD.value,
        Permission.VIEW_REDEMPTIONS.value,
    ],
}


def default_permissions(role: str) -> list[str]:
    return list(DEFAULT_PERMISSIONS.get(role, DEFAULT_PERMISSIONS[RosterRole.MEMBER.value]))


async def get_roster_entry(db: AsyncSession, *, venue_id: int, staff_user_id: int) -> RosterEntry | None:
    res = await db.execute(
        select(RosterEntry).where(
            RosterEntry.venue_id == venue_id,
            RosterEntry.staff_user_id == staff_user_id,
        )
    )
    return res.scalar_one_or_none()


async def has_venue_permission(db: AsyncSession, *, actor: Actor, venue_id: int, permission: Permission) -> bool:
    if actor.is_admin:
        return True
    entry = await get_roster_entry(db, venue_id=venue_id, staff_user_id=actor.user_id)
    if entry is None or entry.status != RosterStatus.ACTIVE.value:
        return False
    return permission.value in (entry.permissions or [])


async def require_venue_permission(db: AsyncSession, *, actor: Actor, venue_id: int, permission: Permission) -> None:
    if not await has_venue_permission(db, actor=actor, venue_id=venue_id, permission=permission):
        logger.info("permission denied user=%s venue=%s perm=%s", actor.user_id, venue_id, permission.value)
        raise InsufficientPermissions(f"{permission.value} required for venue {venue_id}")


async def activate_roster_entry(
    db: AsyncSession,
    *,
    venue_id: int,
    staff_user_id: int,
    role: str,
    invited_by: int | None,
    now: datetime,
) -> RosterEntry:
    """Create or reactivate a roster row. Caller commits."""
    entry = await get_roster_entry(db, venue_id=venue_id, staff_user_id=staff_user_id)

    if entry is not None and entry.status == RosterStatus.ACTIVE.value:
        raise AlreadyOnRoster()

    if entry is None:
        entry = RosterEntry(
            venue_id=venue_id,
            staff_user_id=staff_user_id,
            role=role,
            invited_by=invited_by,
            invited_at=now,
        )
        db.add(entry)

    entry.role = role
    entry.status = RosterStatus.ACTIVE.value
    entry.permissions = default_permissions(role)
    entry.activated_at = now
    entry.suspended_at = None
    entry.removed_at = None
    return entry


# -------------------------
# Staff sessions
# -------------------------
async def get_active_session(
    db: AsyncSession, *, venue_id: int, staff_user_id: int, now: datetime
) -> StaffSession | None:
    res = await db.execute(
        select(StaffSession)
        .where(
            StaffSession.staff_user_id == staff_user_id,
            StaffSession.venue_id == venue_id,
            StaffSession.is_active.is_(True),
            StaffSession.expires_at > now,
        )
        .order_by(StaffSession.expires_at.desc())
        .limit(1)
    )
    return res.scalar_one_or_none()


async def require_staff_session(db: AsyncSession, *, venue_id: int, actor: Actor, now: datetime) -> StaffSession:
    session = await get_active_session(db, venue_id=venue_id, staff_user_id=actor.user_id, now=now)
    if session is None:
        raise NoActiveSession()
    return session


async def open_staff_session(
    db: AsyncSession,
    *,
    venue_id: int,
    actor: Actor,
    device_id: str,
    audit: AuditSink | None = None,
    now: datetime | None = None,
) -> StaffSession:
    now = now or utcnow()

    if actor.is_admin:
        role = "ADMIN"
    else:
        entry = await get_roster_entry(db, venue_id=venue_id, staff_user_id=actor.user_id)
        if entry is None or entry.status != RosterStatus.ACTIVE.value:
            raise InsufficientPermissions("Not an active staff member of this venue")
        role = entry.role

    try:
        session = StaffSession(
            staff_user_id=actor.user_id,
            venue_id=venue_id,
            role=role,
            device_id=device_id,
            created_at=now,
            last_seen_at=now,
            expires_at=now + timedelta(minutes=settings.STAFF_SESSION_MINUTES),
            is_active=True,
        )
        db.add(session)
        await db.commit()
        await db.refresh(session)
    except Exception:
        await db.rollback()
        raise

    logger.info("staff session opened id=%s venue=%s user=%s role=%s", session.id, venue_id, actor.user_id, role)
    if audit:
        await audit.record(
            action="staff_session.opened",
            actor_user_id=actor.user_id,
            actor_role=role,
            venue_id=venue_id,
            meta={"session_id": session.id},
        )
    return session


async def _owned_session(db: AsyncSession, *, session_id: int, actor: Actor) -> StaffSession:
    session = await db.get(StaffSession, session_id)
    if session is None or session.staff_user_id != actor.user_id:
        raise NotFound("Session not found")
    return session


async def touch_staff_session(
    db: AsyncSession, *, session_id: int, actor: Actor, now: datetime | None = None
) -> StaffSession:
    now = now or utcnow()
    session = await _owned_session(db, session_id=session_id, actor=actor)

    if not session.is_active or session.expires_at <= now:
        raise NoActiveSession("Session expired or locked")

    try:
        await db.execute(
            update(StaffSession)
            .where(StaffSession.id == session.id, StaffSession.is_active.is_(True))
            .values(last_seen_at=now, expires_at=now + timedelta(minutes=settings.STAFF_SESSION_MINUTES))
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        await db.refresh(session)
    except Exception:
        await db.rollback()
        raise
    return session


async def lock_staff_session(
    db: AsyncSession,
    *,
    session_id: int,
    actor: Actor,
    reason: str,
    audit: AuditSink | None = None,
    now: datetime | None = None,
) -> StaffSession:
    now = now or utcnow()
    session = await _owned_session(db, session_id=session_id, actor=actor)

    try:
        session.is_active = False
        session.locked_at = now
        session.lock_reason = reason
        await db.commit()
        await db.refresh(session)
    except Exception:
        await db.rollback()
        raise

    logger.info("staff session locked id=%s reason=%s", session.id, reason)
    if audit:
        await audit.record(
            action="staff_session.locked",
            actor_user_id=actor.user_id,
            actor_role=session.role,
            venue_id=session.venue_id,
            meta={"session_id": session.id, "reason": reason},
        )
    return session
