# offerguard/services/staff_qr.py
"""
Rotating staff QR and single-use onboarding QR.

The raw token is returned exactly once, at issue time. Only its SHA-256 is
persisted; lookups hash the supplied value first, so no comparison ever
touches the secret itself. Expiry is enforced lazily on every lookup,
whatever the stored state says.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from offerguard.core.config import settings
from offerguard.core.db import utcnow
from offerguard.core.deps import Actor
from offerguard.core.errors import InsufficientPermissions, InvalidToken, InvalidTTL, TokenExpired
from offerguard.core.security import generate_token, sha256_hex
from offerguard.models.staff import RosterEntry, RosterRole
from offerguard.models.staff_qr import OnboardQR, QRState, QRToken, QRTokenType, StaffQR
from offerguard.services.audit import AuditSink
from offerguard.services.roster import activate_roster_entry, require_staff_session

logger = logging.getLogger(__name__)

ISSUER_ROLES = (RosterRole.STAFF.value, RosterRole.MANAGER.value, RosterRole.OWNER.value, "ADMIN")
ONBOARD_ISSUER_ROLES = (RosterRole.MANAGER.value, RosterRole.OWNER.value, "ADMIN")
ONBOARD_SCOPES = (RosterRole.MEMBER.value, RosterRole.STAFF.value, RosterRole.MANAGER.value)


@dataclass
class IssuedQR:
    qr_id: int
    type: str
    token: str
    venue_id: int
    role_scope: str
    ttl_seconds: int
    issued_at: datetime
    expires_at: datetime
    link: str
    short_link: str


@dataclass
class StaffScope:
    venue_id: int
    role_scope: str
    issuer_user_id: int
    issued_at: datetime
    expires_at: datetime


def _resolve_ttl(requested: int | None, *, default: int, minimum: int, maximum: int) -> int:
    ttl = default if requested is None else int(requested)
    if ttl < minimum or ttl > maximum:
        raise InvalidTTL(f"ttl_seconds must be between {minimum} and {maximum}")
    return ttl


def _links(kind: str, token: str, venue_id: int, role_scope: str | None = None) -> tuple[str, str]:
    if kind == QRTokenType.STAFF_QR.value:
        link = f"{settings.QR_LINK_BASE}staff-verify?token={token}&venueId={venue_id}"
        short = f"{settings.QR_SHORT_BASE}/s/{token[:8]}"
    else:
        link = f"{settings.QR_LINK_BASE}staff-onboard?token={token}&venueId={venue_id}&role={role_scope}"
        short = f"{settings.QR_SHORT_BASE}/o/{token[:8]}"
    return link, short


def _issued(qr: QRToken, token: str) -> IssuedQR:
    link, short = _links(qr.type, token, qr.venue_id, qr.role_scope)
    return IssuedQR(
        qr_id=qr.id,
        type=qr.type,
        token=token,
        venue_id=qr.venue_id,
        role_scope=qr.role_scope,
        ttl_seconds=qr.ttl_seconds,
        issued_at=qr.issued_at,
        expires_at=qr.expires_at,
        link=link,
        short_link=short,
    )


async def _mark_expired(db: AsyncSession, qr: QRToken) -> None:
    try:
        await db.execute(
            update(QRToken)
            .where(QRToken.id == qr.id, QRToken.state == QRState.ACTIVE.value)
            .values(state=QRState.EXPIRED.value)
            .execution_options(synchronize_session=False)
        )
        await db.commit()
    except Exception:
        await db.rollback()
        raise


# -------------------------
# Rotating staff QR
# -------------------------
async def issue_staff_qr(
    db: AsyncSession,
    *,
    venue_id: int,
    actor: Actor,
    ttl_seconds: int | None = None,
    audit: AuditSink | None = None,
    now: datetime | None = None,
) -> IssuedQR:
    """Revoke the issuer's live token for this venue and install a new one, in one transaction."""
    now = now or utcnow()
    ttl = _resolve_ttl(
        ttl_seconds,
        default=settings.STAFF_QR_DEFAULT_TTL_SECONDS,
        minimum=settings.STAFF_QR_MIN_TTL_SECONDS,
        maximum=settings.STAFF_QR_MAX_TTL_SECONDS,
    )

    session = await require_staff_session(db, venue_id=venue_id, actor=actor, now=now)
    if session.role not in ISSUER_ROLES:
        raise InsufficientPermissions("Staff role required to issue a staff QR")
    # rollback expires the session row; keep plain copies for the retry
    session_id, session_role = session.id, session.role

    # a concurrent issuer for the same scope trips the partial unique index; retry once
    for attempt in range(2):
        token = generate_token()
        try:
            revoked = await db.execute(
                update(QRToken)
                .where(
                    QRToken.type == QRTokenType.STAFF_QR.value,
                    QRToken.venue_id == venue_id,
                    QRToken.issuer_user_id == actor.user_id,
                    QRToken.state == QRState.ACTIVE.value,
                )
                .values(state=QRState.REVOKED.value)
                .execution_options(synchronize_session=False)
            )
            qr = StaffQR(
                venue_id=venue_id,
                role_scope=session_role,
                token_hash=sha256_hex(token),
                ttl_seconds=ttl,
                issued_at=now,
                expires_at=now + timedelta(seconds=ttl),
                issuer_session_id=session_id,
                issuer_user_id=actor.user_id,
                state=QRState.ACTIVE.value,
            )
            db.add(qr)
            await db.commit()
            break
        except IntegrityError:
            await db.rollback()
            if attempt:
                raise
            logger.warning("staff qr issue raced venue=%s issuer=%s, retrying", venue_id, actor.user_id)
        except Exception:
            await db.rollback()
            raise

    logger.info(
        "staff qr issued id=%s venue=%s issuer=%s ttl=%s revoked=%s",
        qr.id, venue_id, actor.user_id, ttl, revoked.rowcount,
    )
    if audit:
        await audit.record(
            action="staff_qr.issued",
            actor_user_id=actor.user_id,
            actor_role=session_role,
            venue_id=venue_id,
            meta={"qr_id": qr.id, "ttl_seconds": ttl, "revoked": revoked.rowcount},
        )
    return _issued(qr, token)


async def verify_staff_qr(
    db: AsyncSession,
    *,
    token: str,
    audit: AuditSink | None = None,
    now: datetime | None = None,
) -> StaffScope:
    """Read-only on success: the token stays valid for repeated scans until expiry or rotation."""
    now = now or utcnow()

    res = await db.execute(
        select(StaffQR).where(
            StaffQR.token_hash == sha256_hex(token or ""),
            StaffQR.state == QRState.ACTIVE.value,
        )
    )
    qr = res.scalar_one_or_none()
    if qr is None:
        raise InvalidToken("Invalid or expired QR code")

    if now > qr.expires_at:
        await _mark_expired(db, qr)
        logger.info("staff qr expired id=%s venue=%s", qr.id, qr.venue_id)
        if audit:
            await audit.record(action="staff_qr.expired", venue_id=qr.venue_id, meta={"qr_id": qr.id})
        raise TokenExpired("QR code expired")

    return StaffScope(
        venue_id=qr.venue_id,
        role_scope=qr.role_scope,
        issuer_user_id=qr.issuer_user_id,
        issued_at=qr.issued_at,
        expires_at=qr.expires_at,
    )


# -------------------------
# Onboarding QR
# -------------------------
async def issue_onboard_qr(
    db: AsyncSession,
    *,
    venue_id: int,
    actor: Actor,
    role_scope: str = RosterRole.MEMBER.value,
    ttl_seconds: int | None = None,
    audit: AuditSink | None = None,
    now: datetime | None = None,
) -> IssuedQR:
    now = now or utcnow()
    if role_scope not in ONBOARD_SCOPES:
        raise InsufficientPermissions(f"Cannot onboard with role {role_scope}")

    ttl = _resolve_ttl(
        ttl_seconds,
        default=settings.ONBOARD_QR_DEFAULT_TTL_SECONDS,
        minimum=settings.STAFF_QR_MIN_TTL_SECONDS,
        maximum=settings.ONBOARD_QR_MAX_TTL_SECONDS,
    )

    session = await require_staff_session(db, venue_id=venue_id, actor=actor, now=now)
    if session.role not in ONBOARD_ISSUER_ROLES:
        raise InsufficientPermissions("Manager or owner required to onboard staff")

    token = generate_token()
    try:
        qr = OnboardQR(
            venue_id=venue_id,
            role_scope=role_scope,
            token_hash=sha256_hex(token),
            ttl_seconds=ttl,
            issued_at=now,
            expires_at=now + timedelta(seconds=ttl),
            issuer_session_id=session.id,
            issuer_user_id=actor.user_id,
            state=QRState.ACTIVE.value,
        )
        db.add(qr)
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    logger.info("onboard qr issued id=%s venue=%s role=%s ttl=%s", qr.id, venue_id, role_scope, ttl)
    if audit:
        await audit.record(
            action="onboard_qr.issued",
            actor_user_id=actor.user_id,
            actor_role=session.role,
            venue_id=venue_id,
            meta={"qr_id": qr.id, "role_scope": role_scope, "ttl_seconds": ttl},
        )
    return _issued(qr, token)


async def activate_onboard_qr(
    db: AsyncSession,
    *,
    token: str,
    actor: Actor,
    audit: AuditSink | None = None,
    now: datetime | None = None,
) -> RosterEntry:
    now = now or utcnow()

    res = await db.execute(
        select(OnboardQR).where(
            OnboardQR.token_hash == sha256_hex(token or ""),
            OnboardQR.state == QRState.ACTIVE.value,
        )
    )
    qr = res.scalar_one_or_none()
    if qr is None:
        raise InvalidToken("Invalid or already used onboarding code")

    if now > qr.expires_at:
        await _mark_expired(db, qr)
        raise TokenExpired("Onboarding code expired")

    try:
        # consuming the token is the gate; a second activation finds it USED
        used = await db.execute(
            update(OnboardQR)
            .where(OnboardQR.id == qr.id, OnboardQR.state == QRState.ACTIVE.value)
            .values(state=QRState.USED.value, used_by=actor.user_id, used_at=now)
            .execution_options(synchronize_session=False)
        )
        if used.rowcount != 1:
            raise InvalidToken("Invalid or already used onboarding code")

        entry = await activate_roster_entry(
            db,
            venue_id=qr.venue_id,
            staff_user_id=actor.user_id,
            role=qr.role_scope,
            invited_by=qr.issuer_user_id,
            now=now,
        )
        await db.commit()
        await db.refresh(entry)
    except Exception:
        await db.rollback()
        raise

    logger.info("onboard qr activated id=%s venue=%s user=%s role=%s", qr.id, qr.venue_id, actor.user_id, entry.role)
    if audit:
        await audit.record(
            action="onboard_qr.activated",
            actor_user_id=actor.user_id,
            actor_role=entry.role,
            venue_id=qr.venue_id,
            meta={"qr_id": qr.id, "roster_id": entry.id},
        )
    return entry
