# offerguard/services/redemptions.py
"""
Redemption state machine.

    PENDING -> VERIFIED -> (PENDING, awaiting staff) -> APPROVED -> REDEEMED
    any open state -> REJECTED | EXPIRED | FRAUD_FLAGGED

Every status change is a conditional UPDATE keyed on the expected prior
status. A caller whose UPDATE matches no row lost a race and gets no side
effects. The (user, offer) gate lives in ``redemption_slots`` and is claimed
the same way, so two concurrent initiations can never both pass the
cooldown/cap checks.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta

from sqlalchemy import and_, case, func, literal, or_, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from offerguard.core.config import settings
from offerguard.core.db import UTCDateTime, utcnow
from offerguard.core.deps import Actor
from offerguard.core.errors import (
    ApprovalRequired,
    CooldownActive,
    FirstVisitRequired,
    InsufficientPermissions,
    InvalidToken,
    MaxReached,
    NotApprovable,
    NotFound,
    OfferNotAvailable,
    PresenceFailed,
    TokenExpired,
    TrustLevelTooLow,
)
from offerguard.core.security import constant_time_equals, generate_otc, hash_identifier
from offerguard.models.device import DeviceLink
from offerguard.models.offer import Offer
from offerguard.models.redemption import (
    OPEN_STATUSES,
    Redemption,
    RedemptionEvent,
    RedemptionSlot,
    RedemptionStatus,
)
from offerguard.models.staff import Permission
from offerguard.models.venue import Venue
from offerguard.schemas.redemptions import PresenceSignals
from offerguard.services.audit import AuditSink
from offerguard.services.offers import offer_allows_mode, offer_is_valid_now
from offerguard.services.presence import verify_presence
from offerguard.services.risk import HIGH_RISK_FLAG, gather_risk_inputs, score_risk
from offerguard.services.roster import has_venue_permission, require_venue_permission
from offerguard.services.staff_qr import verify_staff_qr

logger = logging.getLogger(__name__)

STAFF_FLAG = "STAFF_FLAGGED"


def _insert(db: AsyncSession, model):
    if db.get_bind().dialect.name == "postgresql":
        return pg_insert(model)
    return sqlite_insert(model)


def _log_event(
    db: AsyncSession,
    *,
    redemption_id: int,
    action: str,
    actor_user_id: int | None,
    details: dict | None = None,
    now: datetime,
) -> None:
    db.add(
        RedemptionEvent(
            redemption_id=redemption_id,
            action=action,
            actor_user_id=actor_user_id,
            details=details or {},
            created_at=now,
        )
    )


async def _get_redemption(db: AsyncSession, redemption_id: int) -> Redemption:
    # bypass the identity map: conditional updates leave loaded rows stale
    res = await db.execute(
        select(Redemption)
        .where(Redemption.id == redemption_id)
        .execution_options(populate_existing=True)
    )
    redemption = res.scalar_one_or_none()
    if redemption is None:
        raise NotFound("Redemption not found")
    return redemption


async def _transition(
    db: AsyncSession,
    redemption_id: int,
    *,
    expected: tuple[RedemptionStatus, ...],
    to: RedemptionStatus,
    now: datetime,
    **values,
) -> bool:
    res = await db.execute(
        update(Redemption)
        .where(
            Redemption.id == redemption_id,
            Redemption.status.in_([s.value for s in expected]),
        )
        .values(status=to.value, updated_at=now, **values)
        .execution_options(synchronize_session=False)
    )
    return res.rowcount == 1


# -------------------------
# (user, offer) slot
# -------------------------
def _slot_key(user_id: int, offer_id: int):
    return and_(RedemptionSlot.user_id == user_id, RedemptionSlot.offer_id == offer_id)


def _raise_if_blocked(slot: RedemptionSlot, offer: Offer, now: datetime) -> None:
    if slot.cooldown_until is not None and slot.cooldown_until > now:
        raise CooldownActive(slot.cooldown_until)
    if (
        slot.inflight_redemption_id is not None
        and slot.inflight_expires_at is not None
        and slot.inflight_expires_at > now
    ):
        # lifts when the in-flight OTC lapses
        raise CooldownActive(slot.inflight_expires_at)
    if slot.redeemed_count >= offer.max_redemptions_per_user:
        raise MaxReached()


async def _claim_slot(
    db: AsyncSession,
    *,
    user_id: int,
    offer: Offer,
    redemption: Redemption,
    now: datetime,
) -> bool:
    await db.execute(
        _insert(db, RedemptionSlot)
        .values(user_id=user_id, offer_id=offer.id, redeemed_count=0, updated_at=now)
        .on_conflict_do_nothing(index_elements=["user_id", "offer_id"])
    )
    res = await db.execute(
        update(RedemptionSlot)
        .where(
            _slot_key(user_id, offer.id),
            or_(RedemptionSlot.cooldown_until.is_(None), RedemptionSlot.cooldown_until <= now),
            or_(
                RedemptionSlot.inflight_redemption_id.is_(None),
                RedemptionSlot.inflight_expires_at <= now,
            ),
            RedemptionSlot.redeemed_count < offer.max_redemptions_per_user,
        )
        .values(
            inflight_redemption_id=redemption.id,
            inflight_expires_at=redemption.otc_expires_at,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    return res.rowcount == 1


async def _release_slot(db: AsyncSession, redemption: Redemption, now: datetime) -> None:
    await db.execute(
        update(RedemptionSlot)
        .where(
            _slot_key(redemption.user_id, redemption.offer_id),
            RedemptionSlot.inflight_redemption_id == redemption.id,
        )
        .values(
            inflight_redemption_id=None,
            inflight_expires_at=None,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )


async def _link_device(db: AsyncSession, *, fingerprint_hash: str, user_id: int, now: datetime) -> None:
    await db.execute(
        _insert(db, DeviceLink)
        .values(fingerprint_hash=fingerprint_hash, user_id=user_id, first_seen_at=now, last_seen_at=now)
        .on_conflict_do_nothing(index_elements=["fingerprint_hash", "user_id"])
    )
    await db.execute(
        update(DeviceLink)
        .where(DeviceLink.fingerprint_hash == fingerprint_hash, DeviceLink.user_id == user_id)
        .values(last_seen_at=now)
        .execution_options(synchronize_session=False)
    )


def _stored_signals(signals: PresenceSignals | None) -> dict:
    if signals is None:
        return {}
    data = signals.model_dump(mode="json", exclude_none=True)
    if signals.bssid:
        data["bssid"] = hash_identifier(signals.bssid)
    return data


# -------------------------
# Initiate
# -------------------------
async def initiate_redemption(
    db: AsyncSession,
    *,
    offer_id: int,
    actor: Actor,
    mode: str,
    presence_signals: PresenceSignals | None,
    device_fingerprint: str | None,
    audit: AuditSink | None = None,
    now: datetime | None = None,
) -> tuple[Redemption, bool]:
    """Returns (redemption, requires_approval)."""
    now = now or utcnow()
    user_id = actor.user_id

    offer = await db.get(Offer, offer_id, populate_existing=True)
    if offer is None or not offer_is_valid_now(offer, now) or not offer_allows_mode(offer, mode):
        logger.info("initiate rejected user=%s offer=%s code=OFFER_NOT_AVAILABLE", user_id, offer_id)
        raise OfferNotAvailable()

    if actor.otl < (offer.min_otl or 0):
        raise TrustLevelTooLow()

    if settings.REQUIRE_FIRST_VISIT_GATE:
        res = await db.execute(
            select(Redemption.id)
            .where(
                Redemption.user_id == user_id,
                Redemption.venue_id == offer.venue_id,
                Redemption.status == RedemptionStatus.REDEEMED.value,
            )
            .limit(1)
        )
        if res.scalar_one_or_none() is None:
            raise FirstVisitRequired()

    # advisory read: reports cooldown/cap in order before presence; the claim below is authoritative
    slot = await db.get(RedemptionSlot, (user_id, offer.id), populate_existing=True)
    superseded_id = None
    if slot is not None:
        _raise_if_blocked(slot, offer, now)
        superseded_id = slot.inflight_redemption_id

    venue = await db.get(Venue, offer.venue_id)
    presence = verify_presence(presence_signals, venue, now=now)
    if settings.REQUIRE_LIVE_PRESENCE and not presence.verified:
        logger.info("initiate rejected user=%s offer=%s code=PRESENCE_FAILED matched=%s", user_id, offer_id, presence.matched)
        raise PresenceFailed()

    fingerprint_hash = hash_identifier(device_fingerprint) if device_fingerprint else None

    try:
        if fingerprint_hash:
            await _link_device(db, fingerprint_hash=fingerprint_hash, user_id=user_id, now=now)

        inputs = await gather_risk_inputs(
            db,
            user_id=user_id,
            fingerprint_hash=fingerprint_hash,
            signals=presence_signals,
            now=now,
        )
        risk = score_risk(inputs)
        high_risk = risk.is_high(settings.HIGH_RISK_THRESHOLD)

        status = RedemptionStatus.PENDING if offer.requires_staff_approval else RedemptionStatus.VERIFIED
        redemption = Redemption(
            offer_id=offer.id,
            user_id=user_id,
            venue_id=offer.venue_id,
            redemption_mode=mode,
            status=status.value,
            otc_token=generate_otc(),
            otc_expires_at=now + timedelta(minutes=offer.qr_rotation_minutes),
            presence_signals=_stored_signals(presence_signals),
            presence_matched=presence.matched,
            device_fingerprint_hash=fingerprint_hash,
            risk_score=risk.score,
            fraud_flags=[HIGH_RISK_FLAG] if high_risk else [],
            cooldown_until=now + timedelta(hours=offer.cooldown_hours),
            value=offer.value,
            verified_at=now,
            created_at=now,
            updated_at=now,
        )
        db.add(redemption)
        await db.flush()

        if not await _claim_slot(db, user_id=user_id, offer=offer, redemption=redemption, now=now):
            slot = await db.get(RedemptionSlot, (user_id, offer.id), populate_existing=True)
            _raise_if_blocked(slot, offer, now)
            raise CooldownActive(slot.inflight_expires_at or now)

        if superseded_id is not None and superseded_id != redemption.id:
            # its OTC has lapsed, otherwise the claim would have failed
            if await _transition(
                db,
                superseded_id,
                expected=OPEN_STATUSES,
                to=RedemptionStatus.EXPIRED,
                now=now,
                closed_reason="superseded",
            ):
                _log_event(
                    db,
                    redemption_id=superseded_id,
                    action="EXPIRED",
                    actor_user_id=user_id,
                    details={"reason": "superseded", "by": redemption.id},
                    now=now,
                )

        _log_event(
            db,
            redemption_id=redemption.id,
            action="INITIATED",
            actor_user_id=user_id,
            details={
                "redemption_mode": mode,
                "presence_matched": presence.matched,
                "risk_factors": risk.factors,
            },
            now=now,
        )
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    redemption = await _get_redemption(db, redemption.id)

    logger.info(
        "redemption initiated id=%s user=%s offer=%s status=%s risk=%s",
        redemption.id, user_id, offer.id, redemption.status, redemption.risk_score,
    )
    if high_risk:
        logger.warning("redemption %s flagged %s score=%s factors=%s", redemption.id, HIGH_RISK_FLAG, risk.score, risk.factors)

    if audit:
        await audit.record(
            action="redemption.initiated",
            actor_user_id=user_id,
            actor_role=actor.role,
            venue_id=offer.venue_id,
            meta={
                "redemption_id": redemption.id,
                "offer_id": offer.id,
                "status": redemption.status,
                "risk_score": redemption.risk_score,
                "fraud_flags": redemption.fraud_flags,
            },
        )
    return redemption, bool(offer.requires_staff_approval)


# -------------------------
# Approve
# -------------------------
async def approve_redemption(
    db: AsyncSession,
    *,
    redemption_id: int,
    actor: Actor,
    audit: AuditSink | None = None,
    now: datetime | None = None,
) -> Redemption:
    now = now or utcnow()
    redemption = await _get_redemption(db, redemption_id)

    await require_venue_permission(
        db, actor=actor, venue_id=redemption.venue_id, permission=Permission.APPROVE_REDEMPTIONS
    )

    approvable = (RedemptionStatus.VERIFIED, RedemptionStatus.PENDING)
    if redemption.status not in approvable:
        raise NotApprovable(f"Redemption cannot be approved (current: {redemption.status})")

    try:
        if not await _transition(
            db,
            redemption.id,
            expected=approvable,
            to=RedemptionStatus.APPROVED,
            now=now,
            approved_by=actor.user_id,
            approved_at=now,
        ):
            raise NotApprovable("Redemption changed state concurrently")

        _log_event(db, redemption_id=redemption.id, action="APPROVED", actor_user_id=actor.user_id, now=now)
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    redemption = await _get_redemption(db, redemption.id)
    logger.info("redemption approved id=%s by=%s", redemption.id, actor.user_id)
    if audit:
        await audit.record(
            action="redemption.approved",
            actor_user_id=actor.user_id,
            actor_role=actor.role,
            venue_id=redemption.venue_id,
            meta={"redemption_id": redemption.id},
        )
    return redemption


# -------------------------
# Complete
# -------------------------
async def _expire(db: AsyncSession, redemption: Redemption, *, actor: Actor, now: datetime) -> bool:
    try:
        expired = await _transition(
            db,
            redemption.id,
            expected=OPEN_STATUSES,
            to=RedemptionStatus.EXPIRED,
            now=now,
            closed_reason="otc_expired",
        )
        if expired:
            await _release_slot(db, redemption, now)
            _log_event(
                db,
                redemption_id=redemption.id,
                action="EXPIRED",
                actor_user_id=actor.user_id,
                details={"otc_expires_at": redemption.otc_expires_at.isoformat()},
                now=now,
            )
        await db.commit()
    except Exception:
        await db.rollback()
        raise
    return expired


async def complete_redemption(
    db: AsyncSession,
    *,
    redemption_id: int,
    actor: Actor,
    otc_token: str | None = None,
    staff_qr_token: str | None = None,
    audit: AuditSink | None = None,
    now: datetime | None = None,
) -> Redemption:
    """Consume the OTC (or a scanned staff QR for the same venue) and mark REDEEMED.

    Capacity is consumed here and only here.
    """
    now = now or utcnow()
    redemption = await _get_redemption(db, redemption_id)

    if otc_token is not None:
        if not constant_time_equals(otc_token, redemption.otc_token):
            logger.info("complete rejected id=%s code=INVALID_TOKEN", redemption.id)
            raise InvalidToken()
        method = "otc"
    elif staff_qr_token is not None:
        if actor.user_id != redemption.user_id:
            raise InsufficientPermissions("Only the redeeming user can scan a staff QR")
        scope = await verify_staff_qr(db, token=staff_qr_token, audit=audit, now=now)
        if scope.venue_id != redemption.venue_id:
            raise InvalidToken("QR code belongs to another venue")
        method = "staff_qr"
    else:
        raise InvalidToken("otc_token or staff_qr_token is required")

    if redemption.is_terminal:
        # the code is one-time: once the redemption is closed it no longer authorises anything
        raise InvalidToken(f"Redemption already closed (current: {redemption.status})")

    if now > redemption.otc_expires_at:
        if await _expire(db, redemption, actor=actor, now=now):
            logger.info("redemption expired id=%s", redemption.id)
            if audit:
                await audit.record(
                    action="redemption.expired",
                    actor_user_id=actor.user_id,
                    actor_role=actor.role,
                    venue_id=redemption.venue_id,
                    meta={"redemption_id": redemption.id},
                )
        raise TokenExpired()

    offer = await db.get(Offer, redemption.offer_id)
    if offer.requires_staff_approval:
        if redemption.status != RedemptionStatus.APPROVED:
            raise ApprovalRequired()
        expected = (RedemptionStatus.APPROVED,)
    else:
        expected = (RedemptionStatus.VERIFIED, RedemptionStatus.APPROVED)

    try:
        if not await _transition(
            db,
            redemption.id,
            expected=expected,
            to=RedemptionStatus.REDEEMED,
            now=now,
            redeemed_at=now,
        ):
            # lost the race against another completion
            raise InvalidToken("Redemption already completed")

        consumed = await db.execute(
            update(Offer)
            .where(
                Offer.id == offer.id,
                or_(
                    Offer.max_total_redemptions.is_(None),
                    Offer.current_redemptions < Offer.max_total_redemptions,
                ),
            )
            .values(current_redemptions=Offer.current_redemptions + 1)
            .execution_options(synchronize_session=False)
        )
        if consumed.rowcount != 1:
            raise OfferNotAvailable("Offer capacity exhausted")

        await db.execute(
            update(RedemptionSlot)
            .where(_slot_key(redemption.user_id, redemption.offer_id))
            .values(
                redeemed_count=RedemptionSlot.redeemed_count + 1,
                # never shorten an existing cooldown
                cooldown_until=case(
                    (RedemptionSlot.cooldown_until > redemption.cooldown_until, RedemptionSlot.cooldown_until),
                    else_=literal(redemption.cooldown_until, UTCDateTime()),
                ),
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        await _release_slot(db, redemption, now)

        _log_event(
            db,
            redemption_id=redemption.id,
            action="REDEEMED",
            actor_user_id=actor.user_id,
            details={"method": method},
            now=now,
        )
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    redemption = await _get_redemption(db, redemption.id)
    logger.info("redemption redeemed id=%s offer=%s method=%s", redemption.id, offer.id, method)
    if audit:
        await audit.record(
            action="redemption.redeemed",
            actor_user_id=actor.user_id,
            actor_role=actor.role,
            venue_id=redemption.venue_id,
            meta={"redemption_id": redemption.id, "offer_id": offer.id, "method": method, "value": redemption.value},
        )
    return redemption


# -------------------------
# Reject / flag
# -------------------------
async def _close(
    db: AsyncSession,
    *,
    redemption_id: int,
    actor: Actor,
    to: RedemptionStatus,
    reason: str | None,
    audit: AuditSink | None,
    now: datetime | None,
) -> Redemption:
    now = now or utcnow()
    redemption = await _get_redemption(db, redemption_id)

    await require_venue_permission(
        db, actor=actor, venue_id=redemption.venue_id, permission=Permission.APPROVE_REDEMPTIONS
    )

    if redemption.is_terminal:
        raise NotApprovable(f"Redemption already closed (current: {redemption.status})")

    extra = {}
    if to == RedemptionStatus.FRAUD_FLAGGED:
        flags = list(redemption.fraud_flags or [])
        flag = reason or STAFF_FLAG
        if flag not in flags:
            flags.append(flag)
        extra["fraud_flags"] = flags

    try:
        if not await _transition(
            db,
            redemption.id,
            expected=OPEN_STATUSES,
            to=to,
            now=now,
            closed_reason=reason,
            **extra,
        ):
            raise NotApprovable("Redemption changed state concurrently")

        await _release_slot(db, redemption, now)
        _log_event(
            db,
            redemption_id=redemption.id,
            action=to.value,
            actor_user_id=actor.user_id,
            details={"reason": reason},
            now=now,
        )
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    redemption = await _get_redemption(db, redemption.id)
    logger.info("redemption closed id=%s status=%s by=%s", redemption.id, to.value, actor.user_id)
    if audit:
        await audit.record(
            action=f"redemption.{to.value.lower()}",
            actor_user_id=actor.user_id,
            actor_role=actor.role,
            venue_id=redemption.venue_id,
            meta={"redemption_id": redemption.id, "reason": reason},
        )
    return redemption


async def reject_redemption(
    db: AsyncSession,
    *,
    redemption_id: int,
    actor: Actor,
    reason: str | None = None,
    audit: AuditSink | None = None,
    now: datetime | None = None,
) -> Redemption:
    return await _close(
        db, redemption_id=redemption_id, actor=actor, to=RedemptionStatus.REJECTED, reason=reason, audit=audit, now=now
    )


async def flag_redemption(
    db: AsyncSession,
    *,
    redemption_id: int,
    actor: Actor,
    reason: str | None = None,
    audit: AuditSink | None = None,
    now: datetime | None = None,
) -> Redemption:
    return await _close(
        db,
        redemption_id=redemption_id,
        actor=actor,
        to=RedemptionStatus.FRAUD_FLAGGED,
        reason=reason,
        audit=audit,
        now=now,
    )


# -------------------------
# Reads
# -------------------------
async def get_redemption(db: AsyncSession, *, redemption_id: int, actor: Actor) -> Redemption:
    redemption = await _get_redemption(db, redemption_id)
    if redemption.user_id == actor.user_id:
        return redemption
    if await has_venue_permission(db, actor=actor, venue_id=redemption.venue_id, permission=Permission.VIEW_REDEMPTIONS):
        return redemption
    # do not reveal that the id exists
    raise NotFound("Redemption not found")


async def _page(db: AsyncSession, stmt, *, page: int, limit: int) -> tuple[list[Redemption], int]:
    total_res = await db.execute(select(func.count()).select_from(stmt.order_by(None).subquery()))
    total = int(total_res.scalar_one())

    res = await db.execute(
        stmt.order_by(Redemption.created_at.desc(), Redemption.id.desc()).limit(int(limit)).offset((int(page) - 1) * int(limit))
    )
    return list(res.scalars().all()), total


async def list_my_redemptions(
    db: AsyncSession,
    *,
    actor: Actor,
    status: str | None,
    page: int,
    limit: int,
) -> tuple[list[Redemption], int]:
    stmt = select(Redemption).where(Redemption.user_id == actor.user_id)
    if status:
        stmt = stmt.where(Redemption.status == status)
    return await _page(db, stmt, page=page, limit=limit)


async def list_venue_redemptions(
    db: AsyncSession,
    *,
    venue_id: int,
    actor: Actor,
    status: str | None,
    start: datetime | None,
    end: datetime | None,
    page: int,
    limit: int,
) -> tuple[list[Redemption], int]:
    await require_venue_permission(db, actor=actor, venue_id=venue_id, permission=Permission.VIEW_REDEMPTIONS)

    stmt = select(Redemption).where(Redemption.venue_id == venue_id)
    if status:
        stmt = stmt.where(Redemption.status == status)
    if start:
        stmt = stmt.where(Redemption.created_at >= start)
    if end:
        stmt = stmt.where(Redemption.created_at <= end)
    return await _page(db, stmt, page=page, limit=limit)
