from datetime import timedelta

import pytest
from sqlalchemy import select

from offerguard.core.errors import InsufficientPermissions, InvalidToken, InvalidTTL, NoActiveSession, TokenExpired
from offerguard.core.security import sha256_hex
from offerguard.models.staff_qr import QRToken, StaffQR
from offerguard.models.venue import Venue
from offerguard.services.redemptions import complete_redemption, initiate_redemption
from offerguard.services.roster import lock_staff_session, open_staff_session
from offerguard.services.staff_qr import issue_staff_qr, verify_staff_qr
from tests.conftest import NOW, actor, on_site


@pytest.fixture
async def on_shift(db, venue, staff):
    await open_staff_session(db, venue_id=venue.id, actor=staff, device_id="till-1", now=NOW)
    return staff


@pytest.mark.asyncio
async def test_issue_and_verify(db, venue, on_shift, audit, audit_actions):
    issued = await issue_staff_qr(db, venue_id=venue.id, actor=on_shift, audit=audit, now=NOW)

    assert issued.type == "STAFF_QR"
    assert issued.ttl_seconds == 120
    assert issued.expires_at == NOW + timedelta(seconds=120)
    assert issued.role_scope == "STAFF"
    assert issued.token in issued.link
    assert issued.short_link.endswith(issued.token[:8])

    stored = await db.scalar(select(QRToken).where(QRToken.id == issued.qr_id))
    assert isinstance(stored, StaffQR)
    assert stored.token_hash == sha256_hex(issued.token)
    assert stored.token_hash != issued.token

    scope = await verify_staff_qr(db, token=issued.token, now=NOW + timedelta(seconds=60))
    assert scope.venue_id == venue.id
    assert scope.role_scope == "STAFF"
    assert scope.issuer_user_id == on_shift.user_id

    # reusable until it expires
    await verify_staff_qr(db, token=issued.token, now=NOW + timedelta(seconds=61))
    assert await audit_actions() == ["staff_qr.issued"]


@pytest.mark.asyncio
async def test_rotation_invalidates_previous_token(db, venue, on_shift):
    first = await issue_staff_qr(db, venue_id=venue.id, actor=on_shift, now=NOW)
    second = await issue_staff_qr(db, venue_id=venue.id, actor=on_shift, now=NOW + timedelta(seconds=30))

    with pytest.raises(InvalidToken):
        await verify_staff_qr(db, token=first.token, now=NOW + timedelta(seconds=31))
    assert (await verify_staff_qr(db, token=second.token, now=NOW + timedelta(seconds=31))).venue_id == venue.id

    states = (await db.execute(select(QRToken.state).order_by(QRToken.id))).scalars().all()
    assert states == ["REVOKED", "ACTIVE"]


@pytest.mark.asyncio
async def test_issuers_rotate_independently(db, venue, on_shift, manager):
    await open_staff_session(db, venue_id=venue.id, actor=manager, device_id="office", now=NOW)
    mine = await issue_staff_qr(db, venue_id=venue.id, actor=on_shift, now=NOW)
    await issue_staff_qr(db, venue_id=venue.id, actor=manager, now=NOW)

    assert (await verify_staff_qr(db, token=mine.token, now=NOW)).issuer_user_id == on_shift.user_id


@pytest.mark.asyncio
async def test_issue_retries_after_token_collision(db, venue, on_shift, manager, monkeypatch):
    venue_id = venue.id
    await open_staff_session(db, venue_id=venue_id, actor=manager, device_id="office", now=NOW)
    taken = await issue_staff_qr(db, venue_id=venue_id, actor=manager, now=NOW)

    tokens = iter([taken.token, "fresh-staff-token"])
    monkeypatch.setattr("offerguard.services.staff_qr.generate_token", lambda: next(tokens))

    issued = await issue_staff_qr(db, venue_id=venue_id, actor=on_shift, now=NOW)

    assert issued.token == "fresh-staff-token"
    assert issued.role_scope == "STAFF"
    scope = await verify_staff_qr(db, token=issued.token, now=NOW)
    assert scope.issuer_user_id == on_shift.user_id
    assert (await verify_staff_qr(db, token=taken.token, now=NOW)).issuer_user_id == manager.user_id


@pytest.mark.asyncio
async def test_expired_token(db, venue, on_shift, audit, audit_actions):
    issued = await issue_staff_qr(db, venue_id=venue.id, actor=on_shift, ttl_seconds=30, now=NOW)

    with pytest.raises(TokenExpired):
        await verify_staff_qr(db, token=issued.token, audit=audit, now=NOW + timedelta(seconds=31))
    assert await db.scalar(select(QRToken.state).where(QRToken.id == issued.qr_id)) == "EXPIRED"
    assert await audit_actions() == ["staff_qr.expired"]

    with pytest.raises(InvalidToken):
        await verify_staff_qr(db, token=issued.token, now=NOW + timedelta(seconds=32))


@pytest.mark.asyncio
@pytest.mark.parametrize("ttl", [29, 901])
async def test_ttl_outside_policy(db, venue, on_shift, ttl):
    with pytest.raises(InvalidTTL):
        await issue_staff_qr(db, venue_id=venue.id, actor=on_shift, ttl_seconds=ttl, now=NOW)


@pytest.mark.asyncio
async def test_issue_requires_live_session(db, venue, staff):
    with pytest.raises(NoActiveSession):
        await issue_staff_qr(db, venue_id=venue.id, actor=staff, now=NOW)

    session = await open_staff_session(db, venue_id=venue.id, actor=staff, device_id="till-1", now=NOW)
    with pytest.raises(NoActiveSession):
        await issue_staff_qr(db, venue_id=venue.id, actor=staff, now=NOW + timedelta(minutes=31))

    await lock_staff_session(db, session_id=session.id, actor=staff, reason="shift over", now=NOW)
    with pytest.raises(NoActiveSession):
        await issue_staff_qr(db, venue_id=venue.id, actor=staff, now=NOW + timedelta(minutes=1))


@pytest.mark.asyncio
async def test_members_cannot_issue(db, venue, add_to_roster):
    await add_to_roster(70, "MEMBER")
    member = actor(70)
    await open_staff_session(db, venue_id=venue.id, actor=member, device_id="phone", now=NOW)
    with pytest.raises(InsufficientPermissions):
        await issue_staff_qr(db, venue_id=venue.id, actor=member, now=NOW)


@pytest.mark.asyncio
async def test_garbage_token(db):
    with pytest.raises(InvalidToken):
        await verify_staff_qr(db, token="not-a-token", now=NOW)


# -------------------------
# Completing a redemption with a scanned staff QR
# -------------------------
@pytest.mark.asyncio
async def test_complete_with_staff_qr(db, venue, offer, on_shift):
    user = actor(7)
    r, _ = await initiate_redemption(
        db, offer_id=offer.id, actor=user, mode="STAFF_QR", presence_signals=on_site(), device_fingerprint=None, now=NOW
    )
    issued = await issue_staff_qr(db, venue_id=venue.id, actor=on_shift, now=NOW)

    with pytest.raises(InsufficientPermissions):
        await complete_redemption(db, redemption_id=r.id, actor=actor(8), staff_qr_token=issued.token, now=NOW)

    done = await complete_redemption(db, redemption_id=r.id, actor=user, staff_qr_token=issued.token, now=NOW)
    assert done.status == "REDEEMED"
    assert done.events[-1].details == {"method": "staff_qr"}


@pytest.mark.asyncio
async def test_staff_qr_from_another_venue(db, venue, offer, add_to_roster):
    other = Venue(name="Elsewhere", is_active=True, created_at=NOW)
    db.add(other)
    await db.commit()
    await add_to_roster(300, "STAFF", venue_id=other.id)
    await open_staff_session(db, venue_id=other.id, actor=actor(300), device_id="till-9", now=NOW)
    issued = await issue_staff_qr(db, venue_id=other.id, actor=actor(300), now=NOW)

    user = actor(7)
    r, _ = await initiate_redemption(
        db, offer_id=offer.id, actor=user, mode="STAFF_QR", presence_signals=on_site(), device_fingerprint=None, now=NOW
    )
    with pytest.raises(InvalidToken):
        await complete_redemption(db, redemption_id=r.id, actor=user, staff_qr_token=issued.token, now=NOW)
