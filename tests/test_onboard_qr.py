from datetime import timedelta

import pytest
from sqlalchemy import select

from offerguard.core.errors import AlreadyOnRoster, InsufficientPermissions, InvalidToken, InvalidTTL, TokenExpired
from offerguard.models.staff import RosterEntry
from offerguard.models.staff_qr import OnboardQR
from offerguard.services.roster import has_venue_permission, open_staff_session
from offerguard.models.staff import Permission
from offerguard.services.staff_qr import activate_onboard_qr, issue_onboard_qr
from tests.conftest import NOW, actor


@pytest.fixture
async def manager_on_shift(db, venue, manager):
    await open_staff_session(db, venue_id=venue.id, actor=manager, device_id="office", now=NOW)
    return manager


@pytest.mark.asyncio
async def test_activate_once(db, venue, manager_on_shift, audit, audit_actions):
    venue_id = venue.id
    issued = await issue_onboard_qr(
        db, venue_id=venue_id, actor=manager_on_shift, role_scope="STAFF", audit=audit, now=NOW
    )
    assert issued.type == "ONBOARD_QR"
    assert issued.ttl_seconds == 3600
    assert "role=STAFF" in issued.link

    newcomer = actor(501)
    entry = await activate_onboard_qr(db, token=issued.token, actor=newcomer, audit=audit, now=NOW + timedelta(minutes=5))
    assert entry.venue_id == venue_id
    assert entry.role == "STAFF"
    assert entry.status == "ACTIVE"
    assert entry.invited_by == manager_on_shift.user_id
    assert await has_venue_permission(db, actor=newcomer, venue_id=venue_id, permission=Permission.APPROVE_REDEMPTIONS)

    stored = await db.scalar(
        select(OnboardQR).where(OnboardQR.id == issued.qr_id).execution_options(populate_existing=True)
    )
    assert stored.state == "USED"
    assert stored.used_by == 501

    with pytest.raises(InvalidToken):
        await activate_onboard_qr(db, token=issued.token, actor=actor(502), now=NOW + timedelta(minutes=6))
    assert await audit_actions() == ["onboard_qr.issued", "onboard_qr.activated"]


@pytest.mark.asyncio
async def test_existing_member_does_not_burn_token(db, venue, manager_on_shift):
    issued = await issue_onboard_qr(db, venue_id=venue.id, actor=manager_on_shift, now=NOW)
    token = issued.token

    with pytest.raises(AlreadyOnRoster):
        await activate_onboard_qr(db, token=token, actor=actor(manager_on_shift.user_id), now=NOW)

    entry = await activate_onboard_qr(db, token=token, actor=actor(503), now=NOW)
    assert entry.role == "MEMBER"


@pytest.mark.asyncio
async def test_expired_onboard_token(db, venue, manager_on_shift):
    issued = await issue_onboard_qr(db, venue_id=venue.id, actor=manager_on_shift, ttl_seconds=60, now=NOW)
    with pytest.raises(TokenExpired):
        await activate_onboard_qr(db, token=issued.token, actor=actor(504), now=NOW + timedelta(seconds=61))
    assert await db.scalar(select(RosterEntry.id).where(RosterEntry.staff_user_id == 504)) is None


@pytest.mark.asyncio
async def test_onboard_policy(db, venue, manager_on_shift, staff):
    with pytest.raises(InsufficientPermissions):
        await issue_onboard_qr(db, venue_id=venue.id, actor=manager_on_shift, role_scope="OWNER", now=NOW)
    with pytest.raises(InvalidTTL):
        await issue_onboard_qr(db, venue_id=venue.id, actor=manager_on_shift, ttl_seconds=86401, now=NOW)

    await open_staff_session(db, venue_id=venue.id, actor=staff, device_id="till-1", now=NOW)
    with pytest.raises(InsufficientPermissions):
        await issue_onboard_qr(db, venue_id=venue.id, actor=staff, now=NOW)


@pytest.mark.asyncio
async def test_removed_member_can_rejoin(db, venue, manager_on_shift, add_to_roster):
    entry = await add_to_roster(505, "STAFF")
    entry.status = "REMOVED"
    await db.commit()

    issued = await issue_onboard_qr(db, venue_id=venue.id, actor=manager_on_shift, role_scope="MEMBER", now=NOW)
    rejoined = await activate_onboard_qr(db, token=issued.token, actor=actor(505), now=NOW)
    assert rejoined.id == entry.id
    assert rejoined.status == "ACTIVE"
    assert rejoined.role == "MEMBER"
