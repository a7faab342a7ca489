from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select
from sqlalchemy.pool import NullPool

import offerguard.models  # noqa: F401
from offerguard.core.db import Base, make_engine, make_sessionmaker
from offerguard.core.deps import Actor
from offerguard.core.security import hash_identifier
from offerguard.models.audit import AuditLog
from offerguard.models.offer import Offer
from offerguard.models.staff import RosterEntry, RosterRole, RosterStatus
from offerguard.models.venue import Venue
from offerguard.schemas.redemptions import GpsFix, PresenceSignals
from offerguard.services.audit import AuditSink
from offerguard.services.roster import default_permissions

# a Wednesday, noon UTC
NOW = datetime(2026, 3, 4, 12, 0, tzinfo=timezone.utc)

VENUE_LAT = 12.9716
VENUE_LNG = 77.5946
VENUE_SSID = "BrewLab-Guest"
VENUE_BSSID = "AA:BB:CC:DD:EE:01"

MANAGER_ID = 900
STAFF_ID = 901


def actor(user_id: int, role: str = "USER", otl: int = 0) -> Actor:
    return Actor(user_id=user_id, role=role, otl=otl)


def on_site(**overrides) -> PresenceSignals:
    """GPS at the venue plus the venue SSID: two matching signals."""
    data = {
        "gps": GpsFix(lat=VENUE_LAT, lng=VENUE_LNG, accuracy=8),
        "ssid": VENUE_SSID,
        "device_motion": True,
    }
    data.update(overrides)
    return PresenceSignals(**data)


@pytest.fixture
async def engine(tmp_path):
    eng = make_engine(f"sqlite+aiosqlite:///{tmp_path / 'offerguard-test.db'}", poolclass=NullPool)
    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest.fixture
def session_factory(engine):
    return make_sessionmaker(engine)


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def audit(session_factory):
    return AuditSink(session_factory)


@pytest.fixture
def audit_actions(session_factory):
    async def _actions() -> list[str]:
        async with session_factory() as session:
            res = await session.execute(select(AuditLog.action).order_by(AuditLog.id))
            return list(res.scalars().all())

    return _actions


@pytest.fixture
async def venue(db):
    v = Venue(
        name="BrewLab",
        latitude=VENUE_LAT,
        longitude=VENUE_LNG,
        wifi_ssid=VENUE_SSID,
        wifi_bssid_hash=hash_identifier(VENUE_BSSID),
        is_active=True,
        created_at=NOW,
    )
    db.add(v)
    await db.commit()
    return v


@pytest.fixture
def make_offer(db, venue):
    async def _make(**overrides) -> Offer:
        data = {
            "venue_id": venue.id,
            "title": "Free espresso",
            "value": 3.5,
            "min_otl": 0,
            "redemption_modes": [],
            "requires_staff_approval": False,
            "cooldown_hours": 24,
            "qr_rotation_minutes": 5,
            "valid_from": NOW - timedelta(days=1),
            "valid_until": NOW + timedelta(days=30),
            "days_of_week": [],
            "time_slots": [],
            "max_redemptions_per_user": 1,
            "max_total_redemptions": None,
            "current_redemptions": 0,
            "is_active": True,
            "created_at": NOW - timedelta(days=2),
        }
        data.update(overrides)
        offer = Offer(**data)
        db.add(offer)
        await db.commit()
        return offer

    return _make


@pytest.fixture
async def offer(make_offer):
    return await make_offer()


@pytest.fixture
def add_to_roster(db, venue):
    async def _add(user_id: int, role: str, venue_id: int | None = None) -> RosterEntry:
        entry = RosterEntry(
            venue_id=venue_id or venue.id,
            staff_user_id=user_id,
            role=role,
            status=RosterStatus.ACTIVE.value,
            permissions=default_permissions(role),
            invited_at=NOW - timedelta(days=10),
            activated_at=NOW - timedelta(days=10),
        )
        db.add(entry)
        await db.commit()
        return entry

    return _add


@pytest.fixture
async def manager(add_to_roster):
    await add_to_roster(MANAGER_ID, RosterRole.MANAGER.value)
    return actor(MANAGER_ID)


@pytest.fixture
async def staff(add_to_roster):
    await add_to_roster(STAFF_ID, RosterRole.STAFF.value)
    return actor(STAFF_ID)
