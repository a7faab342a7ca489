from datetime import timedelta

import pytest
from httpx import ASGITransport, AsyncClient

from offerguard.core.db import get_db, utcnow
from offerguard.core.security import create_access_token
from offerguard.main import app
from offerguard.services.audit import get_audit_sink
from tests.conftest import MANAGER_ID, VENUE_LAT, VENUE_LNG, VENUE_SSID


def _auth(user_id: int, role: str = "USER", otl: int = 0) -> dict:
    return {"Authorization": f"Bearer {create_access_token(user_id=user_id, role=role, otl=otl)}"}


ON_SITE = {
    "gps": {"lat": VENUE_LAT, "lng": VENUE_LNG, "accuracy": 10},
    "ssid": VENUE_SSID,
    "device_motion": True,
}


@pytest.fixture
async def client(session_factory, audit):
    async def _get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_audit_sink] = lambda: audit
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture
async def live_offer(make_offer):
    now = utcnow()
    return await make_offer(valid_from=now - timedelta(days=1), valid_until=now + timedelta(days=1))


@pytest.mark.asyncio
async def test_health(client):
    res = await client.get("/health")
    assert res.status_code == 200
    assert res.json() == {"status": "ok"}


@pytest.mark.asyncio
async def test_requires_bearer_token(client, live_offer):
    res = await client.post("/redemptions/initiate", json={"offer_id": live_offer.id})
    assert res.status_code == 401

    res = await client.post(
        "/redemptions/initiate", json={"offer_id": live_offer.id}, headers={"Authorization": "Bearer nope"}
    )
    assert res.status_code == 401


@pytest.mark.asyncio
async def test_redeem_over_http(client, live_offer, manager, audit_actions):
    res = await client.post(
        "/redemptions/initiate",
        json={"offer_id": live_offer.id, "presence_signals": ON_SITE, "device_fingerprint": "android-1"},
        headers=_auth(7),
    )
    assert res.status_code == 201, res.text
    body = res.json()
    assert body["requires_approval"] is False
    redemption = body["redemption"]
    assert redemption["status"] == "VERIFIED"
    otc = redemption["otc_token"]
    assert otc

    # staff can see the redemption but never the code
    res = await client.get(f"/redemptions/{redemption['id']}", headers=_auth(MANAGER_ID))
    assert res.status_code == 200
    assert res.json()["otc_token"] is None

    res = await client.post(
        f"/redemptions/{redemption['id']}/redeem", json={"otc_token": "f" * 32}, headers=_auth(7)
    )
    assert res.status_code == 400
    assert res.json()["detail"]["code"] == "INVALID_TOKEN"

    res = await client.post(f"/redemptions/{redemption['id']}/redeem", json={"otc_token": otc}, headers=_auth(7))
    assert res.status_code == 200
    assert res.json()["status"] == "REDEEMED"

    res = await client.post(
        "/redemptions/initiate",
        json={"offer_id": live_offer.id, "presence_signals": ON_SITE},
        headers=_auth(7),
    )
    assert res.status_code == 403
    detail = res.json()["detail"]
    assert detail["code"] == "COOLDOWN_ACTIVE"
    assert "cooldown_ends_at" in detail

    res = await client.get("/redemptions/my", headers=_auth(7))
    assert res.json()["total"] == 1

    res = await client.get(f"/redemptions/venue/{live_offer.venue_id}", headers=_auth(MANAGER_ID))
    assert res.status_code == 200
    assert res.json()["total"] == 1

    assert await audit_actions() == ["redemption.initiated", "redemption.redeemed"]


@pytest.mark.asyncio
async def test_presence_failure_over_http(client, live_offer):
    res = await client.post(
        "/redemptions/initiate",
        json={"offer_id": live_offer.id, "presence_signals": {"ssid": VENUE_SSID}},
        headers=_auth(7),
    )
    assert res.status_code == 403
    assert res.json()["detail"]["code"] == "PRESENCE_FAILED"


@pytest.mark.asyncio
async def test_staff_qr_over_http(client, venue, staff):
    res = await client.post("/staff/qr/generate", json={"venue_id": venue.id}, headers=_auth(staff.user_id))
    assert res.status_code == 403
    assert res.json()["detail"]["code"] == "NO_ACTIVE_SESSION"

    res = await client.post(
        "/staff/sessions", json={"venue_id": venue.id, "device_id": "till-1"}, headers=_auth(staff.user_id)
    )
    assert res.status_code == 201

    res = await client.post(
        "/staff/qr/generate", json={"venue_id": venue.id, "ttl_seconds": 5}, headers=_auth(staff.user_id)
    )
    assert res.status_code == 422
    assert res.json()["detail"]["code"] == "INVALID_TTL"

    first = (await client.post("/staff/qr/generate", json={"venue_id": venue.id}, headers=_auth(staff.user_id))).json()
    second = (await client.post("/staff/qr/rotate", json={"venue_id": venue.id}, headers=_auth(staff.user_id))).json()

    res = await client.post("/staff/qr/verify", json={"token": first["token"]}, headers=_auth(7))
    assert res.status_code == 400
    assert res.json()["detail"]["code"] == "INVALID_TOKEN"

    res = await client.post("/staff/qr/verify", json={"token": second["token"]}, headers=_auth(7))
    assert res.status_code == 200
    assert res.json()["venue_id"] == venue.id


@pytest.mark.asyncio
async def test_onboarding_over_http(client, venue, manager):
    await client.post("/staff/sessions", json={"venue_id": venue.id, "device_id": "office"}, headers=_auth(manager.user_id))
    res = await client.post(
        "/staff/qr/onboard/generate",
        json={"venue_id": venue.id, "role_scope": "STAFF"},
        headers=_auth(manager.user_id),
    )
    assert res.status_code == 201
    token = res.json()["token"]

    res = await client.post("/staff/qr/onboard/activate", json={"token": token}, headers=_auth(600))
    assert res.status_code == 200
    assert res.json()["role"] == "STAFF"

    res = await client.post("/staff/qr/onboard/activate", json={"token": token}, headers=_auth(601))
    assert res.status_code == 400


@pytest.mark.asyncio
async def test_qr_binding_over_http(client, venue):
    res = await client.post(
        "/qr-bindings/main", json={"venue_id": venue.id, "code": "QR-77", "nfc_uid": "04:aa"}, headers=_auth(1, "ADMIN")
    )
    assert res.status_code == 201
    assert "nfc_uid_hash" not in res.json()

    res = await client.get("/qr-bindings/resolve/QR-77", headers=_auth(7))
    assert res.json() == {"venue_id": venue.id, "type": "main", "zone": None, "instance_no": None}

    res = await client.post(
        "/qr-bindings/table",
        json={"venue_id": venue.id, "code": "QR-77", "zone": "bar", "instance_no": 1},
        headers=_auth(1, "ADMIN"),
    )
    assert res.status_code == 409
    assert res.json()["detail"]["code"] == "QR_CODE_CONFLICT"
