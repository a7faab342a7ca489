import math
from datetime import timedelta

import pytest

from offerguard.core.security import hash_identifier
from offerguard.models.venue import Venue
from offerguard.schemas.redemptions import GpsFix, PresenceSignals
from offerguard.services.presence import EARTH_RADIUS_M, PresencePolicy, haversine_m, verify_presence
from tests.conftest import NOW, VENUE_BSSID, VENUE_LAT, VENUE_LNG, VENUE_SSID

POLICY = PresencePolicy(max_distance_m=100.0, required_signals=2, scan_window=timedelta(minutes=5))


def _venue() -> Venue:
    return Venue(
        id=1,
        name="BrewLab",
        latitude=VENUE_LAT,
        longitude=VENUE_LNG,
        wifi_ssid=VENUE_SSID,
        wifi_bssid_hash=hash_identifier(VENUE_BSSID),
    )


def _north_of_venue(metres: float) -> GpsFix:
    return GpsFix(lat=VENUE_LAT + math.degrees(metres / EARTH_RADIUS_M), lng=VENUE_LNG, accuracy=5)


def test_haversine_one_degree_of_latitude():
    assert haversine_m(0, 0, 1, 0) == pytest.approx(EARTH_RADIUS_M * math.pi / 180)


def test_haversine_zero_distance():
    assert haversine_m(VENUE_LAT, VENUE_LNG, VENUE_LAT, VENUE_LNG) == 0


def test_gps_at_exactly_100m_matches():
    result = verify_presence(PresenceSignals(gps=_north_of_venue(100), ssid=VENUE_SSID), _venue(), now=NOW, policy=POLICY)
    assert result.matched == ["gps", "ssid"]
    assert result.verified is True
    assert result.distance_m == pytest.approx(100, abs=0.001)


def test_gps_at_101m_does_not_match():
    result = verify_presence(PresenceSignals(gps=_north_of_venue(101), ssid=VENUE_SSID), _venue(), now=NOW, policy=POLICY)
    assert result.matched == ["ssid"]
    assert result.verified is False


@pytest.mark.parametrize(
    "signals",
    [
        PresenceSignals(gps=GpsFix(lat=VENUE_LAT, lng=VENUE_LNG)),
        PresenceSignals(ssid=VENUE_SSID),
        PresenceSignals(bssid=VENUE_BSSID),
        PresenceSignals(qr_scanned_at=NOW - timedelta(seconds=30)),
    ],
)
def test_single_signal_is_not_enough(signals):
    result = verify_presence(signals, _venue(), now=NOW, policy=POLICY)
    assert len(result.matched) == 1
    assert result.verified is False


def test_bssid_match_ignores_case_and_separator():
    signals = PresenceSignals(bssid="aa-bb-cc-dd-ee-01", qr_scanned_at=NOW - timedelta(minutes=1))
    result = verify_presence(signals, _venue(), now=NOW, policy=POLICY)
    assert result.matched == ["bssid", "recent_scan"]
    assert result.verified is True


def test_stale_or_future_scan_is_ignored():
    venue = _venue()
    stale = verify_presence(PresenceSignals(qr_scanned_at=NOW - timedelta(minutes=5)), venue, now=NOW, policy=POLICY)
    future = verify_presence(PresenceSignals(qr_scanned_at=NOW + timedelta(minutes=1)), venue, now=NOW, policy=POLICY)
    assert stale.matched == []
    assert future.matched == []


def test_wrong_ssid_and_missing_signals():
    result = verify_presence(PresenceSignals(ssid="FreeAirportWifi"), _venue(), now=NOW, policy=POLICY)
    assert result.matched == []
    assert verify_presence(None, _venue(), now=NOW, policy=POLICY).verified is False
