# offerguard/services/presence.py
"""
Presence corroboration.

Up to four independent signals are checked against the venue record:

- GPS: great-circle distance to the venue within PRESENCE_MAX_DISTANCE_M
- SSID: equals the venue's registered SSID
- BSSID: keyed hash equals the venue's stored BSSID hash
- recent scan: a QR scan within PRESENCE_SCAN_WINDOW_SECONDS

GPS can be spoofed and an SSID can be broadcast by anyone, so no signal is
accepted alone: PRESENCE_REQUIRED_SIGNALS of them must match.
"""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

from offerguard.core.config import settings
from offerguard.core.security import constant_time_equals, hash_identifier
from offerguard.models.venue import Venue
from offerguard.schemas.redemptions import PresenceSignals

logger = logging.getLogger(__name__)

# Mean earth radius (IUGG), metres.
EARTH_RADIUS_M = 6_371_000.0


@dataclass(frozen=True)
class PresencePolicy:
    max_distance_m: float = 100.0
    required_signals: int = 2
    scan_window: timedelta = timedelta(minutes=5)

    @classmethod
    def from_settings(cls) -> "PresencePolicy":
        return cls(
            max_distance_m=settings.PRESENCE_MAX_DISTANCE_M,
            required_signals=settings.PRESENCE_REQUIRED_SIGNALS,
            scan_window=timedelta(seconds=settings.PRESENCE_SCAN_WINDOW_SECONDS),
        )


@dataclass
class PresenceResult:
    verified: bool
    matched: list[str] = field(default_factory=list)
    distance_m: float | None = None


def haversine_m(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lng2 - lng1)

    a = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_M * c


def verify_presence(
    signals: PresenceSignals | None,
    venue: Venue | None,
    *,
    now: datetime,
    policy: PresencePolicy | None = None,
) -> PresenceResult:
    policy = policy or PresencePolicy.from_settings()

    if signals is None or venue is None:
        return PresenceResult(verified=False)

    matched: list[str] = []
    distance = None

    if signals.gps is not None and venue.latitude is not None and venue.longitude is not None:
        # millimetre precision keeps the radius check free of float noise
        distance = round(haversine_m(signals.gps.lat, signals.gps.lng, venue.latitude, venue.longitude), 3)
        if distance <= policy.max_distance_m:
            matched.append("gps")

    if signals.ssid and venue.wifi_ssid and signals.ssid == venue.wifi_ssid:
        matched.append("ssid")

    if signals.bssid and venue.wifi_bssid_hash:
        if constant_time_equals(hash_identifier(signals.bssid), venue.wifi_bssid_hash):
            matched.append("bssid")

    if signals.qr_scanned_at is not None:
        scanned = signals.qr_scanned_at
        if scanned.tzinfo is None:
            scanned = scanned.replace(tzinfo=timezone.utc)
        # a scan stamped in the future is not evidence of anything
        if timedelta(0) <= now - scanned < policy.scan_window:
            matched.append("recent_scan")

    verified = len(matched) >= policy.required_signals
    logger.debug("presence venue=%s matched=%s verified=%s", venue.id, matched, verified)
    return PresenceResult(verified=verified, matched=matched, distance_m=distance)
