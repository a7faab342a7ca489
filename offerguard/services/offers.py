# offerguard/services/offers.py
from __future__ import annotations

from datetime import datetime

from offerguard.models.offer import Offer


def offer_has_capacity(offer: Offer) -> bool:
    if offer.max_total_redemptions is None:
        return True
    return (offer.current_redemptions or 0) < offer.max_total_redemptions


def _in_time_slots(slots: list[dict], now: datetime) -> bool:
    # "HH:MM" strings compare correctly as text
    current = now.strftime("%H:%M")
    for slot in slots:
        start = slot.get("start") or "00:00"
        end = slot.get("end") or "23:59"
        if start <= current <= end:
            return True
    return False


def offer_is_valid_now(offer: Offer, now: datetime) -> bool:
    """Window, active flag, overall capacity, then the weekly schedule (evaluated in UTC)."""
    if now < offer.valid_from or now > offer.valid_until:
        return False
    if not offer.is_active:
        return False
    if not offer_has_capacity(offer):
        return False

    if offer.days_of_week and now.isoweekday() % 7 not in offer.days_of_week:
        return False
    if offer.time_slots and not _in_time_slots(offer.time_slots, now):
        return False

    return True


def offer_allows_mode(offer: Offer, mode: str) -> bool:
    # an empty list means any mode
    return not offer.redemption_modes or mode in offer.redemption_modes
