# offerguard/schemas/redemptions.py
from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field

from offerguard.models.offer import RedemptionMode


class GpsFix(BaseModel):
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)
    accuracy: float | None = Field(None, ge=0)


class PresenceSignals(BaseModel):
    gps: GpsFix | None = None
    ssid: str | None = None
    bssid: str | None = None
    device_motion: bool | None = None
    qr_scanned_at: datetime | None = None


class InitiateRedemptionRequest(BaseModel):
    offer_id: int
    redemption_mode: RedemptionMode = RedemptionMode.SELF_SERVE
    presence_signals: PresenceSignals | None = None
    device_fingerprint: str | None = Field(None, max_length=512)


class CompleteRedemptionRequest(BaseModel):
    otc_token: str | None = None
    staff_qr_token: str | None = None


class CloseRedemptionRequest(BaseModel):
    reason: str | None = Field(None, max_length=500)


class RedemptionEventOut(BaseModel):
    id: int
    action: str
    actor_user_id: int | None
    details: dict
    created_at: datetime

    class Config:
        from_attributes = True


class RedemptionOut(BaseModel):
    id: int
    offer_id: int
    user_id: int
    venue_id: int
    redemption_mode: str
    status: str

    # populated for the redeeming user only
    otc_token: str | None = None
    otc_expires_at: datetime
    risk_score: int
    fraud_flags: list[str]
    cooldown_until: datetime
    value: float

    verified_at: datetime | None
    approved_by: int | None
    approved_at: datetime | None
    redeemed_at: datetime | None
    closed_reason: str | None
    created_at: datetime

    events: list[RedemptionEventOut] = []

    class Config:
        from_attributes = True


class InitiateRedemptionResponse(BaseModel):
    redemption: RedemptionOut
    requires_approval: bool


class RedemptionPage(BaseModel):
    items: list[RedemptionOut]
    page: int
    limit: int
    total: int
