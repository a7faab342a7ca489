# offerguard/schemas/staff.py
from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field


class OpenSessionRequest(BaseModel):
    venue_id: int
    device_id: str = Field(..., min_length=1, max_length=128)


class LockSessionRequest(BaseModel):
    reason: str = Field("manual", max_length=200)


class StaffSessionOut(BaseModel):
    id: int
    staff_user_id: int
    venue_id: int
    role: str
    device_id: str
    created_at: datetime
    last_seen_at: datetime
    expires_at: datetime
    is_active: bool
    locked_at: datetime | None
    lock_reason: str | None

    class Config:
        from_attributes = True


class GenerateStaffQRRequest(BaseModel):
    venue_id: int
    ttl_seconds: int | None = None


class GenerateOnboardQRRequest(BaseModel):
    venue_id: int
    role_scope: Literal["MEMBER", "STAFF", "MANAGER"] = "MEMBER"
    ttl_seconds: int | None = None


class IssuedQROut(BaseModel):
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

    class Config:
        from_attributes = True


class VerifyQRRequest(BaseModel):
    token: str = Field(..., min_length=1, max_length=256)


class StaffScopeOut(BaseModel):
    venue_id: int
    role_scope: str
    issuer_user_id: int
    issued_at: datetime
    expires_at: datetime

    class Config:
        from_attributes = True


class RosterEntryOut(BaseModel):
    id: int
    venue_id: int
    staff_user_id: int
    role: str
    status: str
    permissions: list[str]
    invited_by: int | None
    activated_at: datetime | None

    class Config:
        from_attributes = True
