# offerguard/schemas/qr_bindings.py
from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field


class BindMainQRRequest(BaseModel):
    venue_id: int
    code: str = Field(..., min_length=1, max_length=128)
    nfc_uid: str | None = Field(None, max_length=64)
    placement: Literal["counter", "entrance", "table", "zone"] = "counter"
    placement_note: str | None = Field(None, max_length=500)


class LinkTableQRRequest(BaseModel):
    venue_id: int
    code: str = Field(..., min_length=1, max_length=128)
    zone: str = Field(..., min_length=1, max_length=64)
    instance_no: int = Field(..., ge=1)
    nfc_uid: str | None = Field(None, max_length=64)
    placement_note: str | None = Field(None, max_length=500)


class RevokeBindingRequest(BaseModel):
    reason: str | None = Field(None, max_length=500)


class QRBindingOut(BaseModel):
    id: int
    code: str
    venue_id: int
    type: str
    zone: str | None
    instance_no: int | None
    placement: str | None
    placement_note: str | None
    state: str
    bound_by: int
    bound_at: datetime
    revoked_at: datetime | None
    revoke_reason: str | None

    class Config:
        from_attributes = True


class ResolvedQROut(BaseModel):
    # what a scanning client needs; never the NFC hash
    venue_id: int
    type: str
    zone: str | None
    instance_no: int | None

    class Config:
        from_attributes = True
