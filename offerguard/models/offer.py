# offerguard/models/offer.py
from __future__ import annotations

import enum
from datetime import datetime
from typing import Optional

from sqlalchemy import Boolean, CheckConstraint, Float, ForeignKey, Index, Integer, String, func
from sqlalchemy.orm import Mapped, mapped_column

from offerguard.core.db import Base, BigIntId, JSONType, UTCDateTime


class RedemptionMode(str, enum.Enum):
    SELF_SERVE = "SELF_SERVE"
    STAFF_QR = "STAFF_QR"
    NFC = "NFC"
    UPI_FORWARD = "UPI_FORWARD"
    MANUAL_TICK = "MANUAL_TICK"


class Offer(Base):
    """Read-only here except for the current_redemptions counter."""

    __tablename__ = "offers"
    __table_args__ = (
        CheckConstraint("cooldown_hours >= 0 AND cooldown_hours <= 168", name="offers_cooldown_chk"),
        CheckConstraint("qr_rotation_minutes >= 1 AND qr_rotation_minutes <= 60", name="offers_qr_rotation_chk"),
        CheckConstraint("max_redemptions_per_user >= 1", name="offers_max_per_user_chk"),
        Index("ix_offers_venue_window", "venue_id", "is_active", "valid_from", "valid_until"),
    )

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True)
    venue_id: Mapped[int] = mapped_column(BigIntId, ForeignKey("venues.id"), nullable=False, index=True)

    title: Mapped[str] = mapped_column(String(100), nullable=False)
    value: Mapped[float] = mapped_column(Float, nullable=False)
    min_otl: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    redemption_modes: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    requires_staff_approval: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    cooldown_hours: Mapped[int] = mapped_column(Integer, nullable=False, default=24)
    qr_rotation_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=2)

    valid_from: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    valid_until: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    days_of_week: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)  # 0=Sun..6=Sat
    time_slots: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)  # [{"start": "HH:MM", "end": "HH:MM"}]

    max_redemptions_per_user: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    max_total_redemptions: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    current_redemptions: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, server_default=func.now())
