# offerguard/models/redemption.py
from __future__ import annotations

import enum
from datetime import datetime
from typing import Optional

from sqlalchemy import BigInteger, Float, ForeignKey, Index, Integer, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from offerguard.core.db import Base, BigIntId, JSONType, UTCDateTime


class RedemptionStatus(str, enum.Enum):
    PENDING = "PENDING"
    VERIFIED = "VERIFIED"
    APPROVED = "APPROVED"
    REDEEMED = "REDEEMED"
    REJECTED = "REJECTED"
    EXPIRED = "EXPIRED"
    FRAUD_FLAGGED = "FRAUD_FLAGGED"


TERMINAL_STATUSES = (
    RedemptionStatus.REDEEMED,
    RedemptionStatus.REJECTED,
    RedemptionStatus.EXPIRED,
    RedemptionStatus.FRAUD_FLAGGED,
)
OPEN_STATUSES = (
    RedemptionStatus.PENDING,
    RedemptionStatus.VERIFIED,
    RedemptionStatus.APPROVED,
)


class Redemption(Base):
    __tablename__ = "redemptions"
    __table_args__ = (
        Index("ix_redemptions_user_offer_status", "user_id", "offer_id", "status"),
        Index("ix_redemptions_venue_status_created", "venue_id", "status", "created_at"),
        Index("ix_redemptions_user_created", "user_id", "created_at"),
    )

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True)
    offer_id: Mapped[int] = mapped_column(BigIntId, ForeignKey("offers.id"), nullable=False)
    user_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    venue_id: Mapped[int] = mapped_column(BigIntId, ForeignKey("venues.id"), nullable=False)

    redemption_mode: Mapped[str] = mapped_column(String(32), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default=RedemptionStatus.PENDING.value)

    otc_token: Mapped[str] = mapped_column(String(64), nullable=False)
    otc_expires_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)

    # gps/ssid/motion/qr_scanned_at as supplied, bssid replaced by its keyed hash
    presence_signals: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)
    presence_matched: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    device_fingerprint_hash: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    risk_score: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    fraud_flags: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)

    cooldown_until: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    value: Mapped[float] = mapped_column(Float, nullable=False)

    verified_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    approved_by: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    approved_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    redeemed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    closed_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, server_default=func.now())

    events = relationship(
        "RedemptionEvent",
        back_populates="redemption",
        order_by="RedemptionEvent.id",
        lazy="selectin",
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class RedemptionEvent(Base):
    """Append-only audit trail of a single redemption."""

    __tablename__ = "redemption_events"

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True)
    redemption_id: Mapped[int] = mapped_column(
        BigIntId, ForeignKey("redemptions.id", ondelete="CASCADE"), nullable=False, index=True
    )
    action: Mapped[str] = mapped_column(String(32), nullable=False)  # INITIATED, APPROVED, REDEEMED, ...
    actor_user_id: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    details: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, server_default=func.now())

    redemption = relationship("Redemption", back_populates="events")


class RedemptionSlot(Base):
    """Per (user, offer) gate. Every claim is a conditional UPDATE on this row."""

    __tablename__ = "redemption_slots"

    user_id: Mapped[int] = mapped_column(BigInteger, primary_key=True)
    offer_id: Mapped[int] = mapped_column(BigIntId, ForeignKey("offers.id"), primary_key=True)

    redeemed_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    # cooldown of the most recent REDEEMED redemption
    cooldown_until: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)

    inflight_redemption_id: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    inflight_expires_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)

    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, server_default=func.now())
