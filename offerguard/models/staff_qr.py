# offerguard/models/staff_qr.py
from __future__ import annotations

import enum
from datetime import datetime
from typing import Optional

from sqlalchemy import BigInteger, ForeignKey, Index, Integer, String, func, text
from sqlalchemy.orm import Mapped, mapped_column

from offerguard.core.db import Base, BigIntId, UTCDateTime


class QRState(str, enum.Enum):
    ACTIVE = "ACTIVE"
    USED = "USED"
    EXPIRED = "EXPIRED"
    REVOKED = "REVOKED"


class QRTokenType(str, enum.Enum):
    STAFF_QR = "STAFF_QR"
    ONBOARD_QR = "ONBOARD_QR"


_ACTIVE_STAFF_QR = text("type = 'STAFF_QR' AND state = 'ACTIVE'")


class QRToken(Base):
    """Bearer credential shown by staff. Only the SHA-256 of the raw token is stored.

    Single-table inheritance: ``type`` picks the variant (StaffQR / OnboardQR).
    """

    __tablename__ = "staff_qr_tokens"
    __table_args__ = (
        Index("ix_staff_qr_tokens_hash_state", "token_hash", "state"),
        # at most one live rotating QR per issuer and venue
        Index(
            "uq_staff_qr_tokens_active_issuer",
            "venue_id",
            "issuer_user_id",
            unique=True,
            postgresql_where=_ACTIVE_STAFF_QR,
            sqlite_where=_ACTIVE_STAFF_QR,
        ),
    )

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True)
    type: Mapped[str] = mapped_column(String(16), nullable=False)

    venue_id: Mapped[int] = mapped_column(BigIntId, ForeignKey("venues.id"), nullable=False, index=True)
    role_scope: Mapped[str] = mapped_column(String(16), nullable=False)

    token_hash: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    ttl_seconds: Mapped[int] = mapped_column(Integer, nullable=False)
    issued_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, server_default=func.now())
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, index=True)

    issuer_session_id: Mapped[Optional[int]] = mapped_column(BigIntId, ForeignKey("staff_sessions.id"), nullable=True)
    issuer_user_id: Mapped[int] = mapped_column(BigInteger, nullable=False)

    state: Mapped[str] = mapped_column(String(16), nullable=False, default=QRState.ACTIVE.value)

    __mapper_args__ = {"polymorphic_on": "type"}


class StaffQR(QRToken):
    """Rotating proof-of-presence token; scanned many times until it expires or rotates."""

    __mapper_args__ = {"polymorphic_identity": QRTokenType.STAFF_QR.value}


class OnboardQR(QRToken):
    """Single-use roster enrollment token."""

    used_by: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    used_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)

    __mapper_args__ = {"polymorphic_identity": QRTokenType.ONBOARD_QR.value}
