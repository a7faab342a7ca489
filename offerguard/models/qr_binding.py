# offerguard/models/qr_binding.py
from __future__ import annotations

import enum
from datetime import datetime
from typing import Optional

from sqlalchemy import BigInteger, ForeignKey, Index, Integer, String, Text, func, text
from sqlalchemy.orm import Mapped, mapped_column

from offerguard.core.db import Base, BigIntId, UTCDateTime


class QRBindingType(str, enum.Enum):
    MAIN = "main"
    TABLE = "table"


class QRBindingState(str, enum.Enum):
    ACTIVE = "active"
    REVOKED = "revoked"


_ACTIVE_MAIN = text("type = 'main' AND state = 'active'")
_ACTIVE = text("state = 'active'")


class QRBinding(Base):
    """A printed QR (optionally paired with an NFC tag) bound to a venue or a table."""

    __tablename__ = "qr_bindings"
    __table_args__ = (
        Index("ix_qr_bindings_venue_type_state", "venue_id", "type", "state"),
        Index("ix_qr_bindings_zone_instance", "zone", "instance_no"),
        Index(
            "uq_qr_bindings_active_main",
            "venue_id",
            unique=True,
            postgresql_where=_ACTIVE_MAIN,
            sqlite_where=_ACTIVE_MAIN,
        ),
        Index(
            "uq_qr_bindings_active_code",
            "code",
            unique=True,
            postgresql_where=_ACTIVE,
            sqlite_where=_ACTIVE,
        ),
    )

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True)
    code: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    venue_id: Mapped[int] = mapped_column(BigIntId, ForeignKey("venues.id"), nullable=False)

    type: Mapped[str] = mapped_column(String(8), nullable=False)
    zone: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    instance_no: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    nfc_uid_hash: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    placement: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)  # counter|entrance|table|zone
    placement_note: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    state: Mapped[str] = mapped_column(String(8), nullable=False, default=QRBindingState.ACTIVE.value)
    bound_by: Mapped[int] = mapped_column(BigInteger, nullable=False)
    bound_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, server_default=func.now())
    revoked_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    revoke_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
