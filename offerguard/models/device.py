# offerguard/models/device.py
from __future__ import annotations

from datetime import datetime

from sqlalchemy import BigInteger, String, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column

from offerguard.core.db import Base, BigIntId, UTCDateTime


class DeviceLink(Base):
    """Which user accounts have been seen behind a device fingerprint."""

    __tablename__ = "device_links"
    __table_args__ = (UniqueConstraint("fingerprint_hash", "user_id", name="uq_device_links_fp_user"),)

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True)
    fingerprint_hash: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    user_id: Mapped[int] = mapped_column(BigInteger, nullable=False)

    first_seen_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, server_default=func.now())
    last_seen_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, server_default=func.now())
