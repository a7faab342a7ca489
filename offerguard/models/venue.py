# offerguard/models/venue.py
from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import Boolean, Float, String, func
from sqlalchemy.orm import Mapped, mapped_column

from offerguard.core.db import Base, BigIntId, UTCDateTime


class Venue(Base):
    """Read-only here; owned by the catalog service."""

    __tablename__ = "venues"

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)

    latitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    longitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    wifi_ssid: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    # keyed hash, see core.security.hash_identifier
    wifi_bssid_hash: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, server_default=func.now())
