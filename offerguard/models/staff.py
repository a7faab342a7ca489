# offerguard/models/staff.py
from __future__ import annotations

import enum
from datetime import datetime
from typing import Optional

from sqlalchemy import BigInteger, Boolean, ForeignKey, Index, String, Text, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column

from offerguard.core.db import Base, BigIntId, JSONType, UTCDateTime


class RosterRole(str, enum.Enum):
    MEMBER = "MEMBER"
    STAFF = "STAFF"
    MANAGER = "MANAGER"
    OWNER = "OWNER"


class RosterStatus(str, enum.Enum):
    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    SUSPENDED = "SUSPENDED"
    REMOVED = "REMOVED"


class Permission(str, enum.Enum):
    VIEW_DASHBOARD = "VIEW_DASHBOARD"
    MANAGE_STAFF = "MANAGE_STAFF"
    VIEW_REDEMPTIONS = "VIEW_REDEMPTIONS"
    APPROVE_REDEMPTIONS = "APPROVE_REDEMPTIONS"
    MANAGE_OFFERS = "MANAGE_OFFERS"
    MANAGE_EVENTS = "MANAGE_EVENTS"


class RosterEntry(Base):
    __tablename__ = "venue_roster"
    __table_args__ = (
        UniqueConstraint("venue_id", "staff_user_id", name="uq_venue_roster_venue_staff"),
        Index("ix_venue_roster_venue_status", "venue_id", "status"),
    )

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True)
    venue_id: Mapped[int] = mapped_column(BigIntId, ForeignKey("venues.id"), nullable=False)
    staff_user_id: Mapped[int] = mapped_column(BigInteger, nullable=False, index=True)

    role: Mapped[str] = mapped_column(String(16), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=RosterStatus.PENDING.value)
    permissions: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)

    invited_by: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    invited_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, server_default=func.now())
    activated_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    suspended_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    removed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)


class StaffSession(Base):
    __tablename__ = "staff_sessions"
    __table_args__ = (Index("ix_staff_sessions_user_venue_active", "staff_user_id", "venue_id", "is_active"),)

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True)
    staff_user_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    venue_id: Mapped[int] = mapped_column(BigIntId, ForeignKey("venues.id"), nullable=False)
    role: Mapped[str] = mapped_column(String(16), nullable=False)  # roster role, or ADMIN
    device_id: Mapped[str] = mapped_column(String(128), nullable=False)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, server_default=func.now())
    last_seen_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, server_default=func.now())
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, index=True)

    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    locked_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    lock_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
