# offerguard/models/audit.py
from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import BigInteger, Index, String, func
from sqlalchemy.orm import Mapped, mapped_column

from offerguard.core.db import Base, BigIntId, JSONType, UTCDateTime


class AuditLog(Base):
    __tablename__ = "audit_logs"
    __table_args__ = (
        Index("ix_audit_logs_actor_created", "actor_user_id", "created_at"),
        Index("ix_audit_logs_venue_action_created", "venue_id", "action", "created_at"),
    )

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True)
    actor_user_id: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    actor_role: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    venue_id: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)

    action: Mapped[str] = mapped_column(String(64), nullable=False, index=True)  # e.g. redemption.redeemed
    meta: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, server_default=func.now())
