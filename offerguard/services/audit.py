# offerguard/services/audit.py
from __future__ import annotations

import logging

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from offerguard.core.db import SessionLocal
from offerguard.models.audit import AuditLog

logger = logging.getLogger(__name__)


class AuditSink:
    """Append-only, fire-and-forget audit writer.

    Writes go through their own session, after the primary transaction has
    committed, so a failing audit store can never roll back a transition.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def record(
        self,
        *,
        action: str,
        actor_user_id: int | None = None,
        actor_role: str | None = None,
        venue_id: int | None = None,
        meta: dict | None = None,
    ) -> None:
        try:
            async with self._session_factory() as session:
                session.add(
                    AuditLog(
                        action=action,
                        actor_user_id=actor_user_id,
                        actor_role=actor_role,
                        venue_id=venue_id,
                        meta=meta or {},
                    )
                )
                await session.commit()
        except Exception:
            logger.exception("audit write failed action=%s venue=%s", action, venue_id)


audit_sink = AuditSink(SessionLocal)


def get_audit_sink() -> AuditSink:
    return audit_sink
