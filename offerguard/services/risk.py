# offerguard/services/risk.py
"""
Heuristic fraud score for a redemption attempt.

The score is the capped sum of the points of every rule that fires. Rules are
plain data (metric, comparison, threshold, points) so they can be tuned
without touching the redemption flow. A high score never blocks on its own;
it attaches HIGH_RISK for staff review.
"""
from __future__ import annotations

import logging
import operator
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from offerguard.models.device import DeviceLink
from offerguard.models.redemption import Redemption, RedemptionStatus
from offerguard.schemas.redemptions import PresenceSignals

logger = logging.getLogger(__name__)

MAX_SCORE = 100
HIGH_RISK_FLAG = "HIGH_RISK"

_OPS = {
    ">": operator.gt,
    ">=": operator.ge,
    "<": operator.lt,
    "==": operator.eq,
}


@dataclass(frozen=True)
class RiskRule:
    name: str
    metric: str
    op: str
    threshold: Any
    points: int

    def fires(self, inputs: "RiskInputs") -> bool:
        value = getattr(inputs, self.metric)
        if value is None:
            return False
        return _OPS[self.op](value, self.threshold)


DEFAULT_RISK_RULES: tuple[RiskRule, ...] = (
    RiskRule("SHARED_DEVICE", "device_user_count", ">", 3, 30),
    RiskRule("REDEMPTION_VELOCITY", "recent_redemptions", ">", 5, 40),
    RiskRule("POOR_GPS_ACCURACY", "gps_accuracy_m", ">", 100, 20),
    RiskRule("STATIONARY_DEVICE", "device_motion", "==", False, 10),
    RiskRule("PRIOR_REJECTIONS", "recent_failures", ">", 2, 30),
)


@dataclass(frozen=True)
class RiskWindows:
    velocity: timedelta = timedelta(minutes=60)
    failures: timedelta = timedelta(days=7)


@dataclass
class RiskInputs:
    device_user_count: int | None = None
    recent_redemptions: int | None = None
    gps_accuracy_m: float | None = None
    device_motion: bool | None = None
    recent_failures: int | None = None


@dataclass
class RiskAssessment:
    score: int
    factors: list[str] = field(default_factory=list)

    def is_high(self, threshold: int) -> bool:
        return self.score > threshold


def score_risk(inputs: RiskInputs, rules: tuple[RiskRule, ...] = DEFAULT_RISK_RULES) -> RiskAssessment:
    factors = [r.name for r in rules if r.fires(inputs)]
    total = sum(r.points for r in rules if r.name in factors)
    return RiskAssessment(score=min(total, MAX_SCORE), factors=factors)


async def gather_risk_inputs(
    db: AsyncSession,
    *,
    user_id: int,
    fingerprint_hash: str | None,
    signals: PresenceSignals | None,
    now: datetime,
    windows: RiskWindows | None = None,
) -> RiskInputs:
    windows = windows or RiskWindows()
    inputs = RiskInputs()

    if fingerprint_hash:
        res = await db.execute(
            select(func.count(func.distinct(DeviceLink.user_id))).where(
                DeviceLink.fingerprint_hash == fingerprint_hash
            )
        )
        inputs.device_user_count = int(res.scalar_one())

    res = await db.execute(
        select(func.count(Redemption.id)).where(
            Redemption.user_id == user_id,
            Redemption.created_at >= now - windows.velocity,
        )
    )
    inputs.recent_redemptions = int(res.scalar_one())

    res = await db.execute(
        select(func.count(Redemption.id)).where(
            Redemption.user_id == user_id,
            Redemption.status.in_([RedemptionStatus.REJECTED.value, RedemptionStatus.FRAUD_FLAGGED.value]),
            Redemption.created_at >= now - windows.failures,
        )
    )
    inputs.recent_failures = int(res.scalar_one())

    if signals is not None:
        if signals.gps is not None:
            inputs.gps_accuracy_m = signals.gps.accuracy
        inputs.device_motion = signals.device_motion

    return inputs
