"""
Plan-derived delivery entitlement and monthly usage accounting.

Plan table:

    plan      delivers  monthly cap
    free      no        -
    plus      yes       PLUS_MONTHLY_CAP (30)
    premium   yes       unlimited

Usage counters reset lazily: a counter whose stored period is not the
current month counts as zero, and the next recorded delivery rewrites it to
1 for the new month in the same statement that would otherwise increment it.
"""
import logging
from datetime import datetime
from typing import Callable, Dict, Optional
from zoneinfo import ZoneInfo

from sqlalchemy import case, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from reminder_engine.core.config import settings
from reminder_engine.utils.timezone import get_zoneinfo, month_period, utcnow
from .metrics import usage_recorded_total
from .models import Subscription, UsageCounter
from .schemas import Entitlement, PlanPolicy, PlanTier

logger = logging.getLogger(__name__)

ACTIVE_SUBSCRIPTION_STATUSES = ("active", "trialing")


def default_plan_policies(plus_cap: Optional[int] = None) -> Dict[PlanTier, PlanPolicy]:
    return {
        PlanTier.FREE: PlanPolicy(delivers=False),
        PlanTier.PLUS: PlanPolicy(delivers=True, monthly_cap=plus_cap or settings.PLUS_MONTHLY_CAP),
        PlanTier.PREMIUM: PlanPolicy(delivers=True, monthly_cap=None),
    }


def default_price_plans() -> Dict[str, PlanTier]:
    mapping: Dict[str, PlanTier] = {}
    if settings.PLUS_PRICE_ID:
        mapping[settings.PLUS_PRICE_ID] = PlanTier.PLUS
    if settings.PREMIUM_PRICE_ID:
        mapping[settings.PREMIUM_PRICE_ID] = PlanTier.PREMIUM
    return mapping


class EntitlementResolver:
    """Answers whether a user may receive a delivery now and records confirmed sends"""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        price_plans: Optional[Dict[str, PlanTier]] = None,
        policies: Optional[Dict[PlanTier, PlanPolicy]] = None,
        tz: Optional[ZoneInfo] = None,
    ):
        self.session_factory = session_factory
        self.price_plans = price_plans if price_plans is not None else default_price_plans()
        self.policies = policies or default_plan_policies()
        self.tz = tz or get_zoneinfo()

    def plan_for(self, db: Session, user_id: str) -> PlanTier:
        sub = db.get(Subscription, user_id)
        if sub is None or sub.status not in ACTIVE_SUBSCRIPTION_STATUSES:
            return PlanTier.FREE
        return self.price_plans.get(sub.price_id or "", PlanTier.FREE)

    def resolve(self, user_id: str, now: Optional[datetime] = None) -> Entitlement:
        now = now or utcnow()
        db = self.session_factory()
        try:
            plan = self.plan_for(db, user_id)
            policy = self.policies[plan]
            if not policy.delivers:
                return Entitlement(plan=plan, allowed=False)
            used = self._used_this_period(db, user_id, month_period(now, self.tz))
        finally:
            db.close()

        if policy.monthly_cap is None:
            return Entitlement(plan=plan, allowed=True, used=used)
        return Entitlement(
            plan=plan,
            allowed=used < policy.monthly_cap,
            used=used,
            cap=policy.monthly_cap,
        )

    def can_deliver(self, user_id: str, now: Optional[datetime] = None) -> bool:
        return self.resolve(user_id, now).allowed

    def record_delivery(self, user_id: str, now: Optional[datetime] = None) -> None:
        """Count one confirmed delivery against the user's current month."""
        period = month_period(now or utcnow(), self.tz)
        db = self.session_factory()
        try:
            if not self._increment_or_reset(db, user_id, period):
                try:
                    db.add(UsageCounter(user_id=user_id, count=1, period=period, reset_notified=False))
                    db.commit()
                except IntegrityError:
                    # A concurrent dispatch created the counter first
                    db.rollback()
                    self._increment_or_reset(db, user_id, period)
            usage_recorded_total.inc()
            logger.debug(f"🧮 [Entitlement] Usage recorded user={user_id} period={period}")
        finally:
            db.close()

    @staticmethod
    def _used_this_period(db: Session, user_id: str, period: str) -> int:
        row = db.execute(
            select(UsageCounter.count, UsageCounter.period).where(UsageCounter.user_id == user_id)
        ).first()
        if row is None:
            return 0
        count, stored_period = row
        return count if stored_period == period else 0

    @staticmethod
    def _increment_or_reset(db: Session, user_id: str, period: str) -> bool:
        same_period = UsageCounter.period == period
        result = db.execute(
            update(UsageCounter)
            .where(UsageCounter.user_id == user_id)
            .values(
                count=case((same_period, UsageCounter.count + 1), else_=1),
                reset_notified=case((same_period, UsageCounter.reset_notified), else_=False),
                period=period,
            )
            .execution_options(synchronize_session=False)
        )
        db.commit()
        return result.rowcount == 1
