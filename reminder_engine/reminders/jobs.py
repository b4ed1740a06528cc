"""
Auxiliary periodic jobs: the morning digest, Premium tips and the quota-reset notice
"""
import logging
from datetime import datetime
from typing import Callable, Optional
from zoneinfo import ZoneInfo

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from reminder_engine.utils.timezone import (
    format_local_time,
    get_zoneinfo,
    local_day_bounds,
    month_period,
    to_utc_aware,
    utcnow,
)
from .entitlement import ACTIVE_SUBSCRIPTION_STATUSES, EntitlementResolver
from .errors import ReminderEngineError
from .gateway import ConnectionState, DeliveryGateway, deliver
from .models import Subscription, UsageCounter, User
from .repository import list_user_reminders_between, list_users_with_contact
from .schemas import PlanTier

logger = logging.getLogger(__name__)


def _first_name(user: User, fallback: str) -> str:
    parts = (user.name or "").split()
    return parts[0] if parts else fallback


def build_digest_message(user: User, reminders, tz: ZoneInfo) -> str:
    lines = [f"Good morning, {_first_name(user, 'there')}! You have {len(reminders)} reminders today:", ""]
    for r in reminders:
        lines.append(f"- [{format_local_time(r.trigger_at, tz)}] {r.title}")
    lines.append("")
    lines.append("Open the app for the details.")
    return "\n".join(lines)


def send_daily_digest(
    session_factory: Callable[[], Session],
    gateway: DeliveryGateway,
    entitlement: EntitlementResolver,
    now: Optional[datetime] = None,
    tz: Optional[ZoneInfo] = None,
) -> int:
    """Send each entitled user the list of today's reminders. Returns messages sent.

    Digests are informational and do not count against the monthly quota.
    """
    now = to_utc_aware(now) if now else utcnow()
    tz = tz or get_zoneinfo()
    if gateway.connection_state() is not ConnectionState.CONNECTED:
        logger.warning("⚠️  [Digest] Gateway not connected; skipping daily digest")
        return 0

    start, end = local_day_bounds(now, tz)
    sent = 0
    db = session_factory()
    try:
        for user in list_users_with_contact(db):
            if not entitlement.policies[entitlement.plan_for(db, user.id)].delivers:
                continue
            todays = list_user_reminders_between(db, user.id, start, end)
            if not todays:
                continue
            try:
                deliver(gateway, user.whatsapp_number, build_digest_message(user, todays, tz))
                sent += 1
            except ReminderEngineError as e:
                logger.warning(f"❌ [Digest] Digest not delivered to user {user.id}: {e}")
    finally:
        db.close()

    logger.info(f"📬 [Digest] Sent {sent} daily digests")
    return sent


def _mark_reset_notified(db: Session, user_id: str, stale_period: str) -> bool:
    """Claim the notice for one stale counter; False if it was claimed or rolled over meanwhile."""
    result = db.execute(
        update(UsageCounter)
        .where(UsageCounter.user_id == user_id)
        .where(UsageCounter.period == stale_period)
        .where(UsageCounter.reset_notified.is_(False))
        .values(reset_notified=True)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount == 1


def notify_quota_reset(
    session_factory: Callable[[], Session],
    gateway: DeliveryGateway,
    entitlement: EntitlementResolver,
    now: Optional[datetime] = None,
) -> int:
    """Tell capped users that a new month restored their reminders. Returns messages sent.

    Users who exhausted the cap in an earlier month are notified once. Users
    who have since left the capped plan are marked without a message.
    """
    now = to_utc_aware(now) if now else utcnow()
    cap = entitlement.policies[PlanTier.PLUS].monthly_cap
    if cap is None:
        return 0
    current = month_period(now, entitlement.tz)
    connected = gateway.connection_state() is ConnectionState.CONNECTED

    sent = 0
    db = session_factory()
    try:
        stale = list(
            db.execute(
                select(UsageCounter.user_id, UsageCounter.period)
                .where(UsageCounter.period != current)
                .where(UsageCounter.count >= cap)
                .where(UsageCounter.reset_notified.is_(False))
            ).all()
        )
        logger.info(f"🔄 [QuotaReset] {len(stale)} users with a restored quota")

        for user_id, stale_period in stale:
            user = db.get(User, user_id)
            still_capped = entitlement.plan_for(db, user_id) is PlanTier.PLUS
            address = (user.whatsapp_number or "").strip() if user else ""
            if still_capped and address and not connected:
                # Keep the notice pending until the gateway is back
                continue
            if not _mark_reset_notified(db, user_id, stale_period):
                continue
            if not still_capped or not address:
                continue

            message = (
                f"Hi, {_first_name(user, 'there')}! ✨ A new month has started and your "
                f"{cap} monthly reminders are available again."
            )
            try:
                deliver(gateway, address, message)
                sent += 1
            except ReminderEngineError as e:
                logger.warning(f"❌ [QuotaReset] Notice not delivered to user {user_id}: {e}")
    finally:
        db.close()

    logger.info(f"🔄 [QuotaReset] Sent {sent} quota-reset notices")
    return sent


# Local hour -> tip; hours match PREMIUM_TIPS_CRON
PREMIUM_TIPS = {
    8: "Good morning, {name} ☀️ Shall we start the day by setting up your important reminders?",
    12: "Hey {name}, lunch time! 🍽️ Want a reminder so you don't skip that break?",
    16: "Good afternoon, {name}, coffee time! ☕ Why not create a reminder while you take a pause?",
    18: "The day is wrapping up, {name}! How about scheduling tomorrow's important reminders?",
    21: "Time to relax, {name}! 😴 Anything to note down so you don't forget it tomorrow?",
}


def premium_tip_for(hour: int, name: str) -> Optional[str]:
    template = PREMIUM_TIPS.get(hour)
    return template.format(name=name) if template else None


def send_premium_tips(
    session_factory: Callable[[], Session],
    gateway: DeliveryGateway,
    entitlement: EntitlementResolver,
    now: Optional[datetime] = None,
    tz: Optional[ZoneInfo] = None,
) -> int:
    """Send the tip for the current local hour to every Premium subscriber. Returns messages sent.

    Tips do not count against any quota.
    """
    now = to_utc_aware(now) if now else utcnow()
    tz = tz or entitlement.tz
    premium_prices = [price for price, plan in entitlement.price_plans.items() if plan is PlanTier.PREMIUM]
    if not premium_prices:
        logger.error("❌ [Tips] No price id configured for the Premium plan; skipping tips")
        return 0

    hour = now.astimezone(tz).hour
    if hour not in PREMIUM_TIPS:
        logger.debug(f"💡 [Tips] No tip for {hour}h")
        return 0
    if gateway.connection_state() is not ConnectionState.CONNECTED:
        logger.warning("⚠️  [Tips] Gateway not connected; skipping premium tips")
        return 0

    sent = 0
    db = session_factory()
    try:
        users = list(
            db.execute(
                select(User)
                .join(Subscription, Subscription.user_id == User.id)
                .where(Subscription.price_id.in_(premium_prices))
                .where(Subscription.status.in_(ACTIVE_SUBSCRIPTION_STATUSES))
                .order_by(User.id)
            ).scalars()
        )
    finally:
        db.close()
    logger.info(f"💡 [Tips] {len(users)} premium users for the {hour}h tip")

    for user in users:
        address = (user.whatsapp_number or "").strip()
        if not address:
            continue
        try:
            deliver(gateway, address, premium_tip_for(hour, _first_name(user, "there")))
            sent += 1
        except ReminderEngineError as e:
            logger.warning(f"❌ [Tips] Tip not delivered to user {user.id}: {e}")

    logger.info(f"💡 [Tips] Sent {sent} premium tips")
    return sent
