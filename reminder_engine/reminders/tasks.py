import logging
from typing import Dict

from celery import shared_task

from reminder_engine.db.session import SessionLocal
from .dispatcher import ReminderDispatcher
from .entitlement import EntitlementResolver
from .gateway import ConnectionState, HttpDeliveryGateway
from .jobs import notify_quota_reset, send_daily_digest, send_premium_tips
from .metrics import gateway_connected

logger = logging.getLogger(__name__)


def _gateway() -> HttpDeliveryGateway:
    return HttpDeliveryGateway()


@shared_task(name="reminders.scan_and_dispatch")
def scan_and_dispatch_task() -> Dict[str, int]:
    """Scan for due reminders and deliver them. Returns the outcome summary."""
    gateway = _gateway()
    state = gateway.connection_state()
    gateway_connected.set(1 if state is ConnectionState.CONNECTED else 0)
    if state is not ConnectionState.CONNECTED:
        logger.info(f"⏸️  [Reminders] Gateway {state.value}; skipping dispatch tick")
        return {}
    return ReminderDispatcher(SessionLocal, gateway).run_due_reminders()


@shared_task(name="reminders.daily_digest")
def daily_digest_task() -> int:
    return send_daily_digest(SessionLocal, _gateway(), EntitlementResolver(SessionLocal))


@shared_task(name="reminders.quota_reset_notice")
def quota_reset_notice_task() -> int:
    return notify_quota_reset(SessionLocal, _gateway(), EntitlementResolver(SessionLocal))


@shared_task(name="reminders.premium_tips")
def premium_tips_task() -> int:
    return send_premium_tips(SessionLocal, _gateway(), EntitlementResolver(SessionLocal))
