from celery import Celery
from celery.schedules import crontab

from reminder_engine.core.config import settings


def crontab_from_expression(expression: str) -> crontab:
    """Build a beat crontab from a five-field cron expression"""
    fields = expression.split()
    if len(fields) != 5:
        raise ValueError(f"expected five cron fields, got {expression!r}")
    minute, hour, day_of_month, month_of_year, day_of_week = fields
    return crontab(
        minute=minute,
        hour=hour,
        day_of_month=day_of_month,
        month_of_year=month_of_year,
        day_of_week=day_of_week,
    )


celery_app = Celery(
    "reminders",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND or None,
)

celery_app.conf.update(
    task_acks_late=True,
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    worker_prefetch_multiplier=1,
    worker_concurrency=settings.WORKER_CONCURRENCY,
    timezone=settings.DEFAULT_TIMEZONE,
    enable_utc=True,
    include=["reminder_engine.reminders.tasks"],
)

# Beat mirrors the in-process SchedulerDriver schedule
celery_app.conf.beat_schedule = {
    "scan-and-dispatch": {
        "task": "reminders.scan_and_dispatch",
        "schedule": settings.SCAN_INTERVAL_SECONDS,
    },
    "daily-digest": {
        "task": "reminders.daily_digest",
        "schedule": crontab_from_expression(settings.DAILY_DIGEST_CRON),
    },
    "quota-reset-notice": {
        "task": "reminders.quota_reset_notice",
        "schedule": crontab_from_expression(settings.QUOTA_RESET_CRON),
    },
    "premium-tips": {
        "task": "reminders.premium_tips",
        "schedule": crontab_from_expression(settings.PREMIUM_TIPS_CRON),
    },
}
