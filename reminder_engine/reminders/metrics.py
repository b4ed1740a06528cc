import logging

from prometheus_client import Counter, Gauge, start_http_server

from reminder_engine.core.config import settings

logger = logging.getLogger(__name__)


scheduler_scans_total = Counter(
    "reminder_scheduler_scans_total",
    "Total due-reminder scan cycles",
)

reminders_dispatched_total = Counter(
    "reminders_dispatched_total",
    "Reminder dispatches by outcome",
    ["outcome"],
)

usage_recorded_total = Counter(
    "reminders_usage_recorded_total",
    "Confirmed deliveries counted against a plan quota",
)

malformed_schedule_total = Counter(
    "reminders_malformed_schedule_total",
    "Recurring reminders left claimed because their rule is unknown",
)

scheduler_job_runs_total = Counter(
    "reminder_scheduler_job_runs_total",
    "Scheduler job executions",
    ["job"],
)

scheduler_job_failures_total = Counter(
    "reminder_scheduler_job_failures_total",
    "Scheduler job executions that raised",
    ["job"],
)

gateway_connected = Gauge(
    "reminder_gateway_connected",
    "1 while the messaging gateway reports a connected session",
)


def start_metrics_server(port: int | None = None) -> bool:
    """Expose /metrics when enabled in settings. Returns True if the server was started."""
    if not settings.METRICS_ENABLED:
        return False
    port = port or settings.METRICS_PORT
    start_http_server(port)
    logger.info(f"📈 [Metrics] Prometheus exporter listening on :{port}")
    return True
