"""
Standalone engine process: gateway watcher + in-process scheduler driver.

Run with `python -m reminder_engine.reminders.service` or the
`reminder-engine` console script. Deployments using Celery beat run the
tasks module instead.
"""
import logging
import signal
import threading
from functools import partial
from typing import Optional

from reminder_engine.core.log_setup import configure_logging
from reminder_engine.db.base import Base
from reminder_engine.db.session import SessionLocal, engine
from .dispatcher import ReminderDispatcher
from .gateway import HttpDeliveryGateway
from .jobs import notify_quota_reset, send_daily_digest, send_premium_tips
from .metrics import start_metrics_server
from .scheduler import ConnectionStateChannel, GatewayWatcher, SchedulerDriver, build_default_driver

logger = logging.getLogger(__name__)


class ReminderService:
    def __init__(self, session_factory=SessionLocal, gateway=None):
        self.gateway = gateway or HttpDeliveryGateway()
        self.dispatcher = ReminderDispatcher(session_factory, self.gateway)
        self.channel = ConnectionStateChannel()
        self.watcher = GatewayWatcher(self.gateway, self.channel)
        self.driver: SchedulerDriver = build_default_driver(
            self.dispatcher,
            partial(send_daily_digest, session_factory, self.gateway, self.dispatcher.entitlement, tz=self.dispatcher.tz),
            partial(notify_quota_reset, session_factory, self.gateway, self.dispatcher.entitlement),
            partial(send_premium_tips, session_factory, self.gateway, self.dispatcher.entitlement, tz=self.dispatcher.tz),
        )
        self._follower: Optional[threading.Thread] = None

    def start(self) -> None:
        self._follower = self.driver.follow(self.channel)
        self.watcher.start()
        logger.info("🚀 [Service] Reminder engine started; waiting for gateway connection")

    def stop(self) -> None:
        self.watcher.stop()
        self.channel.close()
        # Drain queued transitions first so none can restart the driver afterwards
        if self._follower is not None:
            self._follower.join()
            self._follower = None
        self.driver.stop()
        logger.info("👋 [Service] Reminder engine stopped")


def main() -> None:
    configure_logging()
    start_metrics_server()
    Base.metadata.create_all(bind=engine)

    service = ReminderService()
    shutdown = threading.Event()
    signal.signal(signal.SIGTERM, lambda *_: shutdown.set())
    signal.signal(signal.SIGINT, lambda *_: shutdown.set())

    service.start()
    shutdown.wait()
    service.stop()


if __name__ == "__main__":
    main()
