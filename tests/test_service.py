import time

from reminder_engine.reminders.gateway import ConnectionState
from reminder_engine.reminders.service import ReminderService

from .fakes import FakeGateway
from .test_scheduler import wait_for


def test_service_runs_jobs_only_while_gateway_is_connected(session_factory):
    gateway = FakeGateway()
    service = ReminderService(session_factory, gateway=gateway)
    assert set(service.driver._jobs) == {"dispatch", "daily_digest", "quota_reset", "premium_tips"}

    service.start()
    try:
        assert wait_for(lambda: service.driver.running)
        assert service.channel.state is ConnectionState.CONNECTED
    finally:
        service.stop()
    assert not service.driver.running


def test_queued_reconnect_cannot_restart_jobs_after_stop(session_factory):
    service = ReminderService(session_factory, gateway=FakeGateway())
    service.start()
    assert wait_for(lambda: service.driver.running)

    # Transitions still queued for the follower when shutdown begins
    service.channel.transition(ConnectionState.RECONNECTING)
    service.channel.transition(ConnectionState.CONNECTED)
    follower = service._follower
    service.stop()

    assert not follower.is_alive()
    assert not service.driver.running
    time.sleep(0.05)
    assert not service.driver.running
