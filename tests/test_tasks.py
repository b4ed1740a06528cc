from unittest.mock import patch

import pytest
from celery.schedules import crontab

from reminder_engine.reminders import tasks
from reminder_engine.reminders.celery_app import celery_app, crontab_from_expression
from reminder_engine.reminders.gateway import ConnectionState

from .fakes import FakeGateway


def test_beat_schedule_mirrors_driver_jobs():
    schedule = celery_app.conf.beat_schedule
    assert {entry["task"] for entry in schedule.values()} == {
        "reminders.scan_and_dispatch",
        "reminders.daily_digest",
        "reminders.quota_reset_notice",
        "reminders.premium_tips",
    }
    assert isinstance(schedule["daily-digest"]["schedule"], crontab)


def test_crontab_from_expression():
    entry = crontab_from_expression("30 7 * * 1-5")
    assert entry.minute == {30}
    assert entry.hour == {7}
    assert entry.day_of_week == {1, 2, 3, 4, 5}
    with pytest.raises(ValueError):
        crontab_from_expression("0 8 * *")


def test_scan_task_skips_tick_while_disconnected():
    gateway = FakeGateway(state=ConnectionState.NOT_CONNECTED)
    with patch.object(tasks, "_gateway", return_value=gateway), \
            patch.object(tasks, "ReminderDispatcher") as dispatcher:
        assert tasks.scan_and_dispatch_task() == {}
    dispatcher.assert_not_called()


def test_scan_task_runs_dispatcher_when_connected():
    gateway = FakeGateway()
    with patch.object(tasks, "_gateway", return_value=gateway), \
            patch.object(tasks, "ReminderDispatcher") as dispatcher:
        dispatcher.return_value.run_due_reminders.return_value = {"sent": 2}
        assert tasks.scan_and_dispatch_task() == {"sent": 2}
    dispatcher.assert_called_once_with(tasks.SessionLocal, gateway)
