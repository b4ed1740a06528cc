from datetime import timedelta

from reminder_engine.reminders.models import Reminder
from reminder_engine.reminders.repository import (
    claim_reminder,
    due_reminders,
    list_user_reminders_between,
    reschedule_reminder,
    retire_reminder,
)
from reminder_engine.reminders.schemas import DispatchOutcome

from .fakes import utc

NOW = utc(2024, 5, 10, 9, 0)
LOOKBACK = timedelta(minutes=20)


def test_due_reminders_respects_lookback_window(session_factory, make_user, make_reminder):
    user = make_user()
    due_late = make_reminder(user, NOW - timedelta(minutes=5), title="late")
    due_early = make_reminder(user, NOW - timedelta(minutes=19), title="early")
    due_now = make_reminder(user, NOW, title="now")
    make_reminder(user, NOW - timedelta(minutes=30), title="missed")
    make_reminder(user, NOW + timedelta(minutes=5), title="future")
    make_reminder(user, NOW - timedelta(minutes=1), title="done", delivered=True)

    due = list(due_reminders(session_factory, NOW, LOOKBACK))
    assert [r.id for r in due] == [due_early.id, due_late.id, due_now.id]
    assert all(r.trigger_at.tzinfo is not None for r in due)


def test_due_reminders_limit(session_factory, make_user, make_reminder):
    user = make_user()
    for minutes in range(1, 6):
        make_reminder(user, NOW - timedelta(minutes=minutes))
    assert len(list(due_reminders(session_factory, NOW, LOOKBACK, limit=3))) == 3


def test_claim_is_won_once(db, make_user, make_reminder):
    reminder = make_reminder(make_user(), NOW)
    assert claim_reminder(db, reminder.id, NOW)
    assert not claim_reminder(db, reminder.id, NOW)


def test_claim_with_stale_trigger_is_refused(db, make_user, make_reminder):
    reminder = make_reminder(make_user(), NOW, recurrence="daily")
    assert claim_reminder(db, reminder.id, NOW)
    reschedule_reminder(db, reminder.id, NOW + timedelta(days=1), DispatchOutcome.SENT)

    assert not claim_reminder(db, reminder.id, NOW)
    assert claim_reminder(db, reminder.id, NOW + timedelta(days=1))


def test_reschedule_releases_and_retire_keeps_claim(db, make_user, make_reminder):
    user = make_user()
    recurring = make_reminder(user, NOW, recurrence="weekly")
    one_shot = make_reminder(user, NOW)
    for r in (recurring, one_shot):
        claim_reminder(db, r.id, NOW)

    reschedule_reminder(db, recurring.id, NOW + timedelta(weeks=1), DispatchOutcome.SKIPPED_BY_POLICY)
    retire_reminder(db, one_shot.id, DispatchOutcome.SENT)
    db.expire_all()

    recurring = db.get(Reminder, recurring.id)
    assert not recurring.delivered
    assert recurring.trigger_at == NOW + timedelta(weeks=1)
    assert recurring.last_outcome == "skipped_by_policy"

    one_shot = db.get(Reminder, one_shot.id)
    assert one_shot.delivered
    assert one_shot.last_outcome == "sent"


def test_list_user_reminders_between_is_half_open(db, make_user, make_reminder):
    user = make_user()
    other = make_user(name="Bruno")
    start, end = utc(2024, 5, 10), utc(2024, 5, 11)
    first = make_reminder(user, start)
    make_reminder(user, end)
    make_reminder(other, start + timedelta(hours=2))
    assert [r.id for r in list_user_reminders_between(db, user.id, start, end)] == [first.id]
