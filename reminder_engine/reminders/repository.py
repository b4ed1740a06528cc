from datetime import datetime, timedelta
from typing import Callable, Iterator, List

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from reminder_engine.utils.timezone import to_utc_aware, utcnow
from .models import Reminder, User
from .schemas import DispatchOutcome, ReminderSnapshot


def _snapshot(r: Reminder) -> ReminderSnapshot:
    return ReminderSnapshot(
        id=r.id,
        user_id=r.user_id,
        title=r.title,
        trigger_at=to_utc_aware(r.trigger_at),
        recurrence=r.recurrence,
        delivered=r.delivered,
    )


def due_reminders(
    session_factory: Callable[[], Session],
    now: datetime,
    lookback: timedelta,
    limit: int = 1000,
) -> Iterator[ReminderSnapshot]:
    """Yield reminders due at `now`: not delivered, trigger in [now - lookback, now].

    Reminders older than the lookback window are treated as missed. The
    generator is one-shot; every poll tick must start a fresh scan.
    """
    now = to_utc_aware(now)
    stmt = (
        select(Reminder)
        .where(Reminder.delivered.is_(False))
        .where(Reminder.trigger_at <= now)
        .where(Reminder.trigger_at >= now - lookback)
        .order_by(Reminder.trigger_at.asc())
        .limit(limit)
    )
    db = session_factory()
    try:
        snapshots = [_snapshot(r) for r in db.execute(stmt).scalars()]
    finally:
        db.close()
    # Session is closed before dispatch starts writing
    yield from snapshots


def claim_reminder(db: Session, reminder_id: str, trigger_at: datetime) -> bool:
    """Atomically mark one occurrence as being handled.

    The trigger instant is part of the predicate so a stale snapshot cannot
    claim an occurrence that another tick already advanced and released.
    Returns False when nothing was claimed.
    """
    result = db.execute(
        update(Reminder)
        .where(Reminder.id == reminder_id)
        .where(Reminder.delivered.is_(False))
        .where(Reminder.trigger_at == to_utc_aware(trigger_at))
        .values(delivered=True, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount == 1


def retire_reminder(db: Session, reminder_id: str, outcome: DispatchOutcome) -> None:
    """Leave a one-shot reminder claimed for good, recording how it ended."""
    db.execute(
        update(Reminder)
        .where(Reminder.id == reminder_id)
        .values(last_outcome=outcome.value, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    db.commit()


def reschedule_reminder(
    db: Session,
    reminder_id: str,
    next_trigger_at: datetime,
    outcome: DispatchOutcome,
) -> None:
    """Write the next trigger and release the claim in one statement."""
    db.execute(
        update(Reminder)
        .where(Reminder.id == reminder_id)
        .values(
            trigger_at=to_utc_aware(next_trigger_at),
            delivered=False,
            last_outcome=outcome.value,
            updated_at=utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    db.commit()


def list_user_reminders_between(
    db: Session,
    user_id: str,
    start: datetime,
    end: datetime,
) -> List[Reminder]:
    """Reminders of one user with a trigger in [start, end), oldest first."""
    stmt = (
        select(Reminder)
        .where(Reminder.user_id == user_id)
        .where(Reminder.trigger_at >= to_utc_aware(start))
        .where(Reminder.trigger_at < to_utc_aware(end))
        .order_by(Reminder.trigger_at.asc())
    )
    return list(db.execute(stmt).scalars())


def list_users_with_contact(db: Session, limit: int = 10000) -> List[User]:
    stmt = (
        select(User)
        .where(User.whatsapp_number.isnot(None))
        .where(User.whatsapp_number != "")
        .order_by(User.id)
        .limit(limit)
    )
    return list(db.execute(stmt).scalars())
