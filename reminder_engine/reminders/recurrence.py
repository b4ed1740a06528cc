"""
Next-trigger calculation for recurring reminders
"""
import calendar
from datetime import datetime, timedelta
from typing import Optional, Union
from zoneinfo import ZoneInfo

from reminder_engine.utils.timezone import get_zoneinfo, to_utc_aware
from .errors import MalformedScheduleRule
from .schemas import Recurrence


def _add_months(local: datetime, months: int) -> datetime:
    """Shift a wall-clock datetime by whole months, clamping to the month's last day."""
    month_index = local.month - 1 + months
    year = local.year + month_index // 12
    month = month_index % 12 + 1
    day = min(local.day, calendar.monthrange(year, month)[1])
    return local.replace(year=year, month=month, day=day)


class RecurrenceCalculator:
    """Calculates the next trigger instant for a reminder's recurrence rule.

    Arithmetic happens on the wall clock of `tz` so a 09:00 reminder stays at
    09:00 local time across offset changes; results are returned in UTC.
    """

    def __init__(self, tz: Optional[ZoneInfo] = None):
        self.tz = tz or get_zoneinfo()

    def next_trigger(
        self,
        rule: Union[Recurrence, str, None],
        previous: datetime,
        now: datetime,
    ) -> datetime:
        """Return the first occurrence of `rule` after `previous` that is strictly after `now`.

        Occurrences missed while the engine was down are skipped rather than
        replayed one after another.
        """
        try:
            recurrence = rule if isinstance(rule, Recurrence) else Recurrence.parse(rule)
        except ValueError:
            raise MalformedScheduleRule(rule)
        if recurrence is Recurrence.NONE:
            raise MalformedScheduleRule(rule)

        previous = to_utc_aware(previous)
        now = to_utc_aware(now)
        local_prev = previous.astimezone(self.tz).replace(tzinfo=None)

        k = max(1, self._estimate_steps(recurrence, previous, now))
        candidate = self._step(recurrence, local_prev, k)
        # Estimate may overshoot by one around offset changes or month clamping
        while k > 1 and self._step(recurrence, local_prev, k - 1) > now:
            k -= 1
            candidate = self._step(recurrence, local_prev, k)
        while candidate <= now:
            k += 1
            candidate = self._step(recurrence, local_prev, k)
        return candidate

    def _step(self, recurrence: Recurrence, local_prev: datetime, k: int) -> datetime:
        if recurrence is Recurrence.DAILY:
            local = local_prev + timedelta(days=k)
        elif recurrence is Recurrence.WEEKLY:
            local = local_prev + timedelta(weeks=k)
        elif recurrence is Recurrence.MONTHLY:
            local = _add_months(local_prev, k)
        elif recurrence is Recurrence.YEARLY:
            local = _add_months(local_prev, 12 * k)
        else:
            raise MalformedScheduleRule(recurrence.value)
        return to_utc_aware(local.replace(tzinfo=self.tz))

    @staticmethod
    def _estimate_steps(recurrence: Recurrence, previous: datetime, now: datetime) -> int:
        if now < previous:
            return 1
        if recurrence is Recurrence.DAILY:
            return (now - previous) // timedelta(days=1) + 1
        if recurrence is Recurrence.WEEKLY:
            return (now - previous) // timedelta(weeks=1) + 1
        months = (now.year - previous.year) * 12 + (now.month - previous.month)
        if recurrence is Recurrence.YEARLY:
            return months // 12
        return months


def next_trigger(
    rule: Union[Recurrence, str, None],
    previous: datetime,
    now: datetime,
    tz: Optional[ZoneInfo] = None,
) -> datetime:
    return RecurrenceCalculator(tz).next_trigger(rule, previous, now)
