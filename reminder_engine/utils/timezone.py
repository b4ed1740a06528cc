from datetime import datetime, date, time, timedelta, timezone as dt_timezone
from typing import Optional
from zoneinfo import ZoneInfo

from reminder_engine.core.config import settings


def get_zoneinfo(tz_name: Optional[str] = None) -> ZoneInfo:
    return ZoneInfo(tz_name or settings.DEFAULT_TIMEZONE)


def utcnow() -> datetime:
    return datetime.now(dt_timezone.utc)


def to_utc_aware(dt: datetime | None) -> datetime | None:
    """
    Normalize any datetime to UTC-aware (tzinfo=UTC).
    - Aware datetimes are converted to UTC
    - Naive datetimes are assumed UTC and tz attached
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=dt_timezone.utc)
    return dt.astimezone(dt_timezone.utc)


def month_period(now: datetime, tz: Optional[ZoneInfo] = None) -> str:
    """Calendar month key ("YYYY-MM") of `now` in the given (or default) timezone."""
    local = to_utc_aware(now).astimezone(tz or get_zoneinfo())
    return f"{local.year:04d}-{local.month:02d}"


def local_day_bounds(now: datetime, tz: Optional[ZoneInfo] = None) -> tuple[datetime, datetime]:
    """UTC [start, end) of the local calendar day containing `now`."""
    tz = tz or get_zoneinfo()
    local_day: date = to_utc_aware(now).astimezone(tz).date()
    start = datetime.combine(local_day, time.min, tzinfo=tz)
    end = datetime.combine(local_day + timedelta(days=1), time.min, tzinfo=tz)
    return start.astimezone(dt_timezone.utc), end.astimezone(dt_timezone.utc)


def format_local_time(dt: datetime, tz: Optional[ZoneInfo] = None) -> str:
    return to_utc_aware(dt).astimezone(tz or get_zoneinfo()).strftime("%H:%M")
