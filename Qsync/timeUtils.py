"""Wall-clock helpers for HIS timestamps.

The HIS stores dates and times of day as local, timezone-less values. Every
event timestamp is composed from those parts directly so a visit registered at
00:30 never drifts onto the previous day.
"""

from datetime import date, datetime, time, timedelta
from zoneinfo import ZoneInfo

from django.conf import settings

CURSOR_FORMAT = '%Y-%m-%d %H:%M:%S'

HIS_WEEKDAY_NAMES = ('SENIN', 'SELASA', 'RABU', 'KAMIS', 'JUMAT', 'SABTU', 'MINGGU')


def to_date(value) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


def to_time(value) -> time:
    """Accepts time, 'HH:MM[:SS]' strings and timedelta (MySQL TIME columns)."""
    if isinstance(value, time):
        return value.replace(microsecond=0)
    if isinstance(value, datetime):
        return value.time().replace(microsecond=0)
    if isinstance(value, timedelta):
        seconds = int(value.total_seconds()) % 86400
        return time(seconds // 3600, (seconds % 3600) // 60, seconds % 60)
    parts = [int(p) for p in str(value).strip().split(':')]
    while len(parts) < 3:
        parts.append(0)
    return time(parts[0], parts[1], parts[2])


def compose_local_datetime(date_value, time_value) -> datetime:
    """Combine a local date and a local time of day into a naive datetime."""
    return datetime.combine(to_date(date_value), to_time(time_value))


def parse_local_datetime(value) -> datetime:
    if isinstance(value, datetime):
        return value.replace(microsecond=0, tzinfo=None)
    if isinstance(value, date):
        return datetime.combine(value, time())
    return datetime.strptime(str(value)[:19].replace('T', ' '), CURSOR_FORMAT)


def format_cursor(value: datetime) -> str:
    return value.strftime(CURSOR_FORMAT)


def to_epoch_millis(value: datetime) -> int:
    """Epoch milliseconds of a naive local timestamp in the configured zone."""
    aware = value.replace(tzinfo=ZoneInfo(settings.TIME_ZONE))
    return int(aware.timestamp() * 1000)


def his_weekday_name(value) -> str:
    return HIS_WEEKDAY_NAMES[to_date(value).weekday()]


def format_hours(value) -> str:
    """'HH:MM' form of a time-of-day value, '' when empty."""
    if value in (None, ''):
        return ''
    return to_time(value).strftime('%H:%M')
