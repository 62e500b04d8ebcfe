"""Next-occurrence arithmetic for recurring schedules.

Everything here is pure: a pattern and a reference instant go in, the next
instant comes out. Calendar steps are taken in the schedule's timezone so
that "09:00 every Monday" stays 09:00 local across DST changes; results are
always returned in UTC.
"""

import calendar
from datetime import datetime, time, timedelta, timezone
from typing import Iterable, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dateutil.relativedelta import relativedelta

from app.core.errors import ValidationError
from app.schemas.scheduler import Frequency, RecurrencePattern


_MONTH_STEPS = {
    Frequency.MONTHLY: 1,
    Frequency.QUARTERLY: 3,
    Frequency.YEARLY: 12,
}


class RecurrenceError(ValidationError):
    code = "invalid_recurrence"


def _as_utc(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


def _parse_time_of_day(value: Optional[str]) -> Optional[time]:
    if not value:
        return None
    try:
        hours, minutes = value.split(":")
        return time(int(hours), int(minutes))
    except ValueError as exc:
        raise RecurrenceError(f"Invalid time_of_day '{value}', expected HH:MM") from exc


def _apply_time(moment: datetime, time_of_day: Optional[time]) -> datetime:
    if time_of_day is None:
        return moment
    return moment.replace(
        hour=time_of_day.hour,
        minute=time_of_day.minute,
        second=0,
        microsecond=0,
    )


def _next_listed_weekday(
    local: datetime,
    days_of_week: Iterable[int],
    time_of_day: Optional[time],
) -> datetime:
    wanted = {int(day) for day in days_of_week}
    for offset in range(1, 8):
        candidate = local + timedelta(days=offset)
        if candidate.weekday() in wanted:
            return _apply_time(candidate, time_of_day)
    raise RecurrenceError(f"days_of_week {sorted(wanted)} contains no valid weekday")


def _add_months(
    local: datetime,
    months: int,
    day_of_month: Optional[int],
    time_of_day: Optional[time],
) -> datetime:
    # relativedelta already clamps Jan 31 + 1 month to the end of February
    target = local + relativedelta(months=months)
    if day_of_month is not None:
        last_day = calendar.monthrange(target.year, target.month)[1]
        target = target.replace(day=min(day_of_month, last_day))
    return _apply_time(target, time_of_day)


def _resolve_timezone(tz_name: str) -> ZoneInfo:
    try:
        return ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise RecurrenceError(f"Unknown timezone '{tz_name}'") from exc


def compute_next(
    pattern: RecurrencePattern,
    from_time: datetime,
    tz_name: str = "UTC",
) -> datetime:
    """Return the first occurrence of ``pattern`` strictly after ``from_time``.

    Raises RecurrenceError for a frequency this engine does not know; there is
    no fallback cadence.
    """
    try:
        frequency = Frequency(pattern.frequency)
    except ValueError as exc:
        raise RecurrenceError(f"Unsupported recurrence frequency '{pattern.frequency}'") from exc

    reference = _as_utc(from_time)
    local = reference.astimezone(_resolve_timezone(tz_name))
    time_of_day = _parse_time_of_day(pattern.time_of_day)

    if frequency == Frequency.DAILY:
        candidate = _apply_time(local + timedelta(days=1), time_of_day)
    elif frequency == Frequency.WEEKLY:
        if pattern.days_of_week:
            candidate = _next_listed_weekday(local, pattern.days_of_week, time_of_day)
        else:
            candidate = _apply_time(local + timedelta(days=7), time_of_day)
    else:
        candidate = _add_months(local, _MONTH_STEPS[frequency], pattern.day_of_month, time_of_day)

    result = candidate.astimezone(timezone.utc)
    if result <= reference:
        raise RecurrenceError(
            f"Recurrence {frequency.value} did not advance past {reference.isoformat()}"
        )
    return result


def has_further_occurrence(pattern: RecurrencePattern, next_time: Optional[datetime]) -> bool:
    if next_time is None:
        return False
    if pattern.ends_at is None:
        return True
    return _as_utc(next_time) <= _as_utc(pattern.ends_at)
