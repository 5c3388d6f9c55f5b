# chronokey/core/scheduler/calculator.py
from __future__ import annotations
import calendar
import math
from datetime import date, datetime, timedelta, timezone
from zoneinfo import ZoneInfo
from typing import Optional
from chronokey.core.defaults import MIN_MARKER_DELAY_MS
from chronokey.core.models.schedule import (
    SchedulePattern,
    IntervalSchedule,
    HourlySchedule,
    DailySchedule,
    WeeklySchedule,
    MonthlySchedule,
    Weekday,
)

WEEKDAY_INDEX = {
    Weekday.MONDAY: 0,
    Weekday.TUESDAY: 1,
    Weekday.WEDNESDAY: 2,
    Weekday.THURSDAY: 3,
    Weekday.FRIDAY: 4,
    Weekday.SATURDAY: 5,
    Weekday.SUNDAY: 6,
}


def next_fire_time(
    pattern: SchedulePattern, after: datetime, tz_str: str = 'UTC'
) -> datetime:
    """
    Compute the first instant strictly after ``after`` matching ``pattern``.

    Args:
        pattern: Recurrence pattern (interval, hourly, daily, weekly, monthly)
        after: Reference instant, must be timezone-aware
        tz_str: Timezone wall-clock patterns are evaluated in

    Returns:
        UTC-aware datetime

    Raises:
        ValueError: If ``after`` is naive or the timezone is unknown
    """
    if after.tzinfo is None:
        raise ValueError('after must be timezone-aware')

    try:
        tz = ZoneInfo(tz_str)
    except Exception as e:
        raise ValueError(f"Invalid timezone '{tz_str}': {e}")

    local = after.astimezone(tz)

    match pattern:
        case IntervalSchedule():
            fire_at = after + timedelta(seconds=pattern.total_seconds())
        case HourlySchedule():
            fire_at = _next_hourly(pattern, local, tz)
        case DailySchedule():
            fire_at = _next_daily(pattern, local, tz)
        case WeeklySchedule():
            fire_at = _next_weekly(pattern, local, tz)
        case MonthlySchedule():
            fire_at = _next_monthly(pattern, local, tz)

    if fire_at.tzinfo is None:
        raise RuntimeError('computed fire time is not timezone-aware')

    return fire_at.astimezone(timezone.utc)


def _next_hourly(pattern: HourlySchedule, local: datetime, tz: ZoneInfo) -> datetime:
    # A DST gap can swallow at most one wall-clock hour; six is ample.
    for hour_offset in range(0, 6):
        base = local + timedelta(hours=hour_offset)
        candidate = resolve_wall_clock(
            base.date(), base.hour, pattern.minute, pattern.second, tz
        )
        if candidate is not None and candidate > local:
            return candidate

    raise RuntimeError('no hourly fire time within 6 hours')


def _next_daily(pattern: DailySchedule, local: datetime, tz: ZoneInfo) -> datetime:
    at = pattern.time
    for day_offset in range(0, 8):
        day = (local + timedelta(days=day_offset)).date()
        candidate = resolve_wall_clock(day, at.hour, at.minute, at.second, tz)
        if candidate is not None and candidate > local:
            return candidate

    raise RuntimeError('no daily fire time within 7 days')


def _next_weekly(pattern: WeeklySchedule, local: datetime, tz: ZoneInfo) -> datetime:
    wanted = {WEEKDAY_INDEX[d] for d in pattern.days}
    at = pattern.time
    for day_offset in range(0, 15):
        day = (local + timedelta(days=day_offset)).date()
        if day.weekday() not in wanted:
            continue
        candidate = resolve_wall_clock(day, at.hour, at.minute, at.second, tz)
        if candidate is not None and candidate > local:
            return candidate

    raise RuntimeError('no weekly fire time within 2 weeks')


def _next_monthly(pattern: MonthlySchedule, local: datetime, tz: ZoneInfo) -> datetime:
    at = pattern.time
    for month_offset in range(0, 25):
        year, month = _shift_month(local.year, local.month, month_offset)
        if pattern.day > calendar.monthrange(year, month)[1]:
            continue  # e.g. the 31st in a 30-day month
        candidate = resolve_wall_clock(
            date(year, month, pattern.day), at.hour, at.minute, at.second, tz
        )
        if candidate is not None and candidate > local:
            return candidate

    raise RuntimeError('no monthly fire time within 24 months')


def _shift_month(year: int, month: int, offset: int) -> tuple[int, int]:
    index = (year * 12) + (month - 1) + offset
    return (index // 12, (index % 12) + 1)


def resolve_wall_clock(
    day: date,
    hour: int,
    minute: int,
    second: int,
    tz: ZoneInfo,
) -> Optional[datetime]:
    """
    Turn a local wall-clock reading into a real zoned datetime.

    Returns None when the reading does not exist (spring-forward gap).
    When it is ambiguous (fall-back), the earlier instant wins.
    """
    naive = datetime(day.year, day.month, day.day, hour, minute, second)
    valid: list[datetime] = []
    for fold in (0, 1):
        candidate = naive.replace(tzinfo=tz, fold=fold)
        roundtrip = candidate.astimezone(timezone.utc).astimezone(tz)
        if roundtrip.replace(tzinfo=None) == naive:
            valid.append(candidate)

    if not valid:
        return None

    return min(valid, key=lambda dt: dt.astimezone(timezone.utc))


def delay_until_ms(
    fire_at: datetime, now: datetime, min_delay_ms: int = MIN_MARKER_DELAY_MS
) -> int:
    """
    Milliseconds from ``now`` until ``fire_at``, rounded up and clamped.

    Rounding up keeps a marker from expiring before the requested instant.
    Past or present instants (clock skew, processing lag) clamp to
    ``min_delay_ms`` instead of firing in a tight loop.
    """
    if fire_at.tzinfo is None or now.tzinfo is None:
        raise ValueError('fire_at and now must be timezone-aware')

    delay_ms = math.ceil((fire_at - now) / timedelta(milliseconds=1))
    return max(delay_ms, min_delay_ms)
