# chronokey/core/scheduler/parser.py
"""
Human-readable schedule expressions.

Two entry points:

- ``parse(expression, reference_time)`` resolves an expression to one
  absolute UTC instant. Accepts ``now``, relative offsets (``in 5 minutes``,
  ``2h30m``, ``3 days ago``, ``an hour from now``), day words and clock
  times (``tomorrow at 9am``, ``next monday 17:00``, ``10:30pm``), ISO-8601
  timestamps, and recurring phrases (resolved to their first occurrence).
- ``parse_recurrence(expression)`` turns an ``every ...`` phrase into a
  ``SchedulePattern``.

Both are pure: the same expression and reference time always yield the
same result. Numbers and ``timedelta`` values are accepted where a
duration is expected; bare numbers are milliseconds.
"""

from __future__ import annotations

import calendar
import math
import re
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Optional, Union
from zoneinfo import ZoneInfo

from chronokey.core.errors import ErrorCode, ParseError
from chronokey.core.models.schedule import (
    DailySchedule,
    HourlySchedule,
    IntervalSchedule,
    MonthlySchedule,
    SchedulePattern,
    Weekday,
    WeeklySchedule,
)
from chronokey.core.scheduler.calculator import (
    WEEKDAY_INDEX,
    next_fire_time,
    resolve_wall_clock,
)

When = Union[str, datetime, timedelta, int, float]
Every = Union[str, timedelta, int, float]

_TOKEN_RE = re.compile(r'\d+(?:\.\d+)?|[a-z]+|[:,]|\S')
_RECURRING_RE = re.compile(r'\s*every\b', re.IGNORECASE)

_NUMBER_WORDS: dict[str, int] = {
    'a': 1,
    'an': 1,
    'one': 1,
    'two': 2,
    'three': 3,
    'four': 4,
    'five': 5,
    'six': 6,
    'seven': 7,
    'eight': 8,
    'nine': 9,
    'ten': 10,
    'eleven': 11,
    'twelve': 12,
    'fifteen': 15,
    'twenty': 20,
    'thirty': 30,
    'sixty': 60,
}

# unit token -> (timedelta keyword or 'months', multiplier)
_UNITS: dict[str, tuple[str, int]] = {}
for _names, _target in (
    (('ms', 'msec', 'msecs', 'millisecond', 'milliseconds'), ('milliseconds', 1)),
    (('s', 'sec', 'secs', 'second', 'seconds'), ('seconds', 1)),
    (('m', 'min', 'mins', 'minute', 'minutes'), ('minutes', 1)),
    (('h', 'hr', 'hrs', 'hour', 'hours'), ('hours', 1)),
    (('d', 'day', 'days'), ('days', 1)),
    (('w', 'wk', 'wks', 'week', 'weeks'), ('weeks', 1)),
    (('month', 'months'), ('months', 1)),
    (('y', 'yr', 'yrs', 'year', 'years'), ('months', 12)),
):
    for _name in _names:
        _UNITS[_name] = _target

_WEEKDAYS: dict[str, Weekday] = {}
for _day in Weekday:
    _WEEKDAYS[_day.value] = _day
    _WEEKDAYS[_day.value[:3]] = _day
_WEEKDAYS.update({'tues': Weekday.TUESDAY, 'thur': Weekday.THURSDAY,
                  'thurs': Weekday.THURSDAY})
_WEEKDAYS.update({f'{_day.value}s': _day for _day in Weekday})  # "every mondays"

_WORKDAYS = [Weekday.MONDAY, Weekday.TUESDAY, Weekday.WEDNESDAY,
             Weekday.THURSDAY, Weekday.FRIDAY]
_WEEKEND = [Weekday.SATURDAY, Weekday.SUNDAY]

_DAY_OFFSETS = {'today': 0, 'tomorrow': 1, 'yesterday': -1}
_ORDINAL_SUFFIXES = {'st', 'nd', 'rd', 'th'}


@dataclass(frozen=True)
class _Offset:
    """A calendar-aware duration: whole months plus an exact delta."""

    months: int = 0
    delta: timedelta = timedelta(0)

    def apply(self, moment: datetime, sign: int = 1) -> datetime:
        shifted = _add_months(moment, sign * self.months) if self.months else moment
        return shifted + sign * self.delta


def _add_months(moment: datetime, months: int) -> datetime:
    index = moment.year * 12 + (moment.month - 1) + months
    year, month = index // 12, index % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def _parse_error(expression: str, token: Optional[str], reason: str) -> ParseError:
    notes = [f'expression: {expression!r}']
    if token is not None:
        notes.append(f'offending token: {token!r}')
    return ParseError(
        message=f'cannot parse schedule expression: {reason}',
        code=ErrorCode.SCHEDULE_UNPARSEABLE,
        notes=notes,
        help_text=(
            "examples: 'in 10 minutes', 'tomorrow at 9am', '2025-06-01T12:00:00Z', "
            "'every 1 hour', 'every day at 10am', 'every monday at 17:00'"
        ),
        token=token,
    )


def _millis(amount: float, expression: str) -> timedelta:
    """A number of milliseconds as a timedelta, rejecting NaN and overflow."""
    if not math.isfinite(amount):
        raise _parse_error(expression, expression, 'value out of range')
    try:
        return timedelta(milliseconds=amount)
    except OverflowError as e:
        raise _parse_error(expression, expression, 'value out of range') from e


def _shifted(reference: datetime, delta: timedelta, expression: str) -> datetime:
    try:
        return reference + delta
    except OverflowError as e:
        raise _parse_error(expression, None, 'value out of range') from e


def _as_utc(moment: datetime) -> datetime:
    # Naive instants are taken as UTC
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


def _zone(tz: str) -> ZoneInfo:
    try:
        return ZoneInfo(tz)
    except Exception as e:
        raise ParseError(
            message=f"unknown timezone '{tz}'",
            code=ErrorCode.SCHEDULE_INVALID_TIMEZONE,
            notes=[f'zoneinfo lookup failed: {e}'],
            help_text="use an IANA timezone name such as 'UTC' or 'Europe/Berlin'",
            token=tz,
        ) from e


class _Cursor:
    """Token stream over one normalized expression."""

    def __init__(self, expression: str) -> None:
        self.expression = expression
        self.tokens: list[str] = _TOKEN_RE.findall(expression.lower())
        self.pos = 0

    def peek(self, ahead: int = 0) -> Optional[str]:
        index = self.pos + ahead
        return self.tokens[index] if index < len(self.tokens) else None

    def take(self) -> str:
        token = self.peek()
        if token is None:
            raise self.error(None, 'unexpected end of expression')
        self.pos += 1
        return token

    def accept(self, *words: str) -> bool:
        if self.peek() in words:
            self.pos += 1
            return True
        return False

    def at_end(self) -> bool:
        return self.pos >= len(self.tokens)

    def error(self, token: Optional[str], reason: str) -> ParseError:
        return _parse_error(self.expression, token, reason)

    def integer(self, token: str) -> int:
        # Every clock and calendar field fits in four digits
        if len(token) > 4:
            raise self.error(token, 'value out of range')
        return int(token)

    def shift(self, offset: _Offset, reference: datetime, sign: int = 1) -> datetime:
        """Apply ``offset`` to ``reference``, reporting overflow as a ParseError."""
        try:
            return offset.apply(reference, sign)
        except (OverflowError, ValueError) as e:
            raise self.error(None, 'value out of range') from e

    def expect_end(self) -> None:
        if not self.at_end():
            token = self.peek()
            raise self.error(token, f'unexpected {token!r}')


def _is_number(token: Optional[str]) -> bool:
    return token is not None and token[0].isdigit()


def _amount(token: Optional[str]) -> Optional[float]:
    if token is None:
        return None
    if _is_number(token):
        return float(token)
    if token in _NUMBER_WORDS:
        return float(_NUMBER_WORDS[token])
    return None


def _starts_duration(cur: _Cursor) -> bool:
    return _amount(cur.peek()) is not None and cur.peek(1) in _UNITS


def _read_duration(cur: _Cursor) -> _Offset:
    """Consume ``<amount> <unit>`` terms, optionally joined by 'and' or ','."""
    months = 0
    delta = timedelta(0)
    terms = 0
    while True:
        amount = _amount(cur.peek())
        if amount is None or cur.peek(1) not in _UNITS:
            if terms == 0:
                raise cur.error(cur.peek(), 'expected a duration such as "5 minutes"')
            break
        amount_token = cur.take()
        kind, factor = _UNITS[cur.take()]
        if not math.isfinite(amount):
            raise cur.error(amount_token, 'value out of range')
        if kind == 'months':
            if amount != int(amount):
                raise cur.error(amount_token, 'fractional months')
            months += int(amount) * factor
        else:
            try:
                delta += timedelta(**{kind: amount * factor})
            except OverflowError as e:
                raise cur.error(amount_token, 'value out of range') from e
        terms += 1
        # Separators only count when another term follows them
        if cur.peek() in ('and', ',') and _amount(cur.peek(1)) is not None:
            cur.take()
    return _Offset(months=months, delta=delta)


def _read_clock(cur: _Cursor, bare_hour_ok: bool) -> Optional[time]:
    """
    Consume a clock reading if one starts at the cursor.

    Forms: ``noon``, ``midnight``, ``10am``, ``10:30``, ``10:30:15pm``.
    A bare hour (``10``) is only a clock when ``bare_hour_ok`` (after 'at').
    """
    if cur.accept('noon'):
        return time(12, 0)
    if cur.accept('midnight'):
        return time(0, 0)

    token = cur.peek()
    if not _is_number(token) or '.' in token:
        return None

    has_colon = cur.peek(1) == ':'
    has_meridiem = cur.peek(1) in ('am', 'pm')
    if not (has_colon or has_meridiem or bare_hour_ok):
        return None

    hour = cur.integer(cur.take())
    minute = second = 0
    if cur.accept(':'):
        minute_token = cur.take()
        if not _is_number(minute_token) or len(minute_token) != 2:
            raise cur.error(minute_token, 'expected two-digit minutes')
        minute = cur.integer(minute_token)
        if cur.accept(':'):
            second_token = cur.take()
            if not _is_number(second_token) or len(second_token) != 2:
                raise cur.error(second_token, 'expected two-digit seconds')
            second = int(second_token)

    meridiem = cur.peek() if cur.peek() in ('am', 'pm') else None
    if meridiem is not None:
        cur.take()
        if not 1 <= hour <= 12:
            raise cur.error(str(hour), '12-hour clock hour out of range')
        hour = hour % 12 + (12 if meridiem == 'pm' else 0)

    if hour > 23 or minute > 59 or second > 59:
        raise cur.error(f'{hour}:{minute:02d}:{second:02d}', 'clock time out of range')
    return time(hour, minute, second)


def _wall_clock(day: date, at: time, tz: ZoneInfo) -> datetime:
    resolved = resolve_wall_clock(day, at.hour, at.minute, at.second, tz)
    if resolved is None:
        # Wall time falls in a DST gap; fold=0 maps it just past the gap
        resolved = datetime.combine(day, at.replace(microsecond=0), tzinfo=tz)
    return resolved.replace(microsecond=at.microsecond)


def _resolve_calendar(cur: _Cursor, reference: datetime, tz: ZoneInfo) -> datetime:
    """Day word and/or clock, in any order: 'tomorrow at 9am', '17:00 friday'."""
    day_offset: Optional[int] = None
    weekday: Optional[Weekday] = None
    strictly_next = False
    clock: Optional[time] = None

    while not cur.at_end():
        token = cur.peek()
        if token == 'at':
            cur.take()
            if clock is not None:
                raise cur.error(token, 'clock time given twice')
            clock = _read_clock(cur, bare_hour_ok=True)
            if clock is None:
                raise cur.error(cur.peek(), 'expected a clock time after "at"')
            continue
        if token == 'on':
            cur.take()
            continue
        if token in _DAY_OFFSETS or token in _WEEKDAYS or token in ('next', 'this'):
            if day_offset is not None or weekday is not None:
                raise cur.error(token, 'day given twice')
            cur.take()
            if token in _DAY_OFFSETS:
                day_offset = _DAY_OFFSETS[token]
                continue
            if token in ('next', 'this'):
                strictly_next = token == 'next'
                token = cur.take()
                if token not in _WEEKDAYS:
                    raise cur.error(token, 'expected a weekday')
            weekday = _WEEKDAYS[token]
            continue

        reading = _read_clock(cur, bare_hour_ok=False)
        if reading is None:
            raise cur.error(token, f'unrecognized {token!r}')
        if clock is not None:
            raise cur.error(token, 'clock time given twice')
        clock = reading

    if day_offset is None and weekday is None and clock is None:
        raise cur.error(None, 'empty expression')

    local = reference.astimezone(tz)
    at = clock if clock is not None else local.timetz().replace(tzinfo=None)

    if day_offset is not None:
        return _wall_clock(local.date() + timedelta(days=day_offset), at, tz)

    if weekday is not None:
        wanted = WEEKDAY_INDEX[weekday]
        first = 1 if strictly_next else 0
        for offset in range(first, first + 8):
            day = local.date() + timedelta(days=offset)
            if day.weekday() != wanted:
                continue
            candidate = _wall_clock(day, at, tz)
            if strictly_next or candidate > reference:
                return candidate
        raise RuntimeError('weekday resolution did not converge')

    # Clock only: today if still ahead, otherwise tomorrow
    candidate = _wall_clock(local.date(), at, tz)
    if candidate <= reference:
        candidate = _wall_clock(local.date() + timedelta(days=1), at, tz)
    return candidate


def _interval_from_seconds(seconds: int) -> IntervalSchedule:
    days, rest = divmod(seconds, 86400)
    hours, rest = divmod(rest, 3600)
    minutes, secs = divmod(rest, 60)
    return IntervalSchedule(
        days=days or None,
        hours=hours or None,
        minutes=minutes or None,
        seconds=secs or None,
    )


def _interval_from_delta(delta: timedelta, expression: str) -> IntervalSchedule:
    seconds = math.ceil(delta.total_seconds())
    if seconds <= 0:
        raise _parse_error(expression, None, 'interval must be positive')
    if seconds > 366 * 86400:
        raise _parse_error(expression, None, 'interval longer than 366 days')
    return _interval_from_seconds(seconds)


def _read_monthly(cur: _Cursor) -> MonthlySchedule:
    """'every month on the 15th at 8am' / 'every month on day 1'."""
    day: Optional[int] = None
    clock = time(0, 0)
    while not cur.at_end():
        token = cur.take()
        if token in ('on', 'the', 'day'):
            continue
        if token == 'at':
            reading = _read_clock(cur, bare_hour_ok=True)
            if reading is None:
                raise cur.error(cur.peek(), 'expected a clock time after "at"')
            clock = reading
            continue
        if _is_number(token) and day is None and '.' not in token:
            day = cur.integer(token)
            cur.accept(*_ORDINAL_SUFFIXES)
            continue
        raise cur.error(token, f'unrecognized {token!r}')
    if day is None:
        raise cur.error(None, 'monthly schedules need a day, e.g. "on the 1st"')
    if not 1 <= day <= 31:
        raise cur.error(str(day), 'day of month out of range')
    return MonthlySchedule(day=day, time=clock)


def _read_weekly(cur: _Cursor) -> WeeklySchedule:
    """'every monday and thursday at 9am', 'every weekday', 'every weekend'."""
    days: list[Weekday] = []
    clock = time(0, 0)
    while not cur.at_end():
        token = cur.take()
        if token in ('and', ',', 'on'):
            continue
        if token == 'weekday' or token == 'weekdays':
            days.extend(d for d in _WORKDAYS if d not in days)
            continue
        if token == 'weekend' or token == 'weekends':
            days.extend(d for d in _WEEKEND if d not in days)
            continue
        if token in _WEEKDAYS:
            if _WEEKDAYS[token] not in days:
                days.append(_WEEKDAYS[token])
            continue
        if token == 'at':
            reading = _read_clock(cur, bare_hour_ok=True)
            if reading is None:
                raise cur.error(cur.peek(), 'expected a clock time after "at"')
            clock = reading
            continue
        raise cur.error(token, f'unrecognized {token!r}')
    return WeeklySchedule(days=days, time=clock)


def parse_recurrence(expression: Every) -> SchedulePattern:
    """
    Parse a recurring expression into a SchedulePattern.

    Supported:
        every 30 seconds / every 1 hour / every 2h30m / every hour
        every hour at :15
        every day / every day at 10am
        every monday [and friday] [at 17:00] / every weekday / every weekend
        every month on the 15th [at 8am]

    ``timedelta`` values and numbers (milliseconds) are plain intervals.

    Raises:
        ParseError: malformed or non-recurring expression
    """
    if isinstance(expression, timedelta):
        return _interval_from_delta(expression, str(expression))
    if isinstance(expression, bool) or not isinstance(expression, (str, int, float)):
        raise _parse_error(repr(expression), None, 'unsupported value type')
    if not isinstance(expression, str):
        label = f'{expression}ms'
        return _interval_from_delta(_millis(expression, label), label)

    cur = _Cursor(expression.strip())
    if not cur.accept('every'):
        raise ParseError(
            message='not a recurring expression',
            code=ErrorCode.SCHEDULE_NOT_RECURRING,
            notes=[f'expression: {expression!r}'],
            help_text="recurring expressions start with 'every', e.g. 'every 1 hour'",
            token=cur.peek(),
        )
    if cur.at_end():
        raise cur.error(None, 'nothing after "every"')

    token = cur.peek()

    if token in ('month', 'months'):
        cur.take()
        return _read_monthly(cur)

    if (
        token in _WEEKDAYS
        or token in ('weekday', 'weekdays', 'weekend', 'weekends')
    ):
        return _read_weekly(cur)

    if token in ('day', 'days') and cur.peek(1) == 'at':
        cur.take()
        cur.take()
        clock = _read_clock(cur, bare_hour_ok=True)
        if clock is None:
            raise cur.error(cur.peek(), 'expected a clock time after "at"')
        cur.expect_end()
        return DailySchedule(time=clock)

    if token in ('hour', 'hours') and cur.peek(1) == 'at':
        cur.take()
        cur.take()
        cur.accept(':')
        minute_token = cur.take()
        if not _is_number(minute_token) or '.' in minute_token:
            raise cur.error(minute_token, 'expected minutes past the hour')
        minute = cur.integer(minute_token)
        if minute > 59:
            raise cur.error(minute_token, 'minute out of range')
        cur.expect_end()
        return HourlySchedule(minute=minute)

    # Unit without an amount means one: "every hour", "every day"
    if token in _UNITS:
        cur.tokens.insert(cur.pos, '1')
    offset = _read_duration(cur)
    cur.expect_end()
    if offset.months:
        raise cur.error(
            'month', 'intervals in months are not fixed; use "every month on the Nth"'
        )
    return _interval_from_delta(offset.delta, expression)


def is_recurring(expression: object) -> bool:
    """True when ``expression`` is an 'every ...' phrase."""
    return isinstance(expression, str) and _RECURRING_RE.match(expression) is not None


def parse(
    expression: When,
    reference_time: Optional[datetime] = None,
    tz: str = 'UTC',
) -> datetime:
    """
    Resolve ``expression`` to an absolute UTC instant.

    Args:
        expression: string expression, datetime, timedelta, or number of
            milliseconds from the reference time
        reference_time: instant relative terms resolve against (default: now)
        tz: timezone that day words and clock times are read in

    Raises:
        ParseError: malformed input; ``token`` names the offending fragment
    """
    reference = _as_utc(reference_time or datetime.now(timezone.utc))
    zone = _zone(tz)

    if isinstance(expression, datetime):
        return _as_utc(expression)
    if isinstance(expression, timedelta):
        return _shifted(reference, expression, str(expression))
    if isinstance(expression, bool):
        raise _parse_error(repr(expression), None, 'unsupported value type')
    if isinstance(expression, (int, float)):
        label = f'{expression}ms'
        return _shifted(reference, _millis(expression, label), label)
    if not isinstance(expression, str):
        raise _parse_error(repr(expression), None, 'unsupported value type')

    text = expression.strip()
    if not text:
        raise _parse_error(expression, '', 'empty expression')

    if is_recurring(text):
        pattern = parse_recurrence(text)
        return next_fire_time(pattern, reference, tz)

    try:
        return _as_utc(datetime.fromisoformat(text))
    except ValueError:
        pass

    cur = _Cursor(text)

    if cur.accept('now'):
        cur.expect_end()
        return reference

    if cur.accept('in'):
        offset = _read_duration(cur)
        cur.expect_end()
        return cur.shift(offset, reference)

    if _starts_duration(cur):
        offset = _read_duration(cur)
        if cur.accept('ago'):
            cur.expect_end()
            return cur.shift(offset, reference, sign=-1)
        if cur.accept('from'):
            if not cur.accept('now'):
                raise cur.error(cur.peek(), 'expected "now" after "from"')
        cur.expect_end()
        return cur.shift(offset, reference)

    return _resolve_calendar(cur, reference, zone).astimezone(timezone.utc)


class DateExpressionParser:
    """
    Parser bound to a default timezone.

    Thin wrapper over ``parse``/``parse_recurrence`` so a Scheduler can carry
    its configured timezone without threading it through every call.
    """

    def __init__(self, default_timezone: str = 'UTC') -> None:
        _zone(default_timezone)
        self.default_timezone = default_timezone

    def parse(
        self,
        expression: When,
        reference_time: Optional[datetime] = None,
        tz: Optional[str] = None,
    ) -> datetime:
        return parse(expression, reference_time, tz or self.default_timezone)

    def parse_recurrence(self, expression: Every) -> SchedulePattern:
        return parse_recurrence(expression)

    def next_occurrence(
        self, pattern: SchedulePattern, after: datetime, tz: Optional[str] = None
    ) -> datetime:
        return next_fire_time(pattern, after, tz or self.default_timezone)
