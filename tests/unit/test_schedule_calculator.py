"""Tests for schedule calculator functions (pure, deterministic)."""

from __future__ import annotations

from datetime import date, datetime, time as datetime_time, timedelta, timezone
from zoneinfo import ZoneInfo

import pytest

from chronokey.core.models.schedule import (
    DailySchedule,
    HourlySchedule,
    IntervalSchedule,
    MonthlySchedule,
    Weekday,
    WeeklySchedule,
)
from chronokey.core.scheduler.calculator import (
    delay_until_ms,
    next_fire_time,
    resolve_wall_clock,
)


def _utc(year: int, month: int, day: int, hour: int = 0, minute: int = 0, second: int = 0) -> datetime:
    """Helper to construct a UTC-aware datetime."""
    return datetime(year, month, day, hour, minute, second, tzinfo=timezone.utc)


# =============================================================================
# IntervalSchedule
# =============================================================================


@pytest.mark.unit
class TestNextFireTimeInterval:
    """Tests for next_fire_time with IntervalSchedule."""

    def test_seconds_only(self) -> None:
        result = next_fire_time(IntervalSchedule(seconds=30), _utc(2025, 6, 1, 12))

        assert result == _utc(2025, 6, 1, 12, 0, 30)

    def test_combined_units(self) -> None:
        """Combined days+hours+minutes+seconds are summed correctly."""
        pattern = IntervalSchedule(days=1, hours=2, minutes=30, seconds=15)

        result = next_fire_time(pattern, _utc(2025, 6, 1))

        assert result == _utc(2025, 6, 2, 2, 30, 15)

    def test_result_is_utc(self) -> None:
        """Result is UTC-aware regardless of the timezone parameter."""
        result = next_fire_time(
            IntervalSchedule(hours=1), _utc(2025, 6, 1, 12), tz_str='America/New_York'
        )

        assert result.tzinfo == timezone.utc

    def test_interval_ignores_dst(self) -> None:
        """Intervals are exact durations, not wall-clock steps."""
        after = _utc(2025, 3, 9, 6, 30)  # 01:30 EST, just before spring forward

        result = next_fire_time(IntervalSchedule(hours=1), after, 'America/New_York')

        assert result == _utc(2025, 3, 9, 7, 30)


# =============================================================================
# HourlySchedule
# =============================================================================


@pytest.mark.unit
class TestNextFireTimeHourly:
    """Tests for next_fire_time with HourlySchedule."""

    def test_before_target_minute_returns_same_hour(self) -> None:
        result = next_fire_time(HourlySchedule(minute=30), _utc(2025, 6, 1, 14, 10))

        assert result == _utc(2025, 6, 1, 14, 30)

    def test_after_target_minute_returns_next_hour(self) -> None:
        result = next_fire_time(HourlySchedule(minute=30), _utc(2025, 6, 1, 14, 45))

        assert result == _utc(2025, 6, 1, 15, 30)

    def test_exactly_on_target_moves_forward(self) -> None:
        """The result is strictly after the reference instant."""
        result = next_fire_time(HourlySchedule(minute=30), _utc(2025, 6, 1, 14, 30))

        assert result == _utc(2025, 6, 1, 15, 30)

    def test_crosses_midnight(self) -> None:
        result = next_fire_time(HourlySchedule(minute=5), _utc(2025, 6, 1, 23, 50))

        assert result == _utc(2025, 6, 2, 0, 5)


# =============================================================================
# DailySchedule
# =============================================================================


@pytest.mark.unit
class TestNextFireTimeDaily:
    """Tests for next_fire_time with DailySchedule."""

    def test_before_target_time_returns_today(self) -> None:
        pattern = DailySchedule(time=datetime_time(15, 0, 0))

        assert next_fire_time(pattern, _utc(2025, 6, 1, 8)) == _utc(2025, 6, 1, 15)

    def test_after_target_time_returns_tomorrow(self) -> None:
        pattern = DailySchedule(time=datetime_time(15, 0, 0))

        assert next_fire_time(pattern, _utc(2025, 6, 1, 16)) == _utc(2025, 6, 2, 15)

    def test_evaluated_in_timezone(self) -> None:
        """10:00 in Berlin during summer time is 08:00 UTC."""
        pattern = DailySchedule(time=datetime_time(10, 0))

        result = next_fire_time(pattern, _utc(2025, 6, 1, 5), 'Europe/Berlin')

        assert result == _utc(2025, 6, 1, 8)

    def test_spring_forward_gap_skips_day(self) -> None:
        """02:30 does not exist in New York on 2025-03-09; the next day is used."""
        pattern = DailySchedule(time=datetime_time(2, 30))
        after = _utc(2025, 3, 9, 5, 0)  # 00:00 EST

        result = next_fire_time(pattern, after, 'America/New_York')

        assert result == _utc(2025, 3, 10, 6, 30)  # 02:30 EDT

    def test_fall_back_ambiguity_picks_first(self) -> None:
        """01:30 happens twice in New York on 2025-11-02; the earlier one wins."""
        pattern = DailySchedule(time=datetime_time(1, 30))
        after = _utc(2025, 11, 2, 4, 0)  # 00:00 EDT

        result = next_fire_time(pattern, after, 'America/New_York')

        assert result == _utc(2025, 11, 2, 5, 30)  # 01:30 EDT

    def test_naive_reference_rejected(self) -> None:
        with pytest.raises(ValueError, match='timezone-aware'):
            next_fire_time(DailySchedule(time=datetime_time(1)), datetime(2025, 6, 1))

    def test_unknown_timezone_rejected(self) -> None:
        with pytest.raises(ValueError, match='Invalid timezone'):
            next_fire_time(DailySchedule(time=datetime_time(1)), _utc(2025, 6, 1), 'Mars/Olympus')


# =============================================================================
# WeeklySchedule
# =============================================================================


@pytest.mark.unit
class TestNextFireTimeWeekly:
    """Tests for next_fire_time with WeeklySchedule. 2025-06-02 is a Monday."""

    def test_same_day_before_time(self) -> None:
        pattern = WeeklySchedule(days=[Weekday.MONDAY], time=datetime_time(17, 0))

        assert next_fire_time(pattern, _utc(2025, 6, 2, 9)) == _utc(2025, 6, 2, 17)

    def test_same_day_after_time_waits_a_week(self) -> None:
        pattern = WeeklySchedule(days=[Weekday.MONDAY], time=datetime_time(9, 0))

        assert next_fire_time(pattern, _utc(2025, 6, 2, 10)) == _utc(2025, 6, 9, 9)

    def test_picks_nearest_of_several_days(self) -> None:
        pattern = WeeklySchedule(
            days=[Weekday.MONDAY, Weekday.THURSDAY], time=datetime_time(9, 0)
        )

        assert next_fire_time(pattern, _utc(2025, 6, 2, 10)) == _utc(2025, 6, 5, 9)

    def test_weekday_is_local(self) -> None:
        """Sunday 23:30 UTC is already Monday in Tokyo."""
        pattern = WeeklySchedule(days=[Weekday.MONDAY], time=datetime_time(9, 0))

        result = next_fire_time(pattern, _utc(2025, 6, 1, 23, 30), 'Asia/Tokyo')

        assert result == _utc(2025, 6, 2, 0, 0)  # Monday 09:00 JST


# =============================================================================
# MonthlySchedule
# =============================================================================


@pytest.mark.unit
class TestNextFireTimeMonthly:
    """Tests for next_fire_time with MonthlySchedule."""

    def test_later_this_month(self) -> None:
        pattern = MonthlySchedule(day=15, time=datetime_time(8, 0))

        assert next_fire_time(pattern, _utc(2025, 6, 1)) == _utc(2025, 6, 15, 8)

    def test_next_month_when_passed(self) -> None:
        pattern = MonthlySchedule(day=15, time=datetime_time(8, 0))

        assert next_fire_time(pattern, _utc(2025, 6, 20)) == _utc(2025, 7, 15, 8)

    def test_short_month_is_skipped(self) -> None:
        """Day 31 never lands on June 30; July 31 is next."""
        pattern = MonthlySchedule(day=31, time=datetime_time(0, 0))

        assert next_fire_time(pattern, _utc(2025, 6, 1)) == _utc(2025, 7, 31)

    def test_leap_day(self) -> None:
        pattern = MonthlySchedule(day=29, time=datetime_time(12, 0))

        assert next_fire_time(pattern, _utc(2027, 1, 30)) == _utc(2027, 3, 29, 12)
        assert next_fire_time(pattern, _utc(2028, 1, 30)) == _utc(2028, 2, 29, 12)

    def test_year_rollover(self) -> None:
        pattern = MonthlySchedule(day=1, time=datetime_time(0, 0))

        assert next_fire_time(pattern, _utc(2025, 12, 15)) == _utc(2026, 1, 1)


# =============================================================================
# resolve_wall_clock
# =============================================================================


@pytest.mark.unit
class TestResolveWallClock:
    """Tests for wall-clock resolution across DST transitions."""

    def test_regular_time(self) -> None:
        tz = ZoneInfo('Europe/Berlin')

        result = resolve_wall_clock(date(2025, 6, 1), 10, 0, 0, tz)

        assert result is not None
        assert result.astimezone(timezone.utc) == _utc(2025, 6, 1, 8)

    def test_gap_returns_none(self) -> None:
        tz = ZoneInfo('Europe/Berlin')

        assert resolve_wall_clock(date(2025, 3, 30), 2, 30, 0, tz) is None

    def test_ambiguous_returns_earlier(self) -> None:
        tz = ZoneInfo('Europe/Berlin')

        result = resolve_wall_clock(date(2025, 10, 26), 2, 30, 0, tz)

        assert result is not None
        assert result.astimezone(timezone.utc) == _utc(2025, 10, 26, 0, 30)


# =============================================================================
# delay_until_ms
# =============================================================================


@pytest.mark.unit
class TestDelayUntilMs:
    """Tests for delay computation and clamping."""

    def test_exact_delay(self) -> None:
        now = _utc(2025, 6, 1, 12)

        assert delay_until_ms(now + timedelta(minutes=10), now) == 600_000

    def test_rounds_up_partial_milliseconds(self) -> None:
        now = _utc(2025, 6, 1, 12)

        assert delay_until_ms(now + timedelta(microseconds=1500), now) == 2

    def test_past_clamps_to_minimum(self) -> None:
        now = _utc(2025, 6, 1, 12)

        assert delay_until_ms(now - timedelta(hours=1), now) == 1
        assert delay_until_ms(now, now) == 1

    def test_custom_minimum(self) -> None:
        now = _utc(2025, 6, 1, 12)

        assert delay_until_ms(now + timedelta(milliseconds=5), now, min_delay_ms=100) == 100

    def test_naive_rejected(self) -> None:
        with pytest.raises(ValueError):
            delay_until_ms(datetime(2025, 6, 1), _utc(2025, 6, 1))
