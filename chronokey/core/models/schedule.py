# chronokey/core/models/schedule.py
from __future__ import annotations
from datetime import datetime, time as datetime_time, timedelta, timezone
from typing import Annotated, Any, Literal, Optional, Union
from zoneinfo import ZoneInfo
from pydantic import BaseModel, Field, field_validator, model_validator
from typing_extensions import Self
from enum import Enum
from chronokey.core.defaults import (
    SCHEDULE_TAG_NOW,
    SCHEDULE_TAG_ONCE,
    SCHEDULE_TAG_RECURRING_PREFIX,
)
from chronokey.core.errors import (
    ConfigurationError,
    ErrorCode,
    ValidationReport,
    raise_collected,
)


_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def epoch_ms(moment: datetime) -> int:
    """Whole milliseconds since the Unix epoch, without float rounding."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return (moment - _EPOCH) // timedelta(milliseconds=1)


class Weekday(str, Enum):
    """Weekday names as they appear in recurrence expressions."""

    MONDAY = 'monday'
    TUESDAY = 'tuesday'
    WEDNESDAY = 'wednesday'
    THURSDAY = 'thursday'
    FRIDAY = 'friday'
    SATURDAY = 'saturday'
    SUNDAY = 'sunday'


class IntervalSchedule(BaseModel):
    """
    Fixed-length repetition; the period is the sum of the given units.

    ``every 90 minutes`` and ``every 1 hour 30 minutes`` both parse to a
    5400 second interval.
    """

    type: Literal['interval'] = 'interval'
    seconds: Optional[int] = Field(default=None, ge=1, le=86400)
    minutes: Optional[int] = Field(default=None, ge=1, le=1440)
    hours: Optional[int] = Field(default=None, ge=1, le=168)
    days: Optional[int] = Field(default=None, ge=1, le=366)

    @model_validator(mode='after')
    def validate_at_least_one_unit(self) -> Self:
        report = ValidationReport('schedule')
        if not (self.seconds or self.minutes or self.hours or self.days):
            report.add(
                ConfigurationError(
                    message='IntervalSchedule requires at least one time unit',
                    code=ErrorCode.SCHEDULE_UNPARSEABLE,
                    notes=['seconds, minutes, hours and days were all left unset'],
                    help_text='set one or more of: seconds, minutes, hours, days',
                )
            )
        raise_collected(report)
        return self

    def total_seconds(self) -> int:
        return (
            (self.seconds or 0)
            + (self.minutes or 0) * 60
            + (self.hours or 0) * 3600
            + (self.days or 0) * 86400
        )


class HourlySchedule(BaseModel):
    """Once an hour, at ``minute:second`` past the hour."""

    type: Literal['hourly'] = 'hourly'
    minute: int = Field(ge=0, le=59)
    second: int = Field(default=0, ge=0, le=59)


class DailySchedule(BaseModel):
    """Once a day at a local wall-clock time."""

    type: Literal['daily'] = 'daily'
    time: datetime_time = Field(description='Local wall-clock time')


class WeeklySchedule(BaseModel):
    """On the listed weekdays at a local wall-clock time.

    ``every weekday at 9am`` expands to monday through friday.
    """

    type: Literal['weekly'] = 'weekly'
    days: list[Weekday] = Field(min_length=1)
    time: datetime_time = Field(description='Local wall-clock time')

    @model_validator(mode='after')
    def validate_unique_days(self) -> Self:
        report = ValidationReport('schedule')
        if len(set(self.days)) < len(self.days):
            report.add(
                ConfigurationError(
                    message='WeeklySchedule has duplicate days',
                    code=ErrorCode.SCHEDULE_UNPARSEABLE,
                    notes=[f'days: {[d.value for d in self.days]}'],
                    help_text='list each weekday once',
                )
            )
        raise_collected(report)
        return self


class MonthlySchedule(BaseModel):
    """On one day of the month at a local wall-clock time.

    Months shorter than ``day`` produce no occurrence.
    """

    type: Literal['monthly'] = 'monthly'
    day: int = Field(ge=1, le=31)
    time: datetime_time = Field(description='Local wall-clock time')


SchedulePattern = Annotated[
    Union[
        IntervalSchedule,
        HourlySchedule,
        DailySchedule,
        WeeklySchedule,
        MonthlySchedule,
    ],
    Field(discriminator='type'),
]


def _validate_timezone(v: str) -> str:
    try:
        ZoneInfo(v)
    except Exception as e:
        raise ConfigurationError(
            message=f"unknown timezone '{v}'",
            code=ErrorCode.SCHEDULE_INVALID_TIMEZONE,
            notes=[f'zoneinfo lookup failed: {e}'],
            help_text="use an IANA timezone name such as 'UTC' or 'Europe/Berlin'",
        ) from e
    return v


class NowSpec(BaseModel):
    """Enqueue immediately; never touches the store."""

    kind: Literal['now'] = 'now'

    def tag(self) -> str:
        return SCHEDULE_TAG_NOW


class AtSpec(BaseModel):
    """Fire once at an absolute instant."""

    kind: Literal['at'] = 'at'
    at: datetime = Field(description='Resolved UTC instant to fire at')
    expression: Optional[str] = Field(
        default=None, description='Original expression, if one was given'
    )

    @field_validator('at')
    @classmethod
    def ensure_aware(cls, v: datetime) -> datetime:
        # Naive instants are taken as UTC
        if v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v.astimezone(timezone.utc)

    def tag(self) -> str:
        return SCHEDULE_TAG_ONCE


class EverySpec(BaseModel):
    """Fire repeatedly following a recurrence pattern."""

    kind: Literal['every'] = 'every'
    expression: str = Field(description='Original recurrence expression')
    pattern: SchedulePattern = Field(description='Parsed recurrence pattern')
    timezone: str = Field(default='UTC', description='Timezone for evaluation')

    @field_validator('timezone')
    @classmethod
    def validate_timezone(cls, v: str) -> str:
        return _validate_timezone(v)

    def tag(self) -> str:
        return f'{SCHEDULE_TAG_RECURRING_PREFIX}{self.expression}'


ScheduleSpec = Annotated[
    Union[NowSpec, AtSpec, EverySpec],
    Field(discriminator='kind'),
]


class MarkerPayload(BaseModel):
    """
    Value stored alongside a marker key.

    Fields:
        - schedule_id: identifier shared by every occurrence of a schedule
        - definition: the caller's job definition, as submitted
        - spec: AtSpec for one-shot schedules, EverySpec for recurring ones
        - fire_at: UTC instant this occurrence is due
        - armed_at: UTC instant the marker was written
    """

    version: int = Field(default=1, description='Payload layout version')
    schedule_id: str = Field(min_length=1)
    definition: dict[str, Any]
    spec: ScheduleSpec
    fire_at: datetime
    armed_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def is_recurring(self) -> bool:
        return isinstance(self.spec, EverySpec)

    def occurrence_key(self) -> str:
        """Stable identity of this occurrence: ``<schedule_id>:<fire_at epoch ms>``."""
        return f'{self.schedule_id}:{epoch_ms(self.fire_at)}'
