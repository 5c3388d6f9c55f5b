"""Typed results for Scheduler registration calls.

``schedule_now`` / ``schedule_at`` / ``schedule_every`` / ``cancel``
return ``ScheduleResult[T]``.  Validation and parse failures are carried
as ``Err`` rather than raised, so callers handle every outcome through
one channel:

* ``VALIDATION_FAILED`` -- bad job definition; the store was not touched.
* ``PARSE_FAILED`` -- bad schedule expression; no marker was armed.
* ``STORE_FAILED`` -- the store rejected the write; no marker was armed.
* ``ENQUEUE_FAILED`` -- the job queue rejected the job (``schedule_now``).
* ``NOT_STARTED`` -- the Scheduler has not been started.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from chronokey.core.types.result import Result


class ScheduleErrorCode(str, Enum):
    """Categorized registration failure codes."""

    VALIDATION_FAILED = 'VALIDATION_FAILED'
    PARSE_FAILED = 'PARSE_FAILED'
    STORE_FAILED = 'STORE_FAILED'
    ENQUEUE_FAILED = 'ENQUEUE_FAILED'
    NOT_STARTED = 'NOT_STARTED'


@dataclass(slots=True, frozen=True)
class ScheduleError:
    """Error payload carried inside ``Err(...)`` for registration calls.

    Fields:
        code: which failure category
        message: human-readable description
        retryable: whether the caller can safely retry
        schedule_id: identifier assigned to the schedule, when one was
        exception: the original cause (if any)
    """

    code: ScheduleErrorCode
    message: str
    retryable: bool
    schedule_id: str | None = None
    exception: BaseException | None = None


@dataclass(slots=True, frozen=True)
class ScheduleAck:
    """Acknowledgement of an armed schedule."""

    schedule_id: str
    fire_at: datetime
    delay_ms: int
    schedule: str


type ScheduleResult[T] = Result[T, ScheduleError]
