# chronokey/core/queue/job.py
"""
Job handle returned by a JobQueue.

A ``JobRecord`` is built in memory, configured through its setter
methods, and persisted with ``await record.save()``. Setters validate
their argument and return the record so calls can be chained::

    record = queue.create_job('email', {'to': 'a@b.com'})
    record.priority('high').attempts(3).backoff({'type': 'exponential', 'delay': 500})
    result = await record.save()
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Mapping, Optional, Protocol, Union

from chronokey.core.errors import ErrorCode, JobValidationError
from chronokey.core.queue.result_types import QueueResult
from chronokey.core.types.result import is_ok


# Lower value runs first
PRIORITY_LEVELS: dict[str, int] = {
    'low': 10,
    'normal': 0,
    'medium': -5,
    'high': -10,
    'critical': -15,
}

BACKOFF_TYPES: frozenset[str] = frozenset({'fixed', 'exponential'})


class JobQueue(Protocol):
    """Contract the scheduler relies on to hand jobs off to a queue."""

    def create_job(self, job_type: str, data: dict[str, Any]) -> JobRecord: ...

    async def save(self, record: JobRecord) -> QueueResult[str]: ...

    async def start(self) -> QueueResult[None]: ...

    async def close(self) -> QueueResult[None]: ...


@dataclass
class JobOptions:
    """Queue attributes collected on a JobRecord before it is saved."""

    priority: int = 0
    attempts: int = 1
    backoff: Optional[dict[str, Any]] = None
    delay_ms: int = 0
    ttl_ms: Optional[int] = None
    remove_on_complete: bool = False
    queue_name: Optional[str] = None
    dedup_key: Optional[str] = None


def _invalid(attribute: str, value: Any, help_text: str) -> JobValidationError:
    return JobValidationError(
        message=f"invalid value for job attribute '{attribute}'",
        code=ErrorCode.JOB_INVALID_ATTRIBUTE,
        notes=[f'got {attribute}={value!r}'],
        help_text=help_text,
    )


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


@dataclass
class JobRecord:
    """In-memory job handle bound to the queue that will persist it."""

    owner: JobQueue = field(repr=False)
    job_type: str
    data: dict[str, Any]
    options: JobOptions = field(default_factory=JobOptions)
    id: Optional[str] = None

    def priority(self, level: Union[int, str]) -> JobRecord:
        if isinstance(level, str):
            if level not in PRIORITY_LEVELS:
                raise _invalid(
                    'priority',
                    level,
                    f'use an integer or one of: {", ".join(PRIORITY_LEVELS)}',
                )
            self.options.priority = PRIORITY_LEVELS[level]
        elif _is_int(level):
            self.options.priority = level
        else:
            raise _invalid('priority', level, 'use an integer or a named level')
        return self

    def attempts(self, count: int) -> JobRecord:
        if not _is_int(count) or count < 1:
            raise _invalid('attempts', count, 'use an integer >= 1')
        self.options.attempts = count
        return self

    def backoff(self, policy: Union[bool, Mapping[str, Any]]) -> JobRecord:
        """
        Set the retry backoff policy.

        ``True`` means a fixed backoff equal to the job delay, ``False``
        clears it. A mapping must name a ``type`` (fixed or exponential)
        and may carry a ``delay`` in milliseconds.
        """
        if policy is True:
            self.options.backoff = {'type': 'fixed', 'delay': self.options.delay_ms}
            return self
        if policy is False:
            self.options.backoff = None
            return self
        if not isinstance(policy, Mapping):
            raise _invalid('backoff', policy, 'use a bool or {"type": ..., "delay": ms}')

        kind = policy.get('type', 'fixed')
        delay = policy.get('delay', 0)
        if kind not in BACKOFF_TYPES:
            raise _invalid(
                'backoff', policy, f'backoff type must be one of {sorted(BACKOFF_TYPES)}'
            )
        if not _is_int(delay) or delay < 0:
            raise _invalid('backoff', policy, 'backoff delay must be a non-negative integer (ms)')
        self.options.backoff = {'type': kind, 'delay': delay}
        return self

    def delay(self, value: Union[int, timedelta, datetime, str]) -> JobRecord:
        """
        Hold the job back before it becomes available to consumers.

        Accepts milliseconds, a ``timedelta``, or an absolute ``datetime``
        (an ISO-8601 string is read as one). Absolute values are converted
        to a delay from now; past instants mean no delay.
        """
        if isinstance(value, str):
            try:
                value = datetime.fromisoformat(value)
            except ValueError:
                raise _invalid('delay', value, 'use milliseconds or an ISO-8601 timestamp')

        if isinstance(value, datetime):
            if value.tzinfo is None:
                value = value.replace(tzinfo=timezone.utc)
            value = value - datetime.now(timezone.utc)

        if isinstance(value, timedelta):
            delay_ms = int(value / timedelta(milliseconds=1))
        elif _is_int(value):
            delay_ms = value
        else:
            raise _invalid('delay', value, 'use milliseconds, a timedelta or a datetime')

        self.options.delay_ms = max(delay_ms, 0)
        return self

    def ttl(self, ms: int) -> JobRecord:
        if not _is_int(ms) or ms < 1:
            raise _invalid('ttl', ms, 'use a positive number of milliseconds')
        self.options.ttl_ms = ms
        return self

    def remove_on_complete(self, flag: bool) -> JobRecord:
        if not isinstance(flag, bool):
            raise _invalid('remove_on_complete', flag, 'use true or false')
        self.options.remove_on_complete = flag
        return self

    def queue(self, name: str) -> JobRecord:
        if not isinstance(name, str) or not name.strip() or len(name) > 100:
            raise _invalid('queue', name, 'use a non-empty queue name of at most 100 characters')
        self.options.queue_name = name
        return self

    def dedup_key(self, key: str) -> JobRecord:
        """Identity under which the queue accepts this job at most once."""
        if not isinstance(key, str) or not key:
            raise _invalid('dedup_key', key, 'use a non-empty string')
        self.options.dedup_key = key
        return self

    async def save(self) -> QueueResult[str]:
        """Persist and enqueue. Returns the job id (the existing one on a dedup hit)."""
        result = await self.owner.save(self)
        if is_ok(result):
            self.id = result.ok_value
        return result
