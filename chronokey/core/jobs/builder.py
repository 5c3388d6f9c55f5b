# chronokey/core/jobs/builder.py
"""
Validation and construction of queue records from job definitions.

A job definition is a plain mapping::

    {
        'type': 'email',                  # required, non-empty string
        'data': {'to': 'a@b.com'},        # required, plain mapping
        'priority': 'high',               # optional queue attributes
        'attempts': 3,
        'backoff': {'type': 'exponential', 'delay': 500},
    }

Optional attributes are applied through ``ATTRIBUTE_SETTERS``; anything
not listed there is ignored so definitions written for newer versions
still build.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Callable

from chronokey.core.defaults import SCHEDULE_TAG_NOW
from chronokey.core.errors import ErrorCode, JobValidationError
from chronokey.core.logging import get_logger
from chronokey.core.queue.job import JobQueue, JobRecord

logger = get_logger('builder')

ATTRIBUTE_SETTERS: dict[str, Callable[[JobRecord, Any], JobRecord]] = {
    'priority': JobRecord.priority,
    'attempts': JobRecord.attempts,
    'backoff': JobRecord.backoff,
    'delay': JobRecord.delay,
    'ttl': JobRecord.ttl,
    'remove_on_complete': JobRecord.remove_on_complete,
    'queue': JobRecord.queue,
}

# Keys consumed structurally rather than through a setter
_STRUCTURAL_KEYS = frozenset({'type', 'data'})


@dataclass(slots=True, frozen=True)
class BuildReport:
    """Which optional attributes of a definition were applied or ignored."""

    applied: tuple[str, ...]
    ignored: tuple[str, ...]


def _deep_merge(base: Mapping[str, Any], override: Mapping[str, Any]) -> dict[str, Any]:
    merged: dict[str, Any] = dict(base)
    for key, value in override.items():
        current = merged.get(key)
        if isinstance(current, Mapping) and isinstance(value, Mapping):
            merged[key] = _deep_merge(current, value)
        elif isinstance(value, Mapping):
            merged[key] = _deep_merge({}, value)
        else:
            merged[key] = value
    return merged


def validate_definition(definition: Any) -> None:
    """
    Check the shape of a job definition.

    Rules are checked in order and the first violation is raised:
    the definition is a mapping with string keys, ``type`` is a non-empty
    string, ``data`` is a mapping.

    Raises:
        JobValidationError: on the first violated rule
    """
    if not isinstance(definition, Mapping):
        raise JobValidationError(
            message='job definition must be a mapping',
            code=ErrorCode.JOB_NOT_A_MAPPING,
            notes=[f'got {type(definition).__name__}'],
            help_text="pass a dict such as {'type': 'email', 'data': {...}}",
        )

    bad_keys = [key for key in definition if not isinstance(key, str)]
    if bad_keys:
        raise JobValidationError(
            message='job definition keys must be strings',
            code=ErrorCode.JOB_INVALID_ATTRIBUTE,
            notes=[f'got keys: {bad_keys!r}'],
            help_text='attribute names are stored as JSON object keys',
        )

    job_type = definition.get('type')
    if not isinstance(job_type, str) or not job_type.strip():
        raise JobValidationError(
            message="job definition needs a non-empty 'type'",
            code=ErrorCode.JOB_MISSING_TYPE,
            notes=[
                "'type' is missing"
                if 'type' not in definition
                else f'got type={job_type!r}'
            ],
            help_text="set 'type' to the job name consumers listen for",
        )

    data = definition.get('data')
    if not isinstance(data, Mapping):
        raise JobValidationError(
            message="job definition needs 'data' to be a mapping",
            code=ErrorCode.JOB_INVALID_DATA,
            notes=[
                "'data' is missing"
                if 'data' not in definition
                else f'got {type(data).__name__}'
            ],
            help_text="pass the job payload as a dict, e.g. 'data': {}",
        )


class JobBuilder:
    """Turns job definitions into unsaved JobRecords on a queue."""

    def __init__(self, queue: JobQueue) -> None:
        self.queue = queue

    def build(self, definition: Any) -> tuple[JobRecord, BuildReport]:
        """
        Validate ``definition`` and construct an unsaved record.

        Caller attributes are merged over ``{'data': {'schedule': 'NOW'}}``;
        the caller's ``data`` wins key by key. Nothing is written until the
        caller awaits ``record.save()``.

        Raises:
            JobValidationError: bad shape or an invalid attribute value
        """
        validate_definition(definition)
        merged = _deep_merge({'data': {'schedule': SCHEDULE_TAG_NOW}}, definition)

        record = self.queue.create_job(merged['type'], merged['data'])

        applied: list[str] = []
        ignored: list[str] = []
        for name, value in merged.items():
            if name in _STRUCTURAL_KEYS:
                continue
            setter = ATTRIBUTE_SETTERS.get(name)
            if setter is None:
                ignored.append(name)
                continue
            setter(record, value)
            applied.append(name)

        if ignored:
            logger.debug(
                'Ignoring unrecognized attributes on %s job: %s',
                merged['type'],
                ', '.join(ignored),
            )

        return record, BuildReport(applied=tuple(applied), ignored=tuple(ignored))
