"""Job queue adapter the scheduler hands jobs off to."""

from chronokey.core.queue.job import JobOptions, JobQueue, JobRecord, PRIORITY_LEVELS
from chronokey.core.queue.postgres import PostgresJobQueue
from chronokey.core.queue.result_types import (
    QueueErrorCode,
    QueueOperationError,
    QueueResult,
)

__all__ = [
    'JobOptions',
    'JobQueue',
    'JobRecord',
    'PRIORITY_LEVELS',
    'PostgresJobQueue',
    'QueueErrorCode',
    'QueueOperationError',
    'QueueResult',
]
