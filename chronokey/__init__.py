"""chronokey - job scheduling on Redis TTL markers over a durable job queue"""

# Install Rust-style error handler on import
from .core.errors import install_error_handler as _install_error_handler

_install_error_handler()

from .core.models.app import AppConfig
from .core.models.store import RedisConfig
from .core.models.queue import PostgresConfig
from .core.models.schedule import (
    Weekday,
    IntervalSchedule,
    HourlySchedule,
    DailySchedule,
    WeeklySchedule,
    MonthlySchedule,
    SchedulePattern,
    NowSpec,
    AtSpec,
    EverySpec,
    ScheduleSpec,
    MarkerPayload,
)
from .core.scheduler.service import Scheduler
from .core.scheduler.result_types import (
    ScheduleAck,
    ScheduleError,
    ScheduleErrorCode,
    ScheduleResult,
)
from .core.scheduler.parser import DateExpressionParser
from .core.jobs.builder import JobBuilder, BuildReport
from .core.queue.job import JobQueue, JobRecord
from .core.queue.postgres import PostgresJobQueue
from .core.queue.result_types import QueueErrorCode, QueueOperationError, QueueResult
from .core.store.result_types import StoreErrorCode, StoreOperationError, StoreResult
from .core.types.status import JobState
from .core.errors import (
    ErrorCode,
    ChronokeyError,
    JobValidationError,
    ParseError,
    ConfigurationError,
    DecodeError,
    ValidationReport,
    MultipleValidationErrors,
)
from .core.types.result import Result, Ok, Err, is_ok, is_err

__all__ = [
    # Core
    'Scheduler',
    'AppConfig',
    'RedisConfig',
    'PostgresConfig',
    # Schedules
    'Weekday',
    'IntervalSchedule',
    'HourlySchedule',
    'DailySchedule',
    'WeeklySchedule',
    'MonthlySchedule',
    'SchedulePattern',
    'NowSpec',
    'AtSpec',
    'EverySpec',
    'ScheduleSpec',
    'MarkerPayload',
    'DateExpressionParser',
    # Results
    'ScheduleAck',
    'ScheduleError',
    'ScheduleErrorCode',
    'ScheduleResult',
    'QueueErrorCode',
    'QueueOperationError',
    'QueueResult',
    'StoreErrorCode',
    'StoreOperationError',
    'StoreResult',
    'Result',
    'Ok',
    'Err',
    'is_ok',
    'is_err',
    # Jobs
    'JobBuilder',
    'BuildReport',
    'JobQueue',
    'JobRecord',
    'PostgresJobQueue',
    'JobState',
    # Errors
    'ErrorCode',
    'ChronokeyError',
    'JobValidationError',
    'ParseError',
    'ConfigurationError',
    'DecodeError',
    'ValidationReport',
    'MultipleValidationErrors',
]
