# chronokey/core/scheduler/__init__.py
"""
Scheduler module for turning job definitions into timed queue jobs.

Main components:
- Scheduler: public entry point (schedule_now / schedule_at / schedule_every)
- RecurrenceEngine: re-arms recurring schedules after each firing
- DateExpressionParser: human-readable schedule expressions
- next_fire_time: next occurrence of a recurrence pattern

Example usage:
    from chronokey.core.scheduler import Scheduler

    scheduler = Scheduler(config)
    await scheduler.start()
    await scheduler.schedule_at('in 10 minutes', {'type': 'email', 'data': {}})
"""

from chronokey.core.scheduler.service import Scheduler
from chronokey.core.scheduler.recurrence import RecurrenceEngine, RecurrenceOutcome
from chronokey.core.scheduler.parser import DateExpressionParser, parse, parse_recurrence
from chronokey.core.scheduler.calculator import next_fire_time

__all__ = [
    'Scheduler',
    'RecurrenceEngine',
    'RecurrenceOutcome',
    'DateExpressionParser',
    'parse',
    'parse_recurrence',
    'next_fire_time',
]
