# chronokey/core/scheduler/recurrence.py
from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional
from chronokey.core.logging import get_logger
from chronokey.core.models.schedule import EverySpec, MarkerPayload
from chronokey.core.scheduler.calculator import delay_until_ms, next_fire_time
from chronokey.core.scheduler.result_types import ScheduleErrorCode, ScheduleResult
from chronokey.core.store.keystore import ScheduleKeyStore
from chronokey.core.types.result import is_err

logger = get_logger('recurrence')

EnqueueOccurrence = Callable[[MarkerPayload], Awaitable[ScheduleResult[str]]]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True, frozen=True)
class RecurrenceOutcome:
    """What happened to one firing of a recurring schedule."""

    job_id: Optional[str]
    next_fire_at: Optional[datetime]
    rearmed: bool
    dropped: bool = False


class RecurrenceEngine:
    """
    Enqueues the fired occurrence of a recurring schedule and arms the next one.

    Order per firing:
      1. enqueue the occurrence that just fired
      2. compute the next occurrence of the pattern after "now"
      3. arm a fresh marker under the same schedule id

    Steps 2 and 3 run even when step 1 fails transiently, so a queue
    outage never ends a recurrence. A permanently invalid definition
    drops the schedule instead. Step 2 never yields the occurrence that
    just fired, even if the store's clock ran ahead of ours.
    """

    def __init__(
        self,
        keystore: ScheduleKeyStore,
        enqueue: EnqueueOccurrence,
        *,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.keystore = keystore
        self._enqueue = enqueue
        self._clock = clock

    async def on_fire(self, payload: MarkerPayload) -> RecurrenceOutcome:
        spec = payload.spec
        if not isinstance(spec, EverySpec):
            raise TypeError(f'{payload.schedule_id} is not a recurring schedule')

        job_id: Optional[str] = None
        enqueue_r = await self._enqueue(payload)
        if is_err(enqueue_r):
            err = enqueue_r.err_value
            if err.code == ScheduleErrorCode.VALIDATION_FAILED:
                logger.error(
                    'Dropping recurring schedule %s: %s', payload.schedule_id, err.message
                )
                await self.keystore.disarm(payload.schedule_id)
                return RecurrenceOutcome(
                    job_id=None, next_fire_at=None, rearmed=False, dropped=True
                )
            logger.error(
                'Enqueue of %s occurrence %s failed (retryable=%s): %s; '
                're-arming anyway',
                payload.schedule_id,
                payload.fire_at.isoformat(),
                err.retryable,
                err.message,
            )
        else:
            job_id = enqueue_r.ok_value

        now = self._clock()
        # Guard against a store clock ahead of ours re-firing this occurrence
        after = max(now, payload.fire_at)
        try:
            next_at = next_fire_time(spec.pattern, after, spec.timezone)
        except (ValueError, RuntimeError) as e:
            logger.error(
                'Cannot compute next occurrence of %s: %s; schedule stopped',
                payload.schedule_id,
                e,
            )
            return RecurrenceOutcome(job_id=job_id, next_fire_at=None, rearmed=False)

        next_payload = payload.model_copy(update={'fire_at': next_at, 'armed_at': now})
        delay_ms = delay_until_ms(next_at, now, self.keystore.min_delay_ms)
        arm_r = await self.keystore.arm(payload.schedule_id, next_payload, delay_ms)
        if is_err(arm_r):
            logger.error(
                'Re-arm of %s failed; recurrence stopped until re-registered: %s',
                payload.schedule_id,
                arm_r.err_value.message,
            )
            return RecurrenceOutcome(job_id=job_id, next_fire_at=next_at, rearmed=False)

        logger.debug(
            'Re-armed %s for %s (ttl=%dms)',
            payload.schedule_id,
            next_at.isoformat(),
            arm_r.ok_value,
        )
        return RecurrenceOutcome(job_id=job_id, next_fire_at=next_at, rearmed=True)
