# chronokey/core/scheduler/service.py
from __future__ import annotations
import asyncio
import uuid
from datetime import UTC, datetime, timedelta
from typing import Any, Callable, Optional
from redis.asyncio import Redis
from chronokey.core.errors import ChronokeyError, JobValidationError
from chronokey.core.jobs.builder import JobBuilder
from chronokey.core.logging import get_logger
from chronokey.core.models.app import AppConfig
from chronokey.core.models.schedule import AtSpec, EverySpec, MarkerPayload
from chronokey.core.queue.job import JobQueue, JobRecord
from chronokey.core.queue.postgres import PostgresJobQueue
from chronokey.core.scheduler.calculator import delay_until_ms
from chronokey.core.scheduler.parser import (
    DateExpressionParser,
    Every,
    When,
    is_recurring,
)
from chronokey.core.scheduler.recurrence import RecurrenceEngine
from chronokey.core.scheduler.result_types import (
    ScheduleAck,
    ScheduleError,
    ScheduleErrorCode,
    ScheduleResult,
)
from chronokey.core.store.keystore import ScheduleKeyStore
from chronokey.core.store.listener import ExpiryListener
from chronokey.core.store.result_types import StoreOperationError
from chronokey.core.types.result import Err, Ok, is_err

logger = get_logger('scheduler')


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _describe_interval(interval: Every) -> str:
    """Stable text form of an interval, used in the RECURRING:<expr> tag."""
    if isinstance(interval, str):
        return ' '.join(interval.split())
    if isinstance(interval, timedelta):
        return f'{int(interval / timedelta(milliseconds=1))}ms'
    return f'{interval}ms'


class Scheduler:
    """
    Schedules job definitions onto a job queue using Redis TTL markers.

    Responsibilities:
    1. Validate job definitions and schedule expressions at registration
    2. Arm one TTL marker per pending occurrence
    3. Turn marker expirations into exactly one enqueued job per occurrence
    4. Re-arm recurring schedules after each firing

    One instance owns its Redis client, job queue and listener task. Several
    instances may share a store; each occurrence is still enqueued once.

    Example:
        scheduler = Scheduler(AppConfig(queue=PostgresConfig(database_url=...)))
        await scheduler.start()
        await scheduler.schedule_every('every day at 10am', {'type': 'report', 'data': {}})
        await scheduler.run_forever()
    """

    def __init__(
        self,
        config: AppConfig,
        *,
        redis_client: Optional[Redis] = None,
        queue: Optional[JobQueue] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.config = config
        self._owns_client = redis_client is None
        self._client: Optional[Redis] = redis_client
        self.queue: JobQueue = queue if queue is not None else PostgresJobQueue(config.queue)
        self.builder = JobBuilder(self.queue)
        self.parser = DateExpressionParser(config.default_timezone)
        self._clock = clock

        self.keystore: Optional[ScheduleKeyStore] = None
        self.listener: Optional[ExpiryListener] = None
        self.recurrence: Optional[RecurrenceEngine] = None

        self._stop = asyncio.Event()
        self._started = False

        if self._client is not None:
            self._wire(self._client)

    def _wire(self, client: Redis) -> None:
        self.keystore = ScheduleKeyStore(
            client, self.config.store, min_delay_ms=self.config.min_delay_ms
        )
        self.recurrence = RecurrenceEngine(
            self.keystore, self._enqueue_occurrence, clock=self._clock
        )
        db = int(client.connection_pool.connection_kwargs.get('db', 0) or 0)
        self.listener = ExpiryListener(
            client,
            self.keystore,
            self._on_fire,
            db=db,
            backoff_initial=self.config.listener_backoff_initial_s,
            backoff_max=self.config.listener_backoff_max_s,
        )

    # ----------------- Lifecycle -----------------

    async def start(self) -> None:
        """Connect to Redis, prepare the queue and start the expiry listener.

        Raises RuntimeError when Redis or the queue is unreachable.
        """
        if self._started:
            return

        if self._client is None:
            store = self.config.store
            self._client = Redis.from_url(
                store.redis_url,
                decode_responses=True,
                socket_timeout=store.socket_timeout,
                socket_connect_timeout=store.socket_connect_timeout,
                health_check_interval=store.health_check_interval,
            )
            self._wire(self._client)
        assert self.keystore is not None and self.listener is not None

        self.config.log_config(logger)

        ping_r = await self.keystore.ping()
        if is_err(ping_r):
            err = ping_r.err_value
            raise RuntimeError(f'Redis unreachable: {err.message}') from err.exception

        if self.config.store.configure_notifications:
            notify_r = await self.keystore.ensure_notifications()
            if is_err(notify_r):
                logger.warning(
                    'Could not configure notify-keyspace-events (%s); make sure '
                    "the server publishes expired events ('Ex')",
                    notify_r.err_value.message,
                )

        queue_r = await self.queue.start()
        if is_err(queue_r):
            err = queue_r.err_value
            raise RuntimeError(
                f'Job queue initialization failed: {err.message}'
            ) from err.exception
        logger.info('Job queue ready')

        await self.listener.start()
        if not await self.listener.wait_subscribed(
            timeout=self.config.store.socket_connect_timeout
        ):
            logger.warning('Expiry listener not subscribed yet; it keeps retrying')

        self._stop.clear()
        self._started = True
        logger.info('Scheduler started')

    async def stop(self) -> None:
        """Stop the listener and release the queue and Redis connections."""
        self._stop.set()

        if self.listener is not None:
            await self.listener.stop()

        if self._started:
            close_r = await self.queue.close()
            if is_err(close_r):
                logger.error(f'Job queue close failed: {close_r.err_value.message}')

        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None
            self.keystore = None
            self.listener = None
            self.recurrence = None

        self._started = False
        logger.info('Scheduler stopped')

    def request_stop(self) -> None:
        """Request run_forever to return."""
        self._stop.set()

    async def run_forever(self) -> None:
        """Start, then serve firings until request_stop() is called."""
        try:
            await self.start()
            logger.info('Scheduler running')
            await self._stop.wait()
        finally:
            await self.stop()

    # ----------------- Registration -----------------

    def _not_started(self) -> Optional[Err[ScheduleError]]:
        if self._started and self.keystore is not None:
            return None
        return Err(ScheduleError(
            code=ScheduleErrorCode.NOT_STARTED,
            message='Scheduler is not started; await scheduler.start() first',
            retryable=True,
        ))

    def _validate(
        self, definition: Any, schedule_id: Optional[str] = None
    ) -> Optional[Err[ScheduleError]]:
        try:
            self.builder.build(definition)
        except JobValidationError as e:
            return Err(ScheduleError(
                code=ScheduleErrorCode.VALIDATION_FAILED,
                message=e.message,
                retryable=False,
                schedule_id=schedule_id,
                exception=e,
            ))
        return None

    @staticmethod
    def _parse_failed(e: ChronokeyError) -> Err[ScheduleError]:
        return Err(ScheduleError(
            code=ScheduleErrorCode.PARSE_FAILED,
            message=e.message,
            retryable=False,
            exception=e,
        ))

    @staticmethod
    def _store_failed(err: StoreOperationError, schedule_id: str) -> Err[ScheduleError]:
        return Err(ScheduleError(
            code=ScheduleErrorCode.STORE_FAILED,
            message=err.message,
            retryable=err.retryable,
            schedule_id=schedule_id,
            exception=err.exception,
        ))

    async def schedule_now(self, definition: Any) -> ScheduleResult[JobRecord]:
        """
        Build and enqueue a job immediately. The store is not involved.

        ``data.schedule`` defaults to 'NOW'; a value the caller supplies is kept.
        """
        if (not_started := self._not_started()) is not None:
            return not_started

        try:
            record, _ = self.builder.build(definition)
        except JobValidationError as e:
            return Err(ScheduleError(
                code=ScheduleErrorCode.VALIDATION_FAILED,
                message=e.message,
                retryable=False,
                exception=e,
            ))

        save_r = await record.save()
        if is_err(save_r):
            err = save_r.err_value
            return Err(ScheduleError(
                code=ScheduleErrorCode.ENQUEUE_FAILED,
                message=err.message,
                retryable=err.retryable,
                exception=err.exception,
            ))
        logger.info(f'Enqueued {record.job_type} job {record.id} (NOW)')
        return Ok(record)

    async def _arm(self, payload: MarkerPayload, now: datetime) -> ScheduleResult[ScheduleAck]:
        assert self.keystore is not None
        schedule_id = payload.schedule_id
        delay_ms = delay_until_ms(payload.fire_at, now, self.config.min_delay_ms)
        try:
            arm_r = await self.keystore.arm(schedule_id, payload, delay_ms)
        except JobValidationError as e:
            return Err(ScheduleError(
                code=ScheduleErrorCode.VALIDATION_FAILED,
                message=e.message,
                retryable=False,
                schedule_id=schedule_id,
                exception=e,
            ))
        if is_err(arm_r):
            return self._store_failed(arm_r.err_value, schedule_id)

        ack = ScheduleAck(
            schedule_id=schedule_id,
            fire_at=payload.fire_at,
            delay_ms=arm_r.ok_value,
            schedule=payload.spec.tag(),
        )
        logger.info(
            f'Armed {schedule_id} ({ack.schedule}) for {ack.fire_at.isoformat()}'
        )
        return Ok(ack)

    async def schedule_at(
        self,
        when: When,
        definition: Any,
        *,
        schedule_id: Optional[str] = None,
    ) -> ScheduleResult[ScheduleAck]:
        """
        Enqueue ``definition`` once, at the instant ``when`` resolves to.

        ``when`` may be an expression ('in 10 minutes', 'tomorrow at 9am'),
        a datetime, a timedelta or a number of milliseconds. Instants in the
        past fire after the minimum delay. Re-using a schedule_id replaces
        its pending occurrence.
        """
        if (not_started := self._not_started()) is not None:
            return not_started
        if (invalid := self._validate(definition, schedule_id)) is not None:
            return invalid

        now = self._clock()
        try:
            fire_at = self.parser.parse(when, reference_time=now)
        except ChronokeyError as e:
            return self._parse_failed(e)

        payload = MarkerPayload(
            schedule_id=schedule_id or uuid.uuid4().hex,
            definition=dict(definition),
            spec=AtSpec(
                at=fire_at, expression=when if isinstance(when, str) else None
            ),
            fire_at=fire_at,
            armed_at=now,
        )
        return await self._arm(payload, now)

    async def schedule_every(
        self,
        interval: Every,
        definition: Any,
        *,
        schedule_id: Optional[str] = None,
        timezone: Optional[str] = None,
    ) -> ScheduleResult[ScheduleAck]:
        """
        Enqueue ``definition`` repeatedly.

        ``interval`` is an 'every ...' phrase ('every 15 minutes',
        'every monday at 9am'), a bare duration ('15 minutes'), a timedelta
        or a number of milliseconds. Wall-clock patterns are evaluated in
        ``timezone`` (default: AppConfig.default_timezone). A failed
        registration arms nothing.
        """
        if (not_started := self._not_started()) is not None:
            return not_started
        if (invalid := self._validate(definition, schedule_id)) is not None:
            return invalid

        expression: Every = interval
        if isinstance(interval, str) and not is_recurring(interval):
            expression = f'every {interval.strip()}'

        now = self._clock()
        tz = timezone or self.config.default_timezone
        try:
            pattern = self.parser.parse_recurrence(expression)
            spec = EverySpec(
                expression=_describe_interval(expression),
                pattern=pattern,
                timezone=tz,
            )
            fire_at = self.parser.next_occurrence(pattern, now, tz)
        except ChronokeyError as e:
            return self._parse_failed(e)

        payload = MarkerPayload(
            schedule_id=schedule_id or uuid.uuid4().hex,
            definition=dict(definition),
            spec=spec,
            fire_at=fire_at,
            armed_at=now,
        )
        return await self._arm(payload, now)

    async def cancel(self, schedule_id: str) -> ScheduleResult[bool]:
        """
        Disarm a schedule. Ok(False) when nothing was armed.

        Best effort: an occurrence whose expiry is already in flight still
        enqueues.
        """
        if (not_started := self._not_started()) is not None:
            return not_started
        assert self.keystore is not None

        disarm_r = await self.keystore.disarm(schedule_id)
        if is_err(disarm_r):
            return self._store_failed(disarm_r.err_value, schedule_id)
        if disarm_r.ok_value:
            logger.info(f'Cancelled schedule {schedule_id}')
        return Ok(disarm_r.ok_value)

    # ----------------- Firing -----------------

    async def _enqueue_occurrence(self, payload: MarkerPayload) -> ScheduleResult[str]:
        """Build and save the job for one occurrence, deduplicated by occurrence key."""
        try:
            record, _ = self.builder.build(payload.definition)
        except JobValidationError as e:
            return Err(ScheduleError(
                code=ScheduleErrorCode.VALIDATION_FAILED,
                message=e.message,
                retryable=False,
                schedule_id=payload.schedule_id,
                exception=e,
            ))

        record.data['schedule'] = payload.spec.tag()
        record.dedup_key(payload.occurrence_key())
        save_r = await record.save()
        if is_err(save_r):
            err = save_r.err_value
            return Err(ScheduleError(
                code=ScheduleErrorCode.ENQUEUE_FAILED,
                message=err.message,
                retryable=err.retryable,
                schedule_id=payload.schedule_id,
                exception=err.exception,
            ))
        logger.info(
            f'Enqueued {record.job_type} job {save_r.ok_value} for {payload.occurrence_key()}'
        )
        return Ok(save_r.ok_value)

    async def _on_fire(self, schedule_id: str, payload: MarkerPayload) -> None:
        """
        Dispatch one marker expiration.

        Duplicate or stale deliveries are dropped: a marker that exists
        again means the schedule was already re-armed, and a taken claim
        means another delivery won this occurrence. If the claim cannot be
        recorded the job is still enqueued; the queue's dedup key prevents a
        second copy.
        """
        assert self.keystore is not None and self.recurrence is not None

        armed_r = await self.keystore.is_armed(schedule_id)
        if is_err(armed_r):
            logger.error(
                f'Cannot check marker of {schedule_id}; dropping firing: '
                f'{armed_r.err_value.message}'
            )
            return
        if armed_r.ok_value:
            logger.info(f'Ignoring stale expiry for {schedule_id}; already re-armed')
            return

        claim_r = await self.keystore.claim_occurrence(schedule_id, payload.fire_at)
        if is_err(claim_r):
            logger.warning(
                f'Claim of {payload.occurrence_key()} failed; relying on queue '
                f'deduplication: {claim_r.err_value.message}'
            )
        elif not claim_r.ok_value:
            logger.info(f'Duplicate expiry for {payload.occurrence_key()}; ignored')
            return

        if payload.is_recurring:
            await self.recurrence.on_fire(payload)
            return

        enqueue_r = await self._enqueue_occurrence(payload)
        if is_err(enqueue_r):
            logger.error(
                f'One-shot schedule {schedule_id} was not enqueued: '
                f'{enqueue_r.err_value.message}'
            )
        await self.keystore.release_payload(schedule_id)
