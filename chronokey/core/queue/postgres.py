# chronokey/core/queue/postgres.py
from __future__ import annotations
import asyncio
import hashlib
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any
from sqlalchemy import select, text
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from chronokey.core.logging import get_logger
from chronokey.core.models.queue import PostgresConfig
from chronokey.core.queue.job import JobRecord
from chronokey.core.queue.models import Base, JobModel
from chronokey.core.queue.result_types import (
    QueueErrorCode,
    QueueOperationError,
    QueueResult,
)
from chronokey.core.types.result import Err, Ok, is_err
from chronokey.core.types.status import JobState
from chronokey.core.utils.db import is_retryable_connection_error
from chronokey.core.utils.url import mask_url

logger = get_logger('queue')


class PostgresJobQueue:
    """
    PostgreSQL-backed job queue the scheduler hands jobs off to.

    Jobs land in ``chronokey_jobs``. Consumers are out of scope here; they
    are woken through LISTEN on ``chronokey_job_new`` (and
    ``chronokey_queue_<name>``), which a trigger notifies on every insert
    of a ready job.

    Inserts are idempotent per ``dedup_key``: saving a job whose key already
    exists returns the id of the existing row instead of inserting a second
    one. Scheduled occurrences always carry a key, so a duplicate firing
    cannot enqueue the same occurrence twice.
    """

    def __init__(self, config: PostgresConfig):
        self.config = config
        self.async_engine = create_async_engine(
            self.config.database_url, **self.config.engine_options()
        )
        self.session_factory = async_sessionmaker(
            self.async_engine, expire_on_commit=False
        )
        self._initialized = False
        logger.info(
            'PostgresJobQueue initialized for %s', mask_url(self.config.database_url)
        )

    def _schema_advisory_key(self) -> int:
        """
        Stable 64-bit advisory lock key for schema initialization.

        Derived from the database URL so different clusters never contend
        on the same key.
        """
        basis = self.config.database_url.encode('utf-8', errors='ignore')
        h = hashlib.sha256(b'chronokey-schema:' + basis).digest()
        return int.from_bytes(h[:8], byteorder='big', signed=True)

    async def _create_triggers(self) -> None:
        """Notify consumers whenever a ready job is inserted."""
        async with self.async_engine.begin() as conn:
            await conn.execute(
                text("""
                CREATE OR REPLACE FUNCTION chronokey_notify_job_new()
                RETURNS trigger AS $$
                BEGIN
                    IF NEW.state = 'QUEUED' THEN
                        PERFORM pg_notify('chronokey_job_new', NEW.id);
                        PERFORM pg_notify('chronokey_queue_' || NEW.queue_name, NEW.id);
                    END IF;
                    RETURN NEW;
                END;
                $$ LANGUAGE plpgsql;
            """)
            )
            await conn.execute(
                text("""
                DROP TRIGGER IF EXISTS chronokey_job_notify_trigger ON chronokey_jobs;
                CREATE TRIGGER chronokey_job_notify_trigger
                    AFTER INSERT ON chronokey_jobs
                    FOR EACH ROW
                    EXECUTE FUNCTION chronokey_notify_job_new();
            """)
            )

    async def _ensure_initialized(self) -> QueueResult[None]:
        if self._initialized:
            return Ok(None)
        try:
            async with self.async_engine.begin() as conn:
                # Serialize DDL across every process sharing the database
                await conn.execute(
                    text('SELECT pg_advisory_xact_lock(CAST(:key AS BIGINT))'),
                    {'key': self._schema_advisory_key()},
                )
                await conn.run_sync(Base.metadata.create_all)
            await self._create_triggers()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error('Queue schema initialization failed: %s', exc)
            return Err(QueueOperationError(
                code=QueueErrorCode.SCHEMA_INIT_FAILED,
                message=f'Failed to initialize queue schema: {exc}',
                retryable=is_retryable_connection_error(exc),
                exception=exc,
            ))
        self._initialized = True
        return Ok(None)

    async def start(self) -> QueueResult[None]:
        """
        Ensure tables and triggers exist.

        Safe to call repeatedly and from several processes; DDL runs under
        a PostgreSQL advisory lock.
        """
        return await self._ensure_initialized()

    def create_job(self, job_type: str, data: dict[str, Any]) -> JobRecord:
        return JobRecord(owner=self, job_type=job_type, data=data)

    def _row_values(self, record: JobRecord, job_id: str) -> dict[str, Any]:
        opts = record.options
        now = datetime.now(timezone.utc)
        schedule_tag = record.data.get('schedule')
        return {
            'id': job_id,
            'job_type': record.job_type,
            'queue_name': opts.queue_name or self.config.default_queue,
            'data': record.data,
            'schedule_tag': schedule_tag if isinstance(schedule_tag, str) else None,
            'state': JobState.DELAYED if opts.delay_ms > 0 else JobState.QUEUED,
            'priority': opts.priority,
            'max_attempts': opts.attempts,
            'backoff': opts.backoff,
            'ttl_ms': opts.ttl_ms,
            'remove_on_complete': opts.remove_on_complete,
            'dedup_key': opts.dedup_key,
            'run_at': now + timedelta(milliseconds=opts.delay_ms),
            'created_at': now,
            'updated_at': now,
        }

    async def save(self, record: JobRecord) -> QueueResult[str]:
        """
        Insert the job, or return the existing id when its dedup key is taken.

        Returns Err(QueueOperationError) on schema or database failure.
        """
        init_r = await self._ensure_initialized()
        if is_err(init_r):
            return init_r

        dedup_key = record.options.dedup_key
        stmt = (
            pg_insert(JobModel)
            .values(**self._row_values(record, str(uuid.uuid4())))
            .on_conflict_do_nothing(index_elements=[JobModel.dedup_key])
            .returning(JobModel.id)
        )

        try:
            async with self.session_factory() as session:
                inserted = (await session.execute(stmt)).scalar_one_or_none()
                if inserted is None:
                    existing = (
                        await session.execute(
                            select(JobModel.id).where(JobModel.dedup_key == dedup_key)
                        )
                    ).scalar_one()
                    await session.commit()
                    logger.info(
                        'Job with dedup key %s already enqueued as %s', dedup_key, existing
                    )
                    return Ok(existing)
                await session.commit()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error('Failed to enqueue %s job: %s', record.job_type, exc)
            return Err(QueueOperationError(
                code=QueueErrorCode.ENQUEUE_FAILED,
                message=f'Failed to enqueue {record.job_type!r} job: {exc}',
                retryable=is_retryable_connection_error(exc),
                exception=exc,
            ))

        # The insert trigger notifies chronokey_job_new for ready jobs
        return Ok(inserted)

    async def close(self) -> QueueResult[None]:
        try:
            await self.async_engine.dispose()
        except Exception as exc:
            return Err(QueueOperationError(
                code=QueueErrorCode.CLOSE_FAILED,
                message=f'Failed to dispose queue engine: {exc}',
                retryable=False,
                exception=exc,
            ))
        return Ok(None)
