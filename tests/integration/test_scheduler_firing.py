"""End-to-end firing through a real Redis keyspace and a real job table."""

from __future__ import annotations

import asyncio
from typing import AsyncGenerator, Awaitable, Callable

import pytest
import pytest_asyncio
from redis.asyncio import Redis
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from chronokey.core.models.app import AppConfig
from chronokey.core.models.schedule import epoch_ms
from chronokey.core.queue.models import JobModel
from chronokey.core.queue.postgres import PostgresJobQueue
from chronokey.core.scheduler.service import Scheduler
from chronokey.core.types.result import is_ok


pytestmark = pytest.mark.integration

DEFINITION = {'type': 'email', 'data': {'to': 'ops@example.com'}, 'priority': 'high'}
WAIT_TIMEOUT = 10.0


@pytest_asyncio.fixture
async def scheduler(
    app_config: AppConfig, redis_client: Redis, job_queue: PostgresJobQueue
) -> AsyncGenerator[Scheduler, None]:
    sched = Scheduler(app_config, redis_client=redis_client, queue=job_queue)
    await sched.start()
    yield sched
    await sched.stop()


async def _jobs(session: AsyncSession) -> list[JobModel]:
    session.expire_all()
    result = await session.execute(select(JobModel).order_by(JobModel.created_at))
    return list(result.scalars().all())


async def _wait_for(
    check: Callable[[], Awaitable[bool]], timeout: float = WAIT_TIMEOUT
) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        if await check():
            return
        if loop.time() > deadline:
            raise AssertionError('condition not met in time')
        await asyncio.sleep(0.1)


@pytest.mark.asyncio
async def test_schedule_now_inserts_job(scheduler: Scheduler, session: AsyncSession) -> None:
    result = await scheduler.schedule_now(DEFINITION)

    assert is_ok(result)
    jobs = await _jobs(session)
    assert len(jobs) == 1
    assert jobs[0].id == result.ok_value.id
    assert jobs[0].schedule_tag == 'NOW'
    assert jobs[0].priority == -10
    assert jobs[0].dedup_key is None


@pytest.mark.asyncio
async def test_one_shot_fires_once(
    scheduler: Scheduler, redis_client: Redis, session: AsyncSession
) -> None:
    result = await scheduler.schedule_at(300, DEFINITION, schedule_id='once')
    assert is_ok(result)

    async def fired() -> bool:
        return len(await _jobs(session)) == 1

    await _wait_for(fired)
    job = (await _jobs(session))[0]
    assert job.schedule_tag == 'ONCE'
    assert job.data == {'schedule': 'ONCE', 'to': 'ops@example.com'}
    assert job.dedup_key == f'once:{epoch_ms(result.ok_value.fire_at)}'

    # payload released once the occurrence is enqueued
    async def released() -> bool:
        return await redis_client.exists('chronokey_it:payload:once') == 0

    await _wait_for(released)
    await asyncio.sleep(0.5)
    assert len(await _jobs(session)) == 1


@pytest.mark.asyncio
async def test_recurring_rearms(
    scheduler: Scheduler, redis_client: Redis, session: AsyncSession
) -> None:
    result = await scheduler.schedule_every('1 second', DEFINITION, schedule_id='tick')
    assert is_ok(result)

    async def fired_twice() -> bool:
        return len(await _jobs(session)) >= 2

    await _wait_for(fired_twice)
    jobs = await _jobs(session)
    assert {job.schedule_tag for job in jobs} == {'RECURRING:every 1 second'}
    assert len({job.dedup_key for job in jobs}) == len(jobs)
    assert await redis_client.exists('chronokey_it:marker:tick') == 1

    cancel_r = await scheduler.cancel('tick')
    assert is_ok(cancel_r)
    assert cancel_r.ok_value is True


@pytest.mark.asyncio
async def test_cancelled_schedule_never_fires(
    scheduler: Scheduler, session: AsyncSession
) -> None:
    await scheduler.schedule_at(500, DEFINITION, schedule_id='doomed')

    cancel_r = await scheduler.cancel('doomed')
    await asyncio.sleep(1.0)

    assert is_ok(cancel_r) and cancel_r.ok_value is True
    assert await _jobs(session) == []


@pytest.mark.asyncio
async def test_two_instances_enqueue_occurrence_once(
    app_config: AppConfig,
    redis_client: Redis,
    job_queue: PostgresJobQueue,
    session: AsyncSession,
) -> None:
    """Both instances receive the expiration; the claim lets only one enqueue."""
    other_client = Redis.from_url(app_config.store.redis_url, decode_responses=True)
    first = Scheduler(app_config, redis_client=redis_client, queue=job_queue)
    second = Scheduler(app_config, redis_client=other_client, queue=job_queue)
    await first.start()
    await second.start()
    try:
        await first.schedule_at(300, DEFINITION, schedule_id='shared')

        async def fired() -> bool:
            return len(await _jobs(session)) >= 1

        await _wait_for(fired)
        await asyncio.sleep(0.5)
        assert len(await _jobs(session)) == 1
    finally:
        await first.stop()
        await second.stop()
        await other_client.aclose()
