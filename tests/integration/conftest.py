"""Integration test fixtures: a real Redis and a real PostgreSQL."""

from __future__ import annotations

import os
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from redis.asyncio import Redis
from redis.exceptions import RedisError
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine

from chronokey.core.models.app import AppConfig
from chronokey.core.models.queue import PostgresConfig
from chronokey.core.models.store import RedisConfig
from chronokey.core.queue.postgres import PostgresJobQueue
from chronokey.core.types.result import is_err


DB_URL = (
    f'postgresql+psycopg://postgres:{os.environ.get("DB_PASSWORD", "postgres")}'
    '@localhost:5432/chronokey'
)
# A dedicated logical database so FLUSHDB never touches anything else
REDIS_URL = os.environ.get('CHRONOKEY_TEST_REDIS_URL', 'redis://localhost:6379/15')
KEY_PREFIX = 'chronokey_it'


@pytest.fixture(scope='session')
def db_url() -> str:
    return DB_URL


@pytest_asyncio.fixture
async def redis_client() -> AsyncGenerator[Redis, None]:
    """Flushed Redis connection; skips when no server is reachable."""
    client = Redis.from_url(REDIS_URL, decode_responses=True)
    try:
        await client.ping()
    except (RedisError, OSError) as e:
        await client.aclose()
        pytest.skip(f'Redis not reachable at {REDIS_URL}: {e}')
    await client.flushdb()
    yield client
    await client.flushdb()
    await client.aclose()


@pytest_asyncio.fixture
async def engine(db_url: str) -> AsyncGenerator[AsyncEngine, None]:
    eng = create_async_engine(db_url, echo=False)
    yield eng
    await eng.dispose()


@pytest_asyncio.fixture
async def job_queue(db_url: str) -> AsyncGenerator[PostgresJobQueue, None]:
    """PostgresJobQueue with schema initialized and the jobs table emptied."""
    queue = PostgresJobQueue(PostgresConfig(database_url=db_url))
    start_r = await queue.start()
    if is_err(start_r):
        await queue.close()
        pytest.skip(f'PostgreSQL not reachable: {start_r.err_value.message}')
    async with queue.session_factory() as session:
        await session.execute(text('TRUNCATE chronokey_jobs'))
        await session.commit()
    yield queue
    await queue.close()


@pytest_asyncio.fixture
async def session(engine: AsyncEngine) -> AsyncGenerator[AsyncSession, None]:
    """Database session for direct queries."""
    async with AsyncSession(engine, expire_on_commit=False) as sess:
        yield sess


@pytest.fixture
def app_config(db_url: str) -> AppConfig:
    return AppConfig(
        store=RedisConfig(redis_url=REDIS_URL, key_prefix=KEY_PREFIX),
        queue=PostgresConfig(database_url=db_url),
        listener_backoff_initial_s=0.05,
        listener_backoff_max_s=0.5,
    )
