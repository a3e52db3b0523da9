"""
Pytest configuration and fixtures for pg_jobs tests.
"""

import os
from datetime import UTC, datetime, timedelta
from typing import AsyncGenerator

import asyncpg
import pytest

from pg_jobs import InMemoryJobStore, JobConfig, JobManager, ProcessorRegistry


# Database connection parameters from environment
DB_HOST = os.getenv("PGHOST", "localhost")
DB_PORT = int(os.getenv("PGPORT", "5432"))
DB_USER = os.getenv("PGUSER", "scheduler")
DB_PASSWORD = os.getenv("PGPASSWORD", "scheduler123")
DB_NAME = os.getenv("PGDATABASE", "scheduler_db")

START_TIME = datetime(2025, 1, 6, 9, 0, tzinfo=UTC)


class FrozenClock:
    """Clock that only moves when a test advances it"""

    def __init__(self, start: datetime = START_TIME):
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, seconds: float = 0, **kwargs) -> datetime:
        self.current += timedelta(seconds=seconds, **kwargs)
        return self.current


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def store(clock: FrozenClock) -> InMemoryJobStore:
    return InMemoryJobStore(clock=clock)


@pytest.fixture
def registry() -> ProcessorRegistry:
    return ProcessorRegistry()


@pytest.fixture
def config() -> JobConfig:
    """Small timeouts so scheduler tests finish quickly"""
    return JobConfig(
        max_concurrent_jobs=3,
        default_retries=3,
        retry_delay=5.0,
        job_timeout=0.5,
        poll_interval=0.01,
        shutdown_timeout=0.5,
    )


@pytest.fixture
async def manager(store, registry, config, clock) -> AsyncGenerator[JobManager, None]:
    """
    Manager over the in-memory store, not started.

    Tests drive the scheduler with ``manager.scheduler.tick()``.
    """
    mgr = JobManager(store, registry, config, clock=clock)
    yield mgr
    await mgr.stop()
    if mgr.scheduler.active_tasks:
        await mgr.scheduler.wait_for_idle(timeout=2)


@pytest.fixture
def performance_input():
    return {"type": "performance_analysis", "domain": "example.com"}


@pytest.fixture
def crawl_input():
    return {"type": "website_crawl", "url": "https://example.com", "max_pages": 4}


@pytest.fixture
def serp_input():
    return {"type": "serp_tracking", "domain": "example.com", "keywords": ["seo tools", "rank tracker"]}


@pytest.fixture
async def db_pool() -> AsyncGenerator[asyncpg.Pool, None]:
    """Connection pool for integration tests; skips when PostgreSQL is unreachable."""
    try:
        pool = await asyncpg.create_pool(
            host=DB_HOST,
            port=DB_PORT,
            user=DB_USER,
            password=DB_PASSWORD,
            database=DB_NAME,
            min_size=1,
            max_size=10,
            timeout=5,
        )
    except (OSError, asyncpg.PostgresError, asyncpg.InterfaceError) as e:
        pytest.skip(f"PostgreSQL not available: {e}")
    yield pool
    await pool.close()


@pytest.fixture
async def clean_db(db_pool: asyncpg.Pool) -> AsyncGenerator[asyncpg.Pool, None]:
    """
    Clean database fixture that drops the job tables before and after each test.
    """
    await db_pool.execute("DROP TABLE IF EXISTS job_notifications CASCADE")
    await db_pool.execute("DROP TABLE IF EXISTS background_jobs CASCADE")

    yield db_pool

    await db_pool.execute("DROP TABLE IF EXISTS job_notifications CASCADE")
    await db_pool.execute("DROP TABLE IF EXISTS background_jobs CASCADE")
