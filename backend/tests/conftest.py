"""pytest fixtures for glyphforge backend tests.

Provides:
- postgres_container: Session-scoped testcontainer PostgreSQL instance
  (only when TEST_USE_CONTAINERS=1, migrations applied with alembic)
- utc_timezone: Autouse fixture enforcing UTC timezone
- session_factory: Function-scoped session factory on a fresh database
  (SQLite file by default, the PostgreSQL container otherwise)
- uow_factory: Function-scoped UnitOfWork factory
- redis_client / clock / queue / cache: fakeredis-backed queue and cache
- broken_cache: cache whose Redis calls always fail
- settings / make_user: test settings and a user factory
"""

import os
import subprocess
import sys
from pathlib import Path
from typing import AsyncGenerator

import fakeredis
import pytest
import pytest_asyncio
from redis.exceptions import ConnectionError as RedisConnectionError
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlmodel import SQLModel

from glyphforge import models  # noqa: F401  (registers tables on SQLModel.metadata)
from glyphforge.core.config import Settings
from glyphforge.core.database import setup_db_session
from glyphforge.models.user import User
from glyphforge.queue.durable_queue import DurableQueue, JobOptions
from glyphforge.services.cache import ResultsCache
from glyphforge.uow import create_uow_factory

BACKEND_DIR = Path(__file__).resolve().parent.parent
USE_CONTAINERS = os.environ.get("TEST_USE_CONTAINERS") == "1"

TEST_SVG = (
    '<svg xmlns="http://www.w3.org/2000/svg" viewBox="0 0 256 256">'
    '<circle cx="128" cy="128" r="64" fill="#000"/></svg>'
)


class FakeClock:
    """Controllable time source for queue backoff and lease tests."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class BrokenRedis:
    """Redis client stand-in whose every call fails with a connection error."""

    async def get(self, key):
        raise RedisConnectionError("Connection refused")

    async def set(self, key, value, ex=None):
        raise RedisConnectionError("Connection refused")

    async def delete(self, *keys):
        raise RedisConnectionError("Connection refused")


@pytest.fixture(scope="session")
def postgres_container():
    """Provide session-scoped PostgreSQL container with migrations applied.

    Container starts once per test session and is reused across all tests.
    Migrations are applied using subprocess to avoid asyncio event loop conflicts.
    """
    if not USE_CONTAINERS:
        yield None
        return

    from testcontainers.postgres import PostgresContainer

    with PostgresContainer(
        image="postgres:17",
        username="test",
        password="test",
        dbname="test_glyphforge",
    ) as container:
        db_url = container.get_connection_url(driver="psycopg")

        env = os.environ.copy()
        env["DATABASE_URL"] = db_url

        subprocess.run(
            [sys.executable, "-m", "alembic", "upgrade", "head"],
            check=True,
            capture_output=True,
            text=True,
            env=env,
            cwd=BACKEND_DIR,
        )

        yield container


@pytest.fixture(scope="session", autouse=True)
def utc_timezone():
    """Enforce UTC timezone for all tests."""
    os.environ["TZ"] = "UTC"
    yield


@pytest_asyncio.fixture(scope="function")
async def session_factory(
    postgres_container, tmp_path
) -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """Provide a session factory bound to an empty database."""
    if postgres_container is not None:
        db_url = postgres_container.get_connection_url(driver="psycopg")
    else:
        db_url = f"sqlite+aiosqlite:///{tmp_path / 'test.db'}"

    factory = setup_db_session(db_url, pool_size=5)
    engine = factory.kw["bind"]

    if postgres_container is None:
        async with engine.begin() as conn:
            await conn.run_sync(SQLModel.metadata.create_all)

    yield factory

    if postgres_container is not None:
        # Order matters: delete from dependent tables first
        async with factory() as session:
            await session.execute(text("DELETE FROM generation_jobs"))
            await session.execute(text("DELETE FROM svg_generations"))
            await session.execute(text("DELETE FROM users"))
            await session.commit()

    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Provide a plain session for direct repository tests."""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def uow_factory(session_factory):
    """Provide function-scoped UnitOfWork factory."""
    return create_uow_factory(session_factory)


@pytest_asyncio.fixture
async def redis_client():
    client = fakeredis.FakeAsyncRedis(decode_responses=True)
    yield client
    await client.flushall()
    await client.aclose()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def queue(redis_client, clock) -> DurableQueue:
    return DurableQueue(
        redis_client,
        "test-generation",
        JobOptions(attempts=3, backoff_seconds=5.0, lock_seconds=60.0, max_stalled_count=1),
        clock=clock,
    )


@pytest.fixture
def cache(redis_client) -> ResultsCache:
    return ResultsCache(redis_client, prefix="test:", default_ttl_seconds=60)


@pytest.fixture
def broken_cache() -> ResultsCache:
    return ResultsCache(BrokenRedis(), prefix="test:")  # type: ignore[arg-type]


@pytest.fixture
def settings() -> Settings:
    return Settings(  # type: ignore[call-arg]
        _env_file=None,
        APP_ENV="testing",
        REPLICATE_API_TOKEN="r8_test_token",
        WORKER_CONCURRENCY=2,
        WORKER_BLOCK_SECONDS=0,
        STALLED_CHECK_INTERVAL_SECONDS=30,
        PUBLIC_PAGE_SIZE=10,
    )


@pytest.fixture
def make_user(uow_factory):
    """Return an async factory creating users with a given balance."""

    async def _make_user(credits: int = 5, email: str | None = None) -> User:
        user = User(email=email or f"user-{os.urandom(4).hex()}@example.com", credits=credits)
        async with await uow_factory() as uow:
            await uow.users.add(user)
        return user

    return _make_user


@pytest.fixture
def fake_generate():
    """Generation engine stand-in that records calls and returns a fixed SVG."""
    calls: list[dict] = []

    async def _generate(**kwargs) -> str:
        calls.append(kwargs)
        return TEST_SVG

    _generate.calls = calls  # type: ignore[attr-defined]
    return _generate


@pytest.fixture
def svg_document() -> str:
    return TEST_SVG
