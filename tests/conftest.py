"""Test fixtures — a fresh SQLite database and a fake Redis per test.

1. Each test gets its own database file under tmp_path, so sessions opened
   by different coroutines (concurrent joins, workers) share real state.
2. Redis is fakeredis, installed as the process-wide client so the API's
   cache, queue and rate limiter all use it.
3. Service-level tests drive time through a mutable clock; API tests use
   the real clock.
"""

import os

# Must be set before spontaneous.config is imported
os.environ.setdefault("SPONTANEOUS_DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("SPONTANEOUS_RUN_WORKERS", "false")

import uuid
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio
from fakeredis.aioredis import FakeRedis
from httpx import ASGITransport, AsyncClient

from spontaneous.auth.jwt import create_access_token
from spontaneous.cache.active_listing import ActiveListingCache
from spontaneous.cache.connection import set_redis
from spontaneous.db.engine import build_engine, build_session_factory, get_db
from spontaneous.db.engine import engine as app_engine
from spontaneous.db.models import Base
from spontaneous.main import app
from spontaneous.queue.notifications import NotificationQueue
from spontaneous.services.broadcast_service import BroadcastService


class MutableClock:
    """Callable clock the tests can move forward."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture()
def clock():
    return MutableClock(datetime(2026, 3, 14, 12, 0, tzinfo=timezone.utc))


@pytest_asyncio.fixture()
async def db_engine(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture()
def session_factory(db_engine):
    return build_session_factory(db_engine)


@pytest_asyncio.fixture()
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture()
async def redis():
    client = FakeRedis(decode_responses=True)
    set_redis(client)
    try:
        yield client
    finally:
        set_redis(None)
        await client.flushall()
        await client.aclose()


@pytest.fixture()
def cache(redis):
    return ActiveListingCache(redis)


@pytest.fixture()
def queue(redis):
    return NotificationQueue(redis)


@pytest.fixture()
def service(db_session, cache, queue, clock):
    """BroadcastService on the test database, with cache, queue and clock."""
    return BroadcastService(db_session, cache=cache, queue=queue, clock=clock)


@pytest.fixture()
def make_service(session_factory, cache, queue, clock):
    """Build services on their own sessions (for concurrency tests).

    Returns (service, session) pairs; the caller closes the sessions.
    """

    def _make(**kwargs):
        session = session_factory()
        kwargs.setdefault("cache", cache)
        kwargs.setdefault("queue", queue)
        kwargs.setdefault("clock", clock)
        return BroadcastService(session, **kwargs), session

    return _make


@pytest.fixture()
def user_ids():
    """Three distinct user ids: creator, alice, bob."""
    return str(uuid.uuid4()), str(uuid.uuid4()), str(uuid.uuid4())


@pytest.fixture()
def auth_headers():
    """Build an Authorization header for a user id."""

    def _headers(user_id: str) -> dict:
        return {"Authorization": f"Bearer {create_access_token(user_id)}"}

    return _headers


@pytest_asyncio.fixture()
async def client(session_factory, redis):
    """HTTP client with get_db pointed at the per-test database."""

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
    # /health talks to the app engine directly; its pool is per event loop
    await app_engine.dispose()
