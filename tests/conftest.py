"""
Test configuration and fixtures.
Uses file-backed SQLite so separate sessions see each other's commits.
The marketplace is replaced by a scripted fake client; locks run in-process.
"""
import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("LOCK_BACKEND", "local")

import pytest
from unittest.mock import AsyncMock, patch
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.ext.compiler import compiles
from sqlalchemy.dialects.postgresql import JSONB

from marketsync.config import Settings
from marketsync.database import Base
import marketsync.models  # noqa: F401
from marketsync.models.connection import Connection
from marketsync.services.job_queue import JobQueue
from marketsync.utils.locks import ConnectionLockManager, LocalLockBackend

from fakes import FakeMarketplaceClient, no_sleep


# Register JSONB as JSON for SQLite compatibility in tests
@compiles(JSONB, "sqlite")
def _compile_jsonb_sqlite(type_, compiler, **kw):
    return "JSON"


@pytest.fixture
async def session_factory(tmp_path):
    """SQLite file database shared by every session the code under test opens."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'marketsync.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def settings():
    return Settings(
        database_url="sqlite+aiosqlite:///:memory:",
        app_env="test",
        lock_backend="local",
        marketplace_write_enabled=True,
        sync_page_size=50,
        scheduler_enabled=False,
    )


@pytest.fixture
def lock_manager():
    return ConnectionLockManager(LocalLockBackend(), ttl_seconds=60)


@pytest.fixture
def fake_client():
    return FakeMarketplaceClient()


@pytest.fixture
def queue(session_factory, lock_manager, fake_client, settings):
    """Job queue wired to the test database, in-process locks and the fake client."""
    return JobQueue(
        session_factory=session_factory,
        lock_manager=lock_manager,
        client_factory=lambda connection: fake_client,
        settings=settings,
        sleep=no_sleep,
    )


@pytest.fixture
async def connection(session_factory):
    async with session_factory() as session:
        conn = Connection(
            name="Test store",
            marketplace="trendyol",
            base_url="https://apigw.example.test",
            seller_id="123456",
            integration_name="marketsync-test",
        )
        session.add(conn)
        await session.commit()
        return conn


@pytest.fixture
def mock_redis():
    """Mock for async Redis - prevents real Redis calls in tests."""
    with patch("marketsync.utils.dedup.get_redis") as mock:
        redis_mock = AsyncMock()
        redis_mock.set = AsyncMock(return_value=True)
        redis_mock.ping = AsyncMock(return_value=True)
        mock.return_value = redis_mock
        yield redis_mock
