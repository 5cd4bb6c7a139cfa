"""
Async SQLAlchemy engine and sessions for the marketsync store.
PostgreSQL via asyncpg in production; SQLite via aiosqlite for local runs and tests.
Sessions use expire_on_commit=False: job handlers and workers keep reading
rows after committing, outside any lazy-load context.
"""
import logging
from typing import AsyncGenerator
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import DeclarativeBase

logger = logging.getLogger(__name__)

_engine = None
_async_session_factory = None


class Base(DeclarativeBase):
    pass


def engine_options(settings) -> dict:
    """create_async_engine keyword arguments for the configured database."""
    url = make_url(settings.database_url)
    options = {"echo": settings.app_env == "development"}
    if url.get_backend_name() == "sqlite":
        # aiosqlite: single-file store, no server-side pool to size
        options["connect_args"] = {"timeout": 30}
        return options
    options.update(
        pool_size=settings.database_pool_size,
        max_overflow=settings.database_max_overflow,
        pool_pre_ping=True,
    )
    return options


def _get_engine():
    global _engine
    if _engine is None:
        from marketsync.config import get_settings
        settings = get_settings()
        _engine = create_async_engine(settings.database_url, **engine_options(settings))
        logger.info("Database engine created (%s)", make_url(settings.database_url).get_backend_name())
    return _engine


def _get_session_factory():
    global _async_session_factory
    if _async_session_factory is None:
        _async_session_factory = async_sessionmaker(
            _get_engine(), class_=AsyncSession, expire_on_commit=False
        )
    return _async_session_factory


def async_session_factory() -> AsyncSession:
    """Session for job handlers and workers (outside a request)."""
    return _get_session_factory()()


async def dispose_engine() -> None:
    """Close pooled connections on shutdown. The next session recreates the engine."""
    global _engine, _async_session_factory
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _async_session_factory = None


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency that yields an async database session."""
    session_factory = _get_session_factory()
    async with session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception as e:
            logger.debug("Database session error, rolling back: %s", str(e))
            await session.rollback()
            raise
        finally:
            await session.close()
