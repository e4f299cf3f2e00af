"""Async database engine and session management."""

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from tatami.config import get_settings

# Lazy initialization: engine created on first use, not at import time.
# This prevents alembic (which runs synchronously) from crashing when
# other modules import from here at the module level.
_engine = None
_async_session = None


def _engine_kwargs(settings) -> dict:
    kwargs = {"pool_pre_ping": True, "echo": settings.debug}
    if settings.database_url.startswith("postgresql+asyncpg"):
        kwargs.update(
            pool_size=20,
            max_overflow=10,
            connect_args={
                "timeout": settings.db_connect_timeout_seconds,
                "command_timeout": settings.db_command_timeout_seconds,
            },
        )
    elif settings.database_url.startswith("sqlite"):
        kwargs["connect_args"] = {"timeout": settings.db_command_timeout_seconds}
    return kwargs


def _get_engine():
    global _engine
    if _engine is None:
        settings = get_settings()
        _engine = create_async_engine(settings.database_url, **_engine_kwargs(settings))
    return _engine


def _get_session_maker():
    global _async_session
    if _async_session is None:
        _async_session = async_sessionmaker(
            _get_engine(),
            class_=AsyncSession,
            expire_on_commit=False,
        )
    return _async_session


async def get_db() -> AsyncSession:
    """FastAPI dependency: yields an async session."""
    session_maker = _get_session_maker()
    async with session_maker() as session:
        yield session


async def ping(db: AsyncSession) -> None:
    """Round-trip a trivial query. Raises if the database is unreachable."""
    await db.execute(text("SELECT 1"))
