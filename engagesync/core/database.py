from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine, async_sessionmaker, AsyncSession
from sqlalchemy.orm import declarative_base
from typing import AsyncGenerator

from engagesync.core.config import get_settings

settings = get_settings()


def make_engine(url: str, echo: bool = False) -> AsyncEngine:
    """
    Create an async SQLite engine tuned for many short-lived sessions.

    Sync invocations, the continuation scheduler and the API all open their
    own sessions, so writers wait on the file lock instead of failing fast.
    """
    async_engine = create_async_engine(url, echo=echo)

    @event.listens_for(async_engine.sync_engine, "connect")
    def _set_sqlite_pragmas(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA busy_timeout=10000")
        if ":memory:" not in url:
            cursor.execute("PRAGMA journal_mode=WAL")
        cursor.close()

    return async_engine


def make_session_maker(async_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory shared by the API, sync services and scheduler jobs."""
    return async_sessionmaker(
        async_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


engine = make_engine(f"sqlite+aiosqlite:///{settings.db_path}", echo=settings.debug)
async_session_maker = make_session_maker(engine)

# Create declarative base
Base = declarative_base()


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Dependency for FastAPI to get database session."""
    async with async_session_maker() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def init_db(async_engine: AsyncEngine | None = None) -> None:
    """Initialize database - create all tables."""
    async with (async_engine or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
