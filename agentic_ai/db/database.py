"""Database connection and session management"""

from typing import AsyncIterator, Optional

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool
from agentic_ai.config import settings
from agentic_ai.db.models import Base


def create_engine_for_url(database_url: str, echo: bool = False) -> AsyncEngine:
    """Create an async engine with driver-appropriate pooling."""
    if database_url.startswith("sqlite"):
        if ":memory:" in database_url:
            # One shared connection so every session sees the same database
            engine = create_async_engine(
                database_url,
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
                echo=echo,
            )
        else:
            engine = create_async_engine(
                database_url,
                connect_args={"check_same_thread": False, "timeout": 30},
                echo=echo,
            )

        # SQLite ignores ON DELETE CASCADE unless foreign keys are switched on
        @event.listens_for(engine.sync_engine, "connect")
        def _enable_sqlite_fks(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        return engine

    # PostgreSQL — long-running process, pooled connections shared across requests
    return create_async_engine(
        database_url,
        echo=echo,
        pool_size=10,
        max_overflow=20,
        pool_pre_ping=True,
    )


def create_session_maker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


# Default engine for hosts that run on the configured database
engine = create_engine_for_url(settings.database_url, echo=settings.debug)
async_session_maker = create_session_maker(engine)


async def get_db() -> AsyncIterator[AsyncSession]:
    """Dependency for getting database sessions"""
    async with async_session_maker() as session:
        try:
            yield session
        finally:
            await session.close()


async def init_db(bind: Optional[AsyncEngine] = None):
    """Create all tables owned by the orchestration core."""
    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def drop_db(bind: Optional[AsyncEngine] = None):
    """Drop all tables (for testing)"""
    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
