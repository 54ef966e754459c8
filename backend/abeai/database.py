"""Database connection and session management for the key-value store."""

import logging
from typing import Optional

from sqlalchemy import event
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.orm import declarative_base
from sqlalchemy.pool import StaticPool

from abeai.config import get_settings

logger = logging.getLogger(__name__)

settings = get_settings()


def build_engine(database_url: str, echo: bool = False) -> AsyncEngine:
    """
    Create the async engine for the key-value store.

    SQLite needs extra care because chat requests for the same user can
    commit concurrently:
    - an in-memory database exists per connection, so every session must
      share one connection or it will not see the table
    - a file database uses WAL and a busy timeout so readers don't block the
      conditional writes and a briefly locked file is waited on
    """
    url = make_url(database_url)
    if url.get_backend_name() != "sqlite":
        return create_async_engine(database_url, echo=echo, future=True)

    if url.database in (None, "", ":memory:"):
        return create_async_engine(
            database_url,
            echo=echo,
            future=True,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )

    engine = create_async_engine(database_url, echo=echo, future=True)
    busy_timeout_ms = settings.sqlite_busy_timeout_ms

    @event.listens_for(engine.sync_engine, "connect")
    def _configure_sqlite(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute(f"PRAGMA busy_timeout={int(busy_timeout_ms)}")
        cursor.close()

    return engine


# Create async engine
engine = build_engine(settings.database_url, echo=settings.debug)

# Create async session factory
async_session_maker = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)

# Base class for ORM models
Base = declarative_base()


async def get_db() -> AsyncSession:
    """Dependency for getting a session; the request's writes commit on success."""
    async with async_session_maker() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


async def init_db(target: Optional[AsyncEngine] = None):
    """Create the key-value table if it doesn't exist yet."""
    # Register models on the metadata before create_all
    from abeai import models  # noqa: F401

    target = target or engine
    async with target.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info(f"Key-value tables ready: {sorted(Base.metadata.tables)}")


async def close_db():
    """Close database connections."""
    await engine.dispose()
