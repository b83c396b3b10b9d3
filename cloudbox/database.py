"""
Cloudbox database layer - async SQLAlchemy over SQLite
"""
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import declarative_base
from typing import Optional

from .config import get_database_url


def build_engine(url: str) -> AsyncEngine:
    """Create an async engine.

    For SQLite the driver's implicit BEGIN handling is disabled and BEGIN is
    emitted by SQLAlchemy instead, otherwise SAVEPOINTs (begin_nested) do not
    behave.
    """
    if not url.startswith("sqlite"):
        return create_async_engine(url, echo=False)

    engine = create_async_engine(
        url,
        echo=False,
        connect_args={"check_same_thread": False}
    )

    @event.listens_for(engine.sync_engine, "connect")
    def _disable_driver_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _emit_begin(conn):
        conn.exec_driver_sql("BEGIN")

    return engine


def build_session_factory(bind: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(
        bind,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False
    )


engine = build_engine(get_database_url())

AsyncSessionLocal = build_session_factory(engine)

Base = declarative_base()


async def get_db():
    """Dependency for getting database sessions."""
    async with AsyncSessionLocal() as session:
        try:
            yield session
        finally:
            await session.close()


async def init_db(bind: Optional[AsyncEngine] = None):
    """Create all tables."""
    from . import models  # noqa: F401  (registers tables on Base.metadata)

    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db():
    """Close database connections."""
    await engine.dispose()
