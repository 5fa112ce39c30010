# assetflow/db.py
import logging
from typing import Optional

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    create_async_engine,
    AsyncSession,
    async_sessionmaker,
)
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.pool import NullPool

from assetflow.models import Base

logger = logging.getLogger(__name__)


def create_engine(database_url: str, null_pool: bool = False) -> AsyncEngine:
    """
    Build an async engine for `database_url`.
    Celery workers run each job in a fresh event loop (asyncio.run), so they pass
    null_pool=True: pooled asyncpg connections cannot be shared across loops.
    """
    kwargs = {"echo": False, "future": True}
    if null_pool:
        kwargs["poolclass"] = NullPool
    return create_async_engine(database_url, **kwargs)


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)


def dialect_insert(session: AsyncSession, table):
    """INSERT construct with ON CONFLICT support for the session's dialect (postgresql or sqlite)."""
    dialect = session.bind.dialect.name
    if dialect == "postgresql":
        return pg_insert(table)
    if dialect == "sqlite":
        return sqlite_insert(table)
    raise RuntimeError(f"unsupported database dialect for upserts: {dialect}")


async def init_models(engine: AsyncEngine) -> None:
    """
    Development helper that creates tables from ORM metadata.
    In production, prefer Alembic migrations instead of create_all().
    """
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables created/checked")


async def close_engine(engine: Optional[AsyncEngine]) -> None:
    """Call this on shutdown to cleanly dispose connection pool."""
    if engine is None:
        return
    await engine.dispose()
    logger.info("Database engine disposed")
