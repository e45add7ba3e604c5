"""
Async SQLAlchemy engine + session factory for TiDB (MySQL-protocol).

TiDB is wire-compatible with MySQL 5.7, so we use the aiomysql driver.
The engine is created once at startup and reused across all requests.
"""
import logging

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from contextfeed.config import settings

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    pass


DEFAULT_POOL_OPTIONS = {"pool_pre_ping": True, "pool_size": 20, "max_overflow": 10}


def make_engine(url: str | None = None, pool_options: dict | None = None) -> AsyncEngine:
    if pool_options is None:
        pool_options = DEFAULT_POOL_OPTIONS
    return create_async_engine(url or settings.tidb_url, echo=False, **pool_options)


def make_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


async def init_db(engine: AsyncEngine) -> None:
    """Create all tables if they don't exist (idempotent)."""
    # Import registers the mapped classes on Base.metadata
    from contextfeed import models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables initialised")
