"""
SQL engine lifecycle for SqlCallStore.

One engine per process, bound from ``DatabaseConfig`` by ``init_db``. Plain
URLs from settings.yaml are mapped onto their async drivers:

  postgresql:// / postgres://   → postgresql+asyncpg://
  mysql:// / mysql+pymysql://   → mysql+aiomysql://
  sqlite://                     → sqlite+aiosqlite://

SqlCallStore opens one ``get_session()`` scope per operation; the scope
commits on exit and rolls back if the body raises.
"""
from __future__ import annotations

import structlog
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from sqlalchemy.ext.asyncio import (
    create_async_engine, AsyncEngine, AsyncSession, async_sessionmaker,
)

from config.settings import DatabaseConfig, get_settings
from database.models import Base

logger = structlog.get_logger()

ASYNC_DRIVERS = (
    ("postgresql://", "postgresql+asyncpg://"),
    ("postgres://", "postgresql+asyncpg://"),
    ("mysql+pymysql://", "mysql+aiomysql://"),
    ("mysql://", "mysql+aiomysql://"),
    ("sqlite://", "sqlite+aiosqlite://"),
)

_engine: Optional[AsyncEngine] = None
_sessions: Optional[async_sessionmaker[AsyncSession]] = None


def _to_async_url(db_url: str) -> str:
    for prefix, driver in ASYNC_DRIVERS:
        if db_url.startswith(prefix):
            return driver + db_url[len(prefix):]
    return db_url


def engine_options(config: DatabaseConfig, url: str) -> dict:
    """Keyword arguments for ``create_async_engine``. SQLite gets no pool tuning."""
    options: dict = {"echo": config.echo}
    if url.startswith("sqlite"):
        return options
    options.update(
        pool_size=config.pool_size,
        max_overflow=config.max_overflow,
        pool_recycle=config.pool_recycle_s,
        pool_pre_ping=True,
    )
    return options


def _bind(config: DatabaseConfig) -> AsyncEngine:
    global _engine, _sessions
    if _engine is None:
        url = _to_async_url(config.url)
        _engine = create_async_engine(url, **engine_options(config, url))
        _sessions = async_sessionmaker(_engine, class_=AsyncSession, expire_on_commit=False)
        logger.info("database_engine_created",
                    dialect=_engine.dialect.name,
                    url=_engine.url.render_as_string(hide_password=True))
    return _engine


def get_engine() -> AsyncEngine:
    """The bound engine; binds from settings.yaml if ``init_db`` was never called."""
    return _bind(get_settings().database)


@asynccontextmanager
async def get_session() -> AsyncGenerator[AsyncSession, None]:
    if _sessions is None:
        get_engine()
    async with _sessions() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def init_db(config: Optional[DatabaseConfig] = None) -> AsyncEngine:
    """Bind the engine and create the call tables if they do not exist."""
    engine = _bind(config or get_settings().database)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("database_initialized",
                dialect=engine.dialect.name,
                tables=sorted(Base.metadata.tables))
    return engine


async def close_db() -> None:
    global _engine, _sessions
    if _engine is None:
        return
    await _engine.dispose()
    _engine = None
    _sessions = None
    logger.info("database_closed")
