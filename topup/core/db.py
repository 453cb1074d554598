# topup/core/db.py
"""
Async database configuration and session management.

- Lazy engine creation (no connections at import time).
- SQLite (aiosqlite) fallback when DATABASE_URL is empty or invalid.
- Postgres URLs are normalized to the asyncpg driver.
- Utilities: get_async_db(), init_db_async(), close_db_async(),
  health_check_db_async().
"""

from __future__ import annotations

import asyncio
import time as _time
from typing import AsyncIterator, Optional

from sqlalchemy import text
from sqlalchemy.engine.url import make_url
from sqlalchemy.exc import ArgumentError, SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from topup.core.config import settings
from topup.core.logging import get_logger

logger = get_logger(__name__)

_FALLBACK_URL = "sqlite+aiosqlite:///./topup.db"

__all__ = [
    "get_async_db",
    "get_sessionmaker",
    "init_db_async",
    "close_db_async",
    "health_check_db_async",
]

# -----------------------------------------------------------------------------
# Вспомогательные: нормализация URL
# -----------------------------------------------------------------------------
def _normalize_pg_to_asyncpg(url: str) -> str:
    if url.startswith("postgres://"):
        url = url.replace("postgres://", "postgresql://", 1)
    if url.startswith("postgresql+"):
        return "postgresql+asyncpg://" + url.split("://", 1)[1]
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)
    return url


def _resolve_async_url() -> str:
    raw = (settings.DATABASE_URL or "").strip()
    if raw:
        try:
            url = _normalize_pg_to_asyncpg(raw)
            make_url(url)
            return url
        except ArgumentError:
            logger.warning("Invalid DATABASE_URL; falling back to local sqlite", url=raw)
    return _FALLBACK_URL


# -----------------------------------------------------------------------------
# Engine / sessionmaker (ленивое создание)
# -----------------------------------------------------------------------------
_async_engine: Optional[AsyncEngine] = None
_async_sessionmaker: Optional[async_sessionmaker[AsyncSession]] = None


def _get_async_engine() -> AsyncEngine:
    global _async_engine, _async_sessionmaker
    if _async_engine is None:
        url = _resolve_async_url()
        opts: dict = {"echo": settings.DATABASE_ECHO, "future": True}
        if not url.startswith("sqlite"):
            opts["pool_pre_ping"] = True
        _async_engine = create_async_engine(url, **opts)
        _async_sessionmaker = async_sessionmaker(
            bind=_async_engine, class_=AsyncSession, expire_on_commit=False
        )
        logger.info("Async engine created", dialect=_async_engine.dialect.name)
    return _async_engine


def get_sessionmaker() -> async_sessionmaker[AsyncSession]:
    _get_async_engine()
    assert _async_sessionmaker is not None
    return _async_sessionmaker


async def get_async_db() -> AsyncIterator[AsyncSession]:
    """FastAPI dependency: one session per request, rolled back on error."""
    session = get_sessionmaker()()
    try:
        yield session
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()


async def init_db_async(drop_all: bool = False) -> None:
    # импорт моделей регистрирует таблицы в metadata
    from topup.models import Base

    engine = _get_async_engine()
    async with engine.begin() as conn:
        if drop_all:
            await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database schema ensured", drop_all=drop_all)


async def close_db_async() -> None:
    global _async_engine, _async_sessionmaker
    if _async_engine is not None:
        await _async_engine.dispose()
        logger.info("Async engine disposed")
    _async_engine = None
    _async_sessionmaker = None


async def health_check_db_async(timeout_seconds: int = 2) -> dict:
    started = _time.perf_counter()
    try:
        engine = _get_async_engine()

        async def _ping() -> None:
            async with engine.connect() as conn:
                await conn.execute(text("SELECT 1"))

        await asyncio.wait_for(_ping(), timeout=timeout_seconds)
        return {"ok": True, "dialect": engine.dialect.name, "latency_ms": round((_time.perf_counter() - started) * 1000, 2)}
    except (SQLAlchemyError, OSError, asyncio.TimeoutError) as e:
        logger.warning("Database health check failed", error=str(e))
        return {"ok": False, "error": str(e)}
