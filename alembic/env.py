from __future__ import annotations

import asyncio
import logging
import os
from logging.config import fileConfig
from typing import Any

from sqlalchemy import pool
from sqlalchemy.engine import Connection
from sqlalchemy.ext.asyncio import create_async_engine

from alembic import context

# =============================================================================
# Alembic config и логирование
# =============================================================================
config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name, disable_existing_loggers=False)

logger = logging.getLogger("alembic.env")


# =============================================================================
# Определение URL БД
# =============================================================================
def get_database_url() -> str:
    """
    Приоритет:
      1) ALEMBIC_DATABASE_URL
      2) DATABASE_URL
      3) topup.core.config.Settings
    """
    url = (os.getenv("ALEMBIC_DATABASE_URL") or os.getenv("DATABASE_URL") or "").strip()
    if url:
        return url

    from topup.core.config import get_settings

    return get_settings().DATABASE_URL


DATABASE_URL = get_database_url()

# модели регистрируют таблицы в metadata
from topup.models import Base  # noqa: E402

target_metadata = Base.metadata


def _context_kwargs(**extra: Any) -> dict[str, Any]:
    return {
        "target_metadata": target_metadata,
        "compare_type": True,
        "render_as_batch": DATABASE_URL.startswith("sqlite"),
        **extra,
    }


# =============================================================================
# Offline
# =============================================================================
def run_migrations_offline() -> None:
    context.configure(url=DATABASE_URL, literal_binds=True, **_context_kwargs())
    with context.begin_transaction():
        context.run_migrations()


# =============================================================================
# Online (async engine)
# =============================================================================
def _run_migrations(connection: Connection) -> None:
    context.configure(connection=connection, **_context_kwargs())
    with context.begin_transaction():
        context.run_migrations()


async def run_migrations_online() -> None:
    engine = create_async_engine(DATABASE_URL, poolclass=pool.NullPool)
    try:
        async with engine.connect() as connection:
            logger.info("Connected to database: %s", connection.engine.url.render_as_string(hide_password=True))
            await connection.run_sync(_run_migrations)
    finally:
        await engine.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    asyncio.run(run_migrations_online())
