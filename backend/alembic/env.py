"""Alembic environment — async migrations for the turnloop schema.

Design Decisions:
    - The URL comes from turnloop Settings (DATABASE_URL, postgresql:// already
      rewritten for asyncpg); alembic.ini only supplies logging config
    - turnloop.models imported for its side effect: tables registered on Base.metadata
"""

import asyncio
from logging.config import fileConfig

from alembic import context
from sqlalchemy import pool
from sqlalchemy.ext.asyncio import create_async_engine

import turnloop.models  # noqa: F401
from turnloop.config import get_settings
from turnloop.db.base import Base

config = context.config
if config.config_file_name is not None:
    fileConfig(config.config_file_name)

DATABASE_URL = get_settings().database_url


def _configure_and_run(**kwargs) -> None:
    context.configure(target_metadata=Base.metadata, compare_type=True, **kwargs)
    with context.begin_transaction():
        context.run_migrations()


async def _run_online() -> None:
    engine = create_async_engine(DATABASE_URL, poolclass=pool.NullPool)
    try:
        async with engine.connect() as connection:
            await connection.run_sync(
                lambda sync_conn: _configure_and_run(connection=sync_conn),
            )
    finally:
        await engine.dispose()


if context.is_offline_mode():
    _configure_and_run(
        url=DATABASE_URL, literal_binds=True, dialect_opts={"paramstyle": "named"},
    )
else:
    asyncio.run(_run_online())
