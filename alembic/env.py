"""Alembic environment for the Buildfarm schema.

The database URL comes from BuildfarmConfig (TOML file plus
``BUILDFARM_DATABASE__URL``), unless one is passed on the command line:

    alembic -x database_url=sqlite+aiosqlite:///buildfarm.db upgrade head

Online migrations run through the async engine, on PostgreSQL (asyncpg)
in production and SQLite (aiosqlite) for local development.
"""

from __future__ import annotations

import asyncio
from logging.config import fileConfig

from alembic import context
from sqlalchemy import pool
from sqlalchemy.engine import Connection
from sqlalchemy.ext.asyncio import create_async_engine

from buildfarm.config import load_config
from buildfarm.database.models import Base

alembic_config = context.config

if alembic_config.config_file_name is not None:
    fileConfig(alembic_config.config_file_name)

target_metadata = Base.metadata


def database_url() -> str:
    """URL to migrate: ``-x database_url=...`` first, then BuildfarmConfig."""
    override = context.get_x_argument(as_dictionary=True).get("database_url")
    if override:
        return override
    return load_config().database.url


def configure_context(connection: Connection) -> None:
    context.configure(
        connection=connection,
        target_metadata=target_metadata,
        compare_type=True,
        # SQLite cannot ALTER most constraints in place.
        render_as_batch=connection.dialect.name == "sqlite",
    )
    with context.begin_transaction():
        context.run_migrations()


async def migrate_online(url: str) -> None:
    engine = create_async_engine(url, poolclass=pool.NullPool)
    try:
        async with engine.connect() as connection:
            await connection.run_sync(configure_context)
    finally:
        await engine.dispose()


def migrate_offline(url: str) -> None:
    """Emit the migration SQL instead of applying it."""
    context.configure(
        url=url,
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )
    with context.begin_transaction():
        context.run_migrations()


if context.is_offline_mode():
    migrate_offline(database_url())
else:
    asyncio.run(migrate_online(database_url()))
