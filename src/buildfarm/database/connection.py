"""Engine and session construction for the Buildfarm database.

Production runs on PostgreSQL through asyncpg; tests and local
development use a SQLite file through aiosqlite. Every component that
touches the database (coordinator, dispatcher, gateway, lock manager)
receives a ``SessionFactory`` and opens short-lived sessions from it.

Example usage:
    >>> engine = get_engine(DatabaseConfig(url="sqlite+aiosqlite:///buildfarm.db"))
    >>> session_factory = get_session_factory(engine)
    >>> async with session_factory() as session:
    ...     host = await get_host(session, "host-1")
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from buildfarm.config import DatabaseConfig

SessionFactory = Callable[[], AsyncSession]

# Seconds a SQLite writer waits on a competing writer before failing
SQLITE_BUSY_TIMEOUT = 30


def is_sqlite(url: str) -> bool:
    return url.startswith("sqlite")


def get_engine(config: DatabaseConfig) -> AsyncEngine:
    """Build the async engine for ``config.url``.

    SQLite keeps the default pool and waits on locked writes, which is
    what serializes concurrent queue claims there. Server databases get
    the configured pool size and pre-ping stale connections.
    """
    options: dict[str, Any] = {"echo": config.echo}
    if is_sqlite(config.url):
        options["connect_args"] = {"timeout": SQLITE_BUSY_TIMEOUT}
    else:
        options.update(
            pool_size=config.pool_size,
            max_overflow=config.max_overflow,
            pool_pre_ping=True,
        )
    return create_async_engine(config.url, **options)


def get_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    # expire_on_commit=False: rows stay readable after commit without lazy IO
    return async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)
