"""Command-line sub-applications for Buildfarm.

The root callback in ``buildfarm.main`` loads the configuration once and
stores a ``CliContext`` on the Typer context; every command reads it back
from ``ctx.obj``.
"""

from __future__ import annotations

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from buildfarm.config import BuildfarmConfig
from buildfarm.database.connection import get_engine, get_session_factory
from buildfarm.pipeline.gateway import AgentHostGateway


class CliContext:
    """Configuration plus a lazily created database engine.

    Commands that never touch the database (``agent-revision``) do not
    open a connection pool.
    """

    def __init__(self, config: BuildfarmConfig) -> None:
        self.config = config
        self._engine: AsyncEngine | None = None

    @property
    def engine(self) -> AsyncEngine:
        if self._engine is None:
            self._engine = get_engine(self.config.database)
        return self._engine

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        return get_session_factory(self.engine)

    def gateway(self) -> AgentHostGateway:
        return AgentHostGateway(self.config.gateway, self.config.api.url, self.session_factory)

    async def dispose(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None
