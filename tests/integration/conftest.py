"""Pytest fixtures for integration tests.

Provides async database fixtures backed by a temporary SQLite file
(aiosqlite), seeding helpers for distros, hosts, tasks and distro
queues, and an HTTP client bound to the control-plane app. Production
runs on PostgreSQL; the schema avoids PostgreSQL-only column types so the
same models work on both.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from pathlib import Path
from typing import Any

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from buildfarm.config import BuildfarmConfig, LockConfig
from buildfarm.database.models import Base, Distro, Host, HostStatus, Task, TaskStatus
from buildfarm.database.queries.distro import create_distro
from buildfarm.database.queries.host import create_host, get_host
from buildfarm.database.queries.project_vars import upsert_project_vars
from buildfarm.database.queries.task import create_task, get_task
from buildfarm.database.queries.task_queue import list_queued_task_ids, save_task_queue
from buildfarm.orchestrator.coordinator import TaskCoordinator
from buildfarm.orchestrator.cost import TaskCostUpdater
from buildfarm.orchestrator.global_lock import InMemoryLockManager
from buildfarm.orchestrator.queue_dispatcher import DistroQueueDispatcher
from buildfarm.web.app import create_app


class FakeRevisionSource:
    """Authoritative agent revision that tests can change at will."""

    def __init__(self, revision: str = "r1") -> None:
        self.revision = revision

    async def current_agent_revision(self) -> str:
        return self.revision


class Seeder:
    """Creates and reads back records in committed transactions."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self.session_factory = session_factory

    async def distro(
        self,
        distro_id: str = "ubuntu2204",
        arch: str = "linux_amd64",
        work_dir: str = "/data/agent",
        cost_per_hour: float = 0.6,
        **fields: Any,
    ) -> Distro:
        async with self.session_factory() as session:
            distro = await create_distro(
                session, distro_id, arch, work_dir, cost_per_hour=cost_per_hour, **fields
            )
            await session.commit()
        return distro

    async def host(
        self,
        host_id: str = "H1",
        distro_id: str = "ubuntu2204",
        status: HostStatus = HostStatus.running,
        running_task: str | None = None,
        agent_revision: str | None = "r1",
        address: str = "10.0.0.5",
        **fields: Any,
    ) -> Host:
        async with self.session_factory() as session:
            host = await create_host(
                session,
                host_id,
                address,
                distro_id,
                status=status,
                running_task=running_task,
                agent_revision=agent_revision,
                **fields,
            )
            await session.commit()
        return host

    async def task(
        self,
        task_id: str,
        distro_id: str = "ubuntu2204",
        status: TaskStatus = TaskStatus.undispatched,
        **fields: Any,
    ) -> Task:
        async with self.session_factory() as session:
            task = await create_task(session, task_id, distro_id, status=status, **fields)
            await session.commit()
        return task

    async def project_vars(self, project_id: str, variables: dict[str, str]) -> None:
        async with self.session_factory() as session:
            await upsert_project_vars(session, project_id, variables)
            await session.commit()

    async def queue(self, distro_id: str, task_ids: list[str]) -> None:
        async with self.session_factory() as session:
            await save_task_queue(session, distro_id, task_ids)
            await session.commit()

    async def get_host(self, host_id: str) -> Host | None:
        async with self.session_factory() as session:
            return await get_host(session, host_id)

    async def get_task(self, task_id: str) -> Task | None:
        async with self.session_factory() as session:
            return await get_task(session, task_id)

    async def queued(self, distro_id: str) -> list[str]:
        async with self.session_factory() as session:
            return await list_queued_task_ids(session, distro_id)


@pytest_asyncio.fixture
async def engine(tmp_path: Path) -> AsyncGenerator[AsyncEngine, None]:
    """Create a SQLite async engine on a temporary file.

    A file (rather than ``:memory:``) gives every session its own
    connection, so concurrent sessions behave like they do on PostgreSQL.
    """
    test_engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'buildfarm.db'}",
        echo=False,
    )

    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield test_engine

    await test_engine.dispose()


@pytest_asyncio.fixture
async def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Create an async session factory bound to the test engine."""
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


@pytest_asyncio.fixture
async def db_session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    """Create a new async database session for each test."""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def seed(session_factory: async_sessionmaker[AsyncSession]) -> Seeder:
    return Seeder(session_factory)


@pytest.fixture
def revision_source() -> FakeRevisionSource:
    return FakeRevisionSource("r1")


@pytest_asyncio.fixture
async def coordinator(
    session_factory: async_sessionmaker[AsyncSession],
    revision_source: FakeRevisionSource,
) -> AsyncGenerator[TaskCoordinator, None]:
    """Coordinator wired to the test database with an in-process lock."""
    coordinator = TaskCoordinator(
        session_factory=session_factory,
        lock_manager=InMemoryLockManager(acquire_timeout=5.0),
        queue_dispatcher=DistroQueueDispatcher(session_factory),
        revision_source=revision_source,
        cost_updater=TaskCostUpdater(session_factory),
    )
    yield coordinator
    await coordinator.wait_for_background_tasks()


@pytest_asyncio.fixture
async def async_client(
    session_factory: async_sessionmaker[AsyncSession],
    coordinator: TaskCoordinator,
) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client for the control-plane app.

    ASGITransport does not run the lifespan, so the app's services are
    injected into app.state directly.
    """
    app = create_app(BuildfarmConfig(locks=LockConfig(backend="memory")))
    app.state.session_factory = session_factory
    app.state.coordinator = coordinator

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

