"""FastAPI application factory for the Buildfarm control plane.

This module provides the application factory that creates and configures
the control-plane API with:
- CORS middleware for cross-origin requests
- Request logging middleware with correlation IDs
- Database, lock manager, gateway and coordinator lifecycle management
- The agent reporting routes and health endpoints

Example usage:
    >>> from buildfarm.config import BuildfarmConfig
    >>> from buildfarm.web.app import create_app
    >>>
    >>> app = create_app(BuildfarmConfig())
    >>>
    >>> import uvicorn
    >>> uvicorn.run(app, host="0.0.0.0", port=9090)
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from buildfarm import __version__
from buildfarm.config import BuildfarmConfig
from buildfarm.database.connection import SessionFactory, get_engine, get_session_factory
from buildfarm.logging import get_logger
from buildfarm.orchestrator.coordinator import TaskCoordinator
from buildfarm.orchestrator.cost import TaskCostUpdater
from buildfarm.orchestrator.global_lock import create_lock_manager
from buildfarm.orchestrator.queue_dispatcher import DistroQueueDispatcher
from buildfarm.pipeline.gateway import AgentHostGateway
from buildfarm.web.middleware import RequestLoggingMiddleware
from buildfarm.web.routes.health import create_health_router
from buildfarm.web.routes.tasks import create_tasks_router

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

logger = get_logger(__name__)


def build_coordinator(
    config: BuildfarmConfig,
    session_factory: SessionFactory,
    gateway: AgentHostGateway,
) -> TaskCoordinator:
    """Wire a TaskCoordinator from configuration.

    Args:
        config: Application configuration.
        session_factory: Callable that produces async database sessions.
        gateway: Gateway used as the authoritative agent revision source.

    Returns:
        A coordinator using the configured lock backend.
    """
    return TaskCoordinator(
        session_factory=session_factory,
        lock_manager=create_lock_manager(config.locks, session_factory),
        queue_dispatcher=DistroQueueDispatcher(session_factory),
        revision_source=gateway,
        cost_updater=TaskCostUpdater(session_factory),
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application lifecycle.

    Creates the database engine, session factory, gateway and coordinator
    on startup and stores them in app.state for dependency injection.
    Services already present in app.state are left as they are. On
    shutdown, outstanding background work is awaited and connections are
    disposed.

    Args:
        app: FastAPI application instance

    Yields:
        None after startup, cleans up on context exit
    """
    config: BuildfarmConfig = app.state.config

    logger.info("app_startup_begin", host=config.api.host, port=config.api.port)

    engine = None
    if getattr(app.state, "session_factory", None) is None:
        engine = get_engine(config.database)
        app.state.engine = engine
        app.state.session_factory = get_session_factory(engine)
        logger.info(
            "database_pool_initialized",
            pool_size=config.database.pool_size,
            max_overflow=config.database.max_overflow,
        )

    session_factory: SessionFactory = app.state.session_factory

    if getattr(app.state, "gateway", None) is None:
        app.state.gateway = AgentHostGateway(config.gateway, config.api.url, session_factory)

    if getattr(app.state, "coordinator", None) is None:
        app.state.coordinator = build_coordinator(config, session_factory, app.state.gateway)
        logger.info("coordinator_initialized", lock_backend=config.locks.backend)

    yield

    logger.info("app_shutdown_begin")
    await app.state.coordinator.wait_for_background_tasks()
    if engine is not None:
        await engine.dispose()
        logger.info("database_pool_disposed")


def create_app(config: BuildfarmConfig | None = None) -> FastAPI:
    """Create and configure the control-plane FastAPI application.

    Args:
        config: Optional BuildfarmConfig. If None, creates default config.

    Returns:
        Configured FastAPI application instance.
    """
    if config is None:
        config = BuildfarmConfig()

    app = FastAPI(
        title="Buildfarm",
        version=__version__,
        description="Task dispatch and agent provisioning for a CI build farm",
        lifespan=lifespan,
    )

    app.state.config = config

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.api.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(RequestLoggingMiddleware)

    app.include_router(create_health_router())
    app.include_router(create_tasks_router())

    logger.info(
        "app_created",
        cors_origins=config.api.cors_origins,
        version=__version__,
    )

    return app
