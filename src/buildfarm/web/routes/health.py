"""Liveness and readiness checks.

``/health/`` answers as long as the process serves requests.
``/health/ready`` additionally round-trips to the database, since every
agent report needs it.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from buildfarm import __version__
from buildfarm.database.connection import SessionFactory
from buildfarm.logging import get_logger
from buildfarm.web.dependencies import get_session_factory

logger = get_logger(__name__)


class HealthResponse(BaseModel):
    status: str
    version: str


class ReadinessResponse(BaseModel):
    """Readiness status ("ok" or "unhealthy") and database connectivity."""

    status: str
    database: str


async def database_reachable(session_factory: SessionFactory) -> bool:
    try:
        async with session_factory() as session:
            await session.execute(text("SELECT 1"))
    except (SQLAlchemyError, OSError) as exc:
        logger.warning("database_unreachable", error=str(exc))
        return False
    return True


def create_health_router() -> APIRouter:
    router = APIRouter(prefix="/health", tags=["health"])

    @router.get("/", response_model=HealthResponse)
    async def health() -> HealthResponse:
        return HealthResponse(status="ok", version=__version__)

    @router.get("/ready", response_model=ReadinessResponse)
    async def readiness(
        session_factory: SessionFactory = Depends(get_session_factory),  # noqa: B008
    ) -> ReadinessResponse:
        if await database_reachable(session_factory):
            return ReadinessResponse(status="ok", database="connected")
        return ReadinessResponse(status="unhealthy", database="disconnected")

    return router
