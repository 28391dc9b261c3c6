"""Distro query functions for Buildfarm."""

from __future__ import annotations

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from buildfarm.database.models.distro import Distro

logger = structlog.get_logger(__name__)


async def create_distro(
    session: AsyncSession,
    distro_id: str,
    arch: str,
    work_dir: str,
    user: str | None = None,
    ssh_options: list[str] | None = None,
    cost_per_hour: float = 0.0,
) -> Distro:
    """Create a distro record."""
    distro = Distro(
        id=distro_id,
        arch=arch,
        work_dir=work_dir,
        user=user,
        ssh_options=ssh_options,
        cost_per_hour=cost_per_hour,
    )
    session.add(distro)
    await session.flush()

    logger.info("distro_created", distro_id=distro_id, arch=arch)
    return distro


async def get_distro(session: AsyncSession, distro_id: str) -> Distro | None:
    """Retrieve a distro by ID."""
    result = await session.execute(select(Distro).where(Distro.id == distro_id))
    return result.scalar_one_or_none()
