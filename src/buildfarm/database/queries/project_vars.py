"""Project variables query functions for Buildfarm."""

from __future__ import annotations

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from buildfarm.database.models.project_vars import ProjectVars

logger = structlog.get_logger(__name__)


async def get_project_vars(session: AsyncSession, project_id: str) -> ProjectVars | None:
    """Retrieve a project's variables, or None if it has none stored."""
    result = await session.execute(select(ProjectVars).where(ProjectVars.id == project_id))
    return result.scalar_one_or_none()


async def upsert_project_vars(
    session: AsyncSession,
    project_id: str,
    variables: dict[str, str],
) -> ProjectVars:
    """Create or replace a project's variables.

    The stored mapping is replaced wholesale, not merged.

    Returns:
        The stored ProjectVars row.
    """
    project_vars = await get_project_vars(session, project_id)
    if project_vars is None:
        project_vars = ProjectVars(id=project_id, vars=dict(variables))
        session.add(project_vars)
    else:
        project_vars.vars = dict(variables)
    await session.flush()

    logger.info("project_vars_upserted", project_id=project_id, count=len(variables))
    return project_vars
