"""Task query functions for Buildfarm.

Keyed reads and simple writes on Task records. Lifecycle transitions
live in ``buildfarm.orchestrator.state_machine``; the conditional
dispatch assignment lives here because the queue dispatcher performs it
inside its claim transaction.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from buildfarm.database.models.base import utcnow
from buildfarm.database.models.task import Task, TaskStatus

logger = structlog.get_logger(__name__)


def new_task_secret() -> str:
    """Generate a dispatch secret for a task."""
    return uuid.uuid4().hex


async def create_task(
    session: AsyncSession,
    task_id: str,
    distro_id: str,
    project: str = "",
    version: str = "",
    revision: str = "",
    depends_on: list[str] | None = None,
    priority: int = 0,
    activated: bool = True,
    secret: str | None = None,
    status: TaskStatus = TaskStatus.undispatched,
    host_id: str | None = None,
    **fields: Any,
) -> Task:
    """Create a task record.

    The scheduling layer owns task creation; this exists for seeding and
    tests. Extra keyword arguments are passed through to the model.

    Returns:
        The newly created Task instance.
    """
    task = Task(
        id=task_id,
        secret=secret or new_task_secret(),
        distro_id=distro_id,
        project=project,
        version=version,
        revision=revision,
        depends_on=depends_on,
        priority=priority,
        activated=activated,
        status=status,
        host_id=host_id,
        execution=0,
        **fields,
    )
    session.add(task)
    await session.flush()

    logger.info(
        "task_created",
        task_id=task_id,
        distro_id=distro_id,
        status=status.value,
    )
    return task


async def get_task(session: AsyncSession, task_id: str) -> Task | None:
    """Retrieve a task by ID."""
    result = await session.execute(select(Task).where(Task.id == task_id))
    return result.scalar_one_or_none()


async def get_tasks(session: AsyncSession, task_ids: list[str]) -> list[Task]:
    """Retrieve every existing task among ``task_ids``."""
    if not task_ids:
        return []
    result = await session.execute(select(Task).where(Task.id.in_(task_ids)))
    return list(result.scalars().all())


async def assign_task_to_host(
    session: AsyncSession,
    task_id: str,
    host_id: str,
    dispatch_time: datetime | None = None,
) -> bool:
    """Mark a task dispatched to a host if it is still dispatchable.

    The update only applies to an activated, undispatched task, so a task
    that was deactivated or dispatched elsewhere is left untouched.

    Returns:
        True if the task was assigned, False otherwise.
    """
    stmt = (
        update(Task)
        .where(
            Task.id == task_id,
            Task.status == TaskStatus.undispatched,
            Task.activated.is_(True),
        )
        .values(
            status=TaskStatus.dispatched,
            host_id=host_id,
            dispatch_time=dispatch_time or utcnow(),
        )
    )
    result = await session.execute(stmt, execution_options={"synchronize_session": False})
    await session.flush()
    return result.rowcount == 1  # type: ignore[union-attr]


async def set_task_cost(session: AsyncSession, task_id: str, cost: float) -> None:
    """Store the cost attributed to a task."""
    await session.execute(update(Task).where(Task.id == task_id).values(cost=cost))
    await session.flush()
