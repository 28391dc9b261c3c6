"""Host query functions for Buildfarm.

Keyed reads and conditional writes on Host records. Writes flush but do
not commit; the caller owns the transaction. Lookups return ``None``
when the host does not exist.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from buildfarm.database.models.base import utcnow
from buildfarm.database.models.host import Host, HostStatus

logger = structlog.get_logger(__name__)


async def create_host(
    session: AsyncSession,
    host_id: str,
    address: str,
    distro_id: str,
    user: str | None = None,
    status: HostStatus = HostStatus.provisioning,
    running_task: str | None = None,
    agent_revision: str | None = None,
    secret: str | None = None,
    **fields: Any,
) -> Host:
    """Create a host record.

    Fleet allocation owns host creation; this exists for seeding and tests.
    Extra keyword arguments are passed through to the model.

    Returns:
        The newly created Host instance.
    """
    host = Host(
        id=host_id,
        host=address,
        distro_id=distro_id,
        user=user,
        status=status,
        running_task=running_task,
        agent_revision=agent_revision,
        secret=secret,
        **fields,
    )
    session.add(host)
    await session.flush()

    logger.info("host_created", host_id=host_id, distro_id=distro_id, status=status.value)
    return host


async def get_host(session: AsyncSession, host_id: str) -> Host | None:
    """Retrieve a host by ID."""
    stmt = select(Host).where(Host.id == host_id)
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def find_host_by_running_task(session: AsyncSession, task_id: str) -> Host | None:
    """Find the host currently recorded as running a task.

    Args:
        session: Active async database session.
        task_id: Task identifier to match against ``running_task``.

    Returns:
        The Host instance if one is running the task, None otherwise.
    """
    stmt = select(Host).where(Host.running_task == task_id)
    result = await session.execute(stmt)
    return result.scalars().first()


async def update_running_task(
    session: AsyncSession,
    host_id: str,
    old_task_id: str,
    new_task_id: str | None,
    finish_time: datetime | None = None,
) -> bool:
    """Swap a host's running task, provided it is still ``old_task_id``.

    The update is conditional on the current value so that a host is
    never moved off a task it is no longer running. The finished task is
    recorded as the host's last completed task.

    Args:
        session: Active async database session.
        host_id: Host to update.
        old_task_id: Task the host is expected to be running.
        new_task_id: Task to record next, or None to leave the host idle.
        finish_time: When ``old_task_id`` finished. Defaults to now.

    Returns:
        True if the host was updated, False if its running task had changed.
    """
    stmt = (
        update(Host)
        .where(Host.id == host_id, Host.running_task == old_task_id)
        .values(
            running_task=new_task_id,
            task_pid=None,
            last_task_completed=old_task_id,
            last_task_completed_time=finish_time or utcnow(),
        )
    )
    result = await session.execute(stmt, execution_options={"synchronize_session": False})
    await session.flush()

    updated = result.rowcount == 1  # type: ignore[union-attr]
    logger.debug(
        "host_running_task_updated",
        host_id=host_id,
        old_task_id=old_task_id,
        new_task_id=new_task_id,
        updated=updated,
    )
    return updated


async def clear_running_task(
    session: AsyncSession,
    host_id: str,
    task_id: str,
    finish_time: datetime | None = None,
) -> bool:
    """Leave a host idle after it finished ``task_id``."""
    return await update_running_task(session, host_id, task_id, None, finish_time)


async def set_task_pid(session: AsyncSession, host_id: str, pid: int) -> None:
    """Record the agent-reported process id of the host's running task."""
    await session.execute(update(Host).where(Host.id == host_id).values(task_pid=pid))
    await session.flush()


async def set_agent_revision(session: AsyncSession, host_id: str, revision: str) -> None:
    """Record the agent revision deployed on a host and mark it provisioned."""
    await session.execute(
        update(Host)
        .where(Host.id == host_id)
        .values(agent_revision=revision, provisioned=True)
    )
    await session.flush()
    logger.info("host_agent_revision_set", host_id=host_id, agent_revision=revision)


async def create_secret(session: AsyncSession, host_id: str) -> str:
    """Generate and store a new agent secret for a host.

    Returns:
        The generated secret.
    """
    secret = uuid.uuid4().hex
    await session.execute(update(Host).where(Host.id == host_id).values(secret=secret))
    await session.flush()
    logger.info("host_secret_created", host_id=host_id)
    return secret
