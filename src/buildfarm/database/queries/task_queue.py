"""Distro task queue query functions for Buildfarm.

The scheduler (out of scope here) rebuilds a distro's queue wholesale;
dispatchers only ever remove items, one conditional delete at a time.
"""

from __future__ import annotations

import structlog
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from buildfarm.database.models.base import utcnow
from buildfarm.database.models.task_queue import TaskQueue, TaskQueueItem

logger = structlog.get_logger(__name__)


async def save_task_queue(
    session: AsyncSession,
    distro_id: str,
    task_ids: list[str],
) -> TaskQueue:
    """Replace a distro's queue with ``task_ids`` in order.

    Args:
        session: Active async database session.
        distro_id: Distro whose queue is rebuilt.
        task_ids: Task identifiers in dispatch order.

    Returns:
        The TaskQueue record.
    """
    queue = await get_task_queue(session, distro_id)
    if queue is None:
        queue = TaskQueue(distro_id=distro_id, generated_at=utcnow())
        session.add(queue)
    else:
        queue.generated_at = utcnow()

    await session.execute(delete(TaskQueueItem).where(TaskQueueItem.distro_id == distro_id))
    await session.flush()
    for position, task_id in enumerate(task_ids):
        session.add(TaskQueueItem(task_id=task_id, distro_id=distro_id, position=position))
    await session.flush()

    logger.info("task_queue_saved", distro_id=distro_id, length=len(task_ids))
    return queue


async def get_task_queue(session: AsyncSession, distro_id: str) -> TaskQueue | None:
    """Retrieve the queue record for a distro."""
    result = await session.execute(select(TaskQueue).where(TaskQueue.distro_id == distro_id))
    return result.scalar_one_or_none()


async def list_queued_task_ids(session: AsyncSession, distro_id: str) -> list[str]:
    """Return the queued task identifiers of a distro in dispatch order."""
    stmt = (
        select(TaskQueueItem.task_id)
        .where(TaskQueueItem.distro_id == distro_id)
        .order_by(TaskQueueItem.position.asc())
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def remove_queue_item(session: AsyncSession, distro_id: str, task_id: str) -> bool:
    """Remove a task from a distro's queue.

    The delete is the claim: when several callers race on the same item,
    exactly one sees a deleted row.

    Returns:
        True if this call removed the item, False if it was already gone.
    """
    stmt = delete(TaskQueueItem).where(
        TaskQueueItem.distro_id == distro_id,
        TaskQueueItem.task_id == task_id,
    )
    result = await session.execute(stmt, execution_options={"synchronize_session": False})
    await session.flush()
    return result.rowcount == 1  # type: ignore[union-attr]
