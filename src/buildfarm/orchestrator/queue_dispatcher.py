"""Distro task queue dispatcher.

Pops the next eligible task off a distro's queue and assigns it to the
host that just freed up. The pop is a single conditional delete of the
queue item: when dispatchers race on the same queue only one of them
removes a given item, and only that one goes on to assign the task, in
the same transaction.

Which queued tasks are eligible is a pluggable predicate. The default
requires every dependency to have succeeded.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from buildfarm.database.connection import SessionFactory
from buildfarm.database.models.base import utcnow
from buildfarm.database.models.host import Host
from buildfarm.database.models.task import Task, TaskStatus
from buildfarm.database.queries.task import assign_task_to_host, get_task, get_tasks
from buildfarm.database.queries.task_queue import (
    get_task_queue,
    list_queued_task_ids,
    remove_queue_item,
)
from buildfarm.errors import NotFoundError

logger = structlog.get_logger(__name__)

EligibilityPredicate = Callable[[Task, AsyncSession], Awaitable[bool]]


async def dependencies_met(task: Task, session: AsyncSession) -> bool:
    """Default eligibility: every task in ``depends_on`` has succeeded.

    A dependency that does not exist counts as unmet.
    """
    if not task.depends_on:
        return True
    dependencies = await get_tasks(session, list(task.depends_on))
    if len(dependencies) != len(set(task.depends_on)):
        return False
    return all(dep.status == TaskStatus.succeeded for dep in dependencies)


async def always_eligible(task: Task, session: AsyncSession) -> bool:
    """Eligibility predicate that ignores dependencies."""
    return True


def _is_dispatchable(task: Task) -> bool:
    return task.activated and task.status == TaskStatus.undispatched


class DistroQueueDispatcher:
    """Dispatches queued tasks to hosts, one atomic claim at a time.

    Attributes:
        session_factory: Callable that produces async database sessions.
        is_eligible: Predicate deciding whether a queued task may run now.
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        is_eligible: EligibilityPredicate = dependencies_met,
    ) -> None:
        self.session_factory = session_factory
        self.is_eligible = is_eligible
        self._logger = logger.bind(component="DistroQueueDispatcher")

    async def dispatch_next(self, distro_id: str, host: Host) -> Task | None:
        """Claim the next eligible task on a distro's queue for a host.

        Queue entries whose task is missing, deactivated or already
        dispatched are dropped as they are encountered. Ineligible tasks
        stay queued for a later dispatch.

        Args:
            distro_id: Distro whose queue to pop from.
            host: Host that will run the task.

        Returns:
            The dispatched Task, or None if nothing is eligible.

        Raises:
            NotFoundError: If the distro has no queue.
        """
        async with self.session_factory() as session:
            if await get_task_queue(session, distro_id) is None:
                raise NotFoundError(
                    "task_queue",
                    distro_id,
                    f"no task queue found for distro '{distro_id}'",
                )

            queued = await list_queued_task_ids(session, distro_id)
            skipped = 0

            for task_id in queued:
                task = await get_task(session, task_id)

                if task is None or not _is_dispatchable(task):
                    if await remove_queue_item(session, distro_id, task_id):
                        await session.commit()
                        self._logger.info(
                            "stale_queue_item_dropped",
                            distro_id=distro_id,
                            task_id=task_id,
                            status=task.status.value if task else None,
                        )
                    continue

                if not await self.is_eligible(task, session):
                    skipped += 1
                    continue

                # The claim: only one concurrent caller deletes this item.
                if not await remove_queue_item(session, distro_id, task_id):
                    await session.rollback()
                    self._logger.debug(
                        "queue_item_claimed_elsewhere",
                        distro_id=distro_id,
                        task_id=task_id,
                    )
                    continue

                if not await assign_task_to_host(session, task_id, host.id, utcnow()):
                    await session.commit()
                    self._logger.warning(
                        "claimed_task_not_dispatchable",
                        distro_id=distro_id,
                        task_id=task_id,
                    )
                    continue

                await session.commit()
                await session.refresh(task)

                self._logger.info(
                    "task_dispatched",
                    distro_id=distro_id,
                    task_id=task_id,
                    host_id=host.id,
                    skipped_ineligible=skipped,
                )
                return task

        self._logger.info(
            "no_dispatchable_task",
            distro_id=distro_id,
            host_id=host.id,
            queue_length=len(queued),
            skipped_ineligible=skipped,
        )
        return None
