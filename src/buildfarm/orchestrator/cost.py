"""Task cost accounting.

Attributes a cost to a finished task from the time it took and the
hourly price of its host's distro. Cost has no bearing on dispatch, so
the coordinator runs it as a detached background task.
"""

from __future__ import annotations

from datetime import datetime

import structlog

from buildfarm.database.connection import SessionFactory
from buildfarm.database.queries.distro import get_distro
from buildfarm.database.queries.host import get_host
from buildfarm.database.queries.task import get_task, set_task_cost
from buildfarm.errors import NotFoundError

logger = structlog.get_logger(__name__)


class TaskCostUpdater:
    """Computes and stores the cost of finished tasks."""

    def __init__(self, session_factory: SessionFactory) -> None:
        self.session_factory = session_factory
        self._logger = logger.bind(component="TaskCostUpdater")

    async def update(self, task_id: str, host_id: str, finish_time: datetime) -> float:
        """Store ``time_taken_hours * distro.cost_per_hour`` on the task.

        Args:
            task_id: Finished task.
            host_id: Host the task ran on.
            finish_time: When the task finished.

        Returns:
            The computed cost.

        Raises:
            NotFoundError: If the task, host or distro no longer exists.
        """
        async with self.session_factory() as session:
            task = await get_task(session, task_id)
            if task is None:
                raise NotFoundError("task", task_id)
            host = await get_host(session, host_id)
            if host is None:
                raise NotFoundError("host", host_id)
            distro = await get_distro(session, host.distro_id)
            if distro is None:
                raise NotFoundError("distro", host.distro_id)

            hours = (task.time_taken_seconds or 0.0) / 3600.0
            cost = hours * distro.cost_per_hour
            await set_task_cost(session, task_id, cost)
            await session.commit()

        self._logger.info(
            "task_cost_updated",
            task_id=task_id,
            host_id=host_id,
            distro_id=distro.id,
            cost=cost,
            finish_time=finish_time.isoformat(),
        )
        return cost
