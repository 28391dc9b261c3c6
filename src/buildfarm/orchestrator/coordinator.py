"""Task completion and dispatch coordinator.

Decides what an agent does next after it reports a task's start or end.
Every report is handled under a global lock scoped to the reporting
origin and the task, so duplicate reports cannot both dispatch work.

After a task ends, the agent is told one of:

1. Run another task (the usual flow).
2. Terminate, because its host is decommissioned or quarantined, its
   agent binary is stale, or no queued task is currently dispatchable.

Whenever the decision is not "run another task", the host's running
task is cleared first so the host never believes it still owns a
finished task.
"""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Protocol

import structlog
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError

from buildfarm.database.connection import SessionFactory
from buildfarm.database.models.base import utcnow
from buildfarm.database.models.host import Host, HostStatus
from buildfarm.database.models.task import Task
from buildfarm.database.queries.host import (
    find_host_by_running_task,
    set_task_pid,
    update_running_task,
)
from buildfarm.errors import BuildfarmError, InternalError, NotFoundError, StaleAgentError
from buildfarm.logging import bind_task_context
from buildfarm.orchestrator.cost import TaskCostUpdater
from buildfarm.orchestrator.global_lock import (
    END_TASK_CALLER,
    START_TASK_CALLER,
    LockManager,
    lock_scope,
)
from buildfarm.orchestrator.queue_dispatcher import DistroQueueDispatcher
from buildfarm.orchestrator.state_machine import TaskStateMachine, parse_end_status

logger = structlog.get_logger(__name__)

NO_NEXT_TASK_MESSAGE = "No next task on queue"
PROCEED_MESSAGE = "Proceed with next task"
STALE_AGENT_MESSAGE = "Remote agent needs to be rebuilt"


class TaskEndResponse(BaseModel):
    """Response to an agent's task end report.

    Attributes:
        message: Human-readable explanation of the decision.
        run_next: True if the agent should run ``task_id`` next.
        task_id: Next task to run, when ``run_next`` is set.
        task_secret: Secret of the next task, when ``run_next`` is set.
    """

    message: str = ""
    run_next: bool = False
    task_id: str | None = None
    task_secret: str | None = None


class AgentRevisionSource(Protocol):
    """Provides the authoritative agent revision."""

    async def current_agent_revision(self) -> str:
        ...


class TaskCoordinator:
    """Handles agent task start/end reports and decides the next step.

    Attributes:
        session_factory: Callable that produces async database sessions.
        lock_manager: Global lock manager serializing reports per scope.
        queue_dispatcher: Dispatcher popping the next task of a distro.
        revision_source: Source of the authoritative agent revision.
        cost_updater: Optional cost accounting run in the background.
        state_machine: Task lifecycle state machine.
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        lock_manager: LockManager,
        queue_dispatcher: DistroQueueDispatcher,
        revision_source: AgentRevisionSource,
        cost_updater: TaskCostUpdater | None = None,
        state_machine: TaskStateMachine | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.lock_manager = lock_manager
        self.queue_dispatcher = queue_dispatcher
        self.revision_source = revision_source
        self.cost_updater = cost_updater
        self.state_machine = state_machine or TaskStateMachine()

        self._background: set[asyncio.Task[None]] = set()
        self._logger = logger.bind(component="TaskCoordinator")

    # ------------------------------------------------------------------
    # Report handlers
    # ------------------------------------------------------------------

    async def start_task(self, task_id: str, pid: int, origin: str) -> str:
        """Handle an agent's report that a task started.

        Marks the task started and records the agent's process id on the
        host running it.

        Args:
            task_id: Task that started.
            pid: Process id the agent runs the task under.
            origin: Network origin of the report.

        Returns:
            Acknowledgement message.

        Raises:
            LockTimeoutError: If the report's lock scope is contended too long.
            NotFoundError: If the task or its host cannot be found.
            InvalidTransitionError: If the task is not in a startable state.
        """
        async with self.lock_manager.hold(lock_scope(origin, task_id, START_TASK_CALLER)):
            bind_task_context(task_id)
            self._logger.info("marking_task_started", task_id=task_id, pid=pid)

            async with self.session_factory() as session:
                task = await self.state_machine.mark_start(task_id, session)

                host = await find_host_by_running_task(session, task_id)
                if host is None:
                    message = f"No host found running task {task_id}"
                    if task.host_id:
                        message = (
                            f"No host found running task {task_id} but task is said "
                            f"to be running on {task.host_id}"
                        )
                    await session.rollback()
                    raise NotFoundError("host", task.host_id or "", message)

                await set_task_pid(session, host.id, pid)
                await session.commit()

        self._logger.info("task_started", task_id=task_id, host_id=host.id, pid=pid)
        return f"Task {task_id} started on host {host.id}"

    async def end_task(
        self,
        task_id: str,
        status: str,
        origin: str,
        finish_time: datetime | None = None,
    ) -> TaskEndResponse:
        """Handle an agent's report that a task finished.

        Validates the reported status, then under the report's lock scope
        records the end of the task and decides what the agent does next.

        Args:
            task_id: Task that finished.
            status: Reported end status ("succeeded", "failed", or
                "undispatched" for an aborted task).
            origin: Network origin of the report.
            finish_time: When the task finished. Defaults to now.

        Returns:
            The decision for the agent.

        Raises:
            InvalidEndStatusError: If ``status`` is not an accepted end status.
            LockTimeoutError: If the report's lock scope is contended too long.
            NotFoundError: If the task or its host cannot be found.
            InvalidTransitionError: If the task cannot finish from its state.
            InternalError: If deciding the next step failed.
        """
        end_status = parse_end_status(task_id, status)
        finish_time = finish_time or utcnow()

        async with self.lock_manager.hold(lock_scope(origin, task_id, END_TASK_CALLER)):
            bind_task_context(task_id)

            async with self.session_factory() as session:
                task = await self.state_machine.mark_end(task_id, end_status, session, finish_time)
                await session.commit()

            self._logger.info(
                "task_marked_finished",
                task_id=task_id,
                status=task.status.value,
            )
            return await self.on_task_finished(task, finish_time)

    # ------------------------------------------------------------------
    # Decision procedure
    # ------------------------------------------------------------------

    async def on_task_finished(self, task: Task, finish_time: datetime) -> TaskEndResponse:
        """Decide what the agent that just finished ``task`` does next.

        The task's end status must already be persisted.

        Args:
            task: The finished task.
            finish_time: When the task finished.

        Returns:
            Run-next or terminate response.

        Raises:
            NotFoundError: If no host is recorded as running the task.
            InternalError: If the host lookup, the agent revision read or
                the queue dispatch failed.
        """
        try:
            async with self.session_factory() as session:
                host = await find_host_by_running_task(session, task.id)
        except SQLAlchemyError as e:
            self._logger.error("host_lookup_failed", task_id=task.id, error=str(e))
            raise InternalError(
                f"Error locating host for task {task.id} - set to {task.host_id}: {e}"
            ) from e

        if host is None:
            message = f"Error finding host running for task {task.id} - set to {task.host_id}"
            self._logger.error("host_not_found", task_id=task.id, host_id=task.host_id)
            raise NotFoundError("host", task.host_id or "", message)

        bind_task_context(task.id, host.id)

        if host.status != HostStatus.running:
            await self._release_host(host, task, finish_time)
            message = (
                f"Host {host.id} - running {task.id} - is in state "
                f"'{host.status.value}'. Agent will terminate"
            )
            self._logger.info("host_not_running_terminating", host_status=host.status.value)
            return TaskEndResponse(message=message)

        self._spawn_cost_update(task, host, finish_time)

        try:
            expected_revision = await self.revision_source.current_agent_revision()
        except BuildfarmError as e:
            await self._release_host(host, task, finish_time)
            self._logger.error("agent_revision_unavailable", error=str(e))
            raise InternalError(f"failed to get agent revision: {e}") from e

        if host.agent_revision != expected_revision:
            await self._release_host(host, task, finish_time)
            drift = StaleAgentError(host.id, host.agent_revision, expected_revision)
            self._logger.warning("stale_agent_terminating", reason=str(drift))
            return TaskEndResponse(message=STALE_AGENT_MESSAGE)

        try:
            next_task = await self.queue_dispatcher.dispatch_next(host.distro_id, host)
        except (BuildfarmError, SQLAlchemyError) as e:
            await self._release_host(host, task, finish_time)
            self._logger.error("dispatch_failed", distro_id=host.distro_id, error=str(e))
            raise InternalError(
                f"Error dequeuing task for host {host.id} from distro queue "
                f"'{host.distro_id}': {e}"
            ) from e

        if next_task is None:
            await self._release_host(host, task, finish_time)
            self._logger.info("no_next_task", distro_id=host.distro_id)
            return TaskEndResponse(message=NO_NEXT_TASK_MESSAGE)

        try:
            async with self.session_factory() as session:
                swapped = await update_running_task(
                    session, host.id, task.id, next_task.id, finish_time
                )
                await session.commit()
        except SQLAlchemyError as e:
            self._logger.error("host_update_failed", next_task_id=next_task.id, error=str(e))
            raise InternalError(
                f"Error assigning task {next_task.id} to host {host.id}: {e}"
            ) from e

        if not swapped:
            self._logger.error(
                "host_moved_off_task",
                next_task_id=next_task.id,
            )
            raise InternalError(
                f"Host {host.id} is no longer running task {task.id}; "
                f"dispatched task {next_task.id} was not handed out"
            )

        self._logger.info("next_task_dispatched", next_task_id=next_task.id)
        return TaskEndResponse(
            message=PROCEED_MESSAGE,
            run_next=True,
            task_id=next_task.id,
            task_secret=next_task.secret,
        )

    async def wait_for_background_tasks(self) -> None:
        """Wait for outstanding background work (cost updates) to finish."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _release_host(self, host: Host, task: Task, finish_time: datetime) -> None:
        """Clear the host's running task, logging rather than raising on failure."""
        try:
            async with self.session_factory() as session:
                cleared = await update_running_task(session, host.id, task.id, None, finish_time)
                await session.commit()
        except SQLAlchemyError as e:
            self._logger.error("clear_running_task_failed", error=str(e))
            return

        if not cleared:
            self._logger.warning("running_task_already_changed", running_task=host.running_task)

    def _spawn_cost_update(self, task: Task, host: Host, finish_time: datetime) -> None:
        if self.cost_updater is None:
            return
        background = asyncio.create_task(
            self._update_cost(self.cost_updater, task.id, host.id, finish_time),
            name=f"task-cost-{task.id}",
        )
        self._background.add(background)
        background.add_done_callback(self._background.discard)

    async def _update_cost(
        self,
        cost_updater: TaskCostUpdater,
        task_id: str,
        host_id: str,
        finish_time: datetime,
    ) -> None:
        try:
            await cost_updater.update(task_id, host_id, finish_time)
        except Exception as e:
            self._logger.error(
                "task_cost_update_failed",
                task_id=task_id,
                host_id=host_id,
                error=str(e),
                error_type=type(e).__name__,
            )
