"""Task state machine for the Buildfarm dispatch core.

Enforces the task lifecycle::

    undispatched -> dispatched -> started -> {succeeded | failed}

with ``inactive`` reachable from every non-terminal state (abort or
deactivation). Terminal states are never left; a restart starts a new
execution attempt instead of reusing the finished one.
"""

from __future__ import annotations

from datetime import datetime

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from buildfarm.database.models.base import ensure_utc, utcnow
from buildfarm.database.models.task import TERMINAL_STATUSES, Task, TaskStatus
from buildfarm.database.queries.task import new_task_secret
from buildfarm.errors import BuildfarmError, InvalidEndStatusError, NotFoundError

logger = structlog.get_logger(__name__)


class InvalidTransitionError(BuildfarmError):
    """Raised when an invalid state transition is attempted.

    Attributes:
        current: The current task status.
        target: The attempted target status.
        task_id: The ID of the task that failed to transition.
    """

    def __init__(self, current: TaskStatus, target: TaskStatus, task_id: str | None = None):
        self.current = current
        self.target = target
        self.task_id = task_id
        msg = f"Invalid transition from {current.value} to {target.value}"
        if task_id:
            msg += f" for task {task_id}"
        super().__init__(msg)


# Authoritative state machine definition
VALID_TRANSITIONS: dict[TaskStatus, set[TaskStatus]] = {
    TaskStatus.undispatched: {TaskStatus.dispatched, TaskStatus.inactive},
    TaskStatus.dispatched: {TaskStatus.started, TaskStatus.inactive},
    TaskStatus.started: {TaskStatus.succeeded, TaskStatus.failed, TaskStatus.inactive},
    TaskStatus.succeeded: set(),
    TaskStatus.failed: set(),
    TaskStatus.inactive: set(),
}

# Statuses an agent may report when a task ends. "undispatched" means
# the agent aborted the task.
END_STATUSES: frozenset[TaskStatus] = frozenset(
    {TaskStatus.succeeded, TaskStatus.failed, TaskStatus.undispatched}
)


def validate_transition(current: TaskStatus, target: TaskStatus) -> bool:
    """Validate if a state transition is allowed.

    Args:
        current: Current task status.
        target: Target task status.

    Returns:
        True if the transition is valid according to VALID_TRANSITIONS.
    """
    return target in VALID_TRANSITIONS.get(current, set())


def parse_end_status(task_id: str, status: str) -> TaskStatus:
    """Convert an agent-reported end status, rejecting anything unexpected.

    Raises:
        InvalidEndStatusError: If ``status`` is not an accepted end status.
    """
    try:
        parsed = TaskStatus(status)
    except ValueError:
        raise InvalidEndStatusError(task_id, status) from None
    if parsed not in END_STATUSES:
        raise InvalidEndStatusError(task_id, status)
    return parsed


class TaskStateMachine:
    """Manages task state transitions with validation and side effects.

    Handles:
    - Validation of state transitions
    - Lifecycle timestamps (dispatch, start, finish) and time taken
    - Abort handling (end report of ``undispatched``)
    - Restarts as new execution attempts
    """

    def __init__(self) -> None:
        self.logger = logger.bind(component="TaskStateMachine")

    async def transition(
        self,
        task_id: str,
        target_status: TaskStatus,
        session: AsyncSession,
        when: datetime | None = None,
    ) -> Task:
        """Transition a task to a new status.

        Args:
            task_id: Identifier of the task to transition.
            target_status: Target status for the task.
            session: Database session for the transaction.
            when: Time of the transition. Defaults to now.

        Returns:
            The updated Task object.

        Raises:
            InvalidTransitionError: If the transition is not valid.
            NotFoundError: If the task does not exist.
        """
        task = await self._load(task_id, session)
        current_status = task.status
        when = ensure_utc(when) or utcnow()

        if not validate_transition(current_status, target_status):
            raise InvalidTransitionError(current_status, target_status, task_id)

        task.status = target_status

        if target_status == TaskStatus.dispatched and task.dispatch_time is None:
            task.dispatch_time = when

        if target_status == TaskStatus.started:
            task.start_time = when

        if target_status in TERMINAL_STATUSES:
            task.finish_time = when
            start_time = ensure_utc(task.start_time)
            if start_time is not None:
                task.time_taken_seconds = max((when - start_time).total_seconds(), 0.0)

        self.logger.info(
            "task_transition",
            task_id=task_id,
            execution=task.execution,
            from_status=current_status.value,
            to_status=target_status.value,
        )

        # Commit is handled by caller
        await session.flush()
        return task

    async def mark_start(
        self,
        task_id: str,
        session: AsyncSession,
        start_time: datetime | None = None,
    ) -> Task:
        """Record that the agent started a dispatched task."""
        return await self.transition(task_id, TaskStatus.started, session, start_time)

    async def mark_end(
        self,
        task_id: str,
        status: TaskStatus,
        session: AsyncSession,
        finish_time: datetime | None = None,
    ) -> Task:
        """Record the end status an agent reported for a task.

        An end status of ``undispatched`` is an abort: the task becomes
        ``inactive`` and is deactivated so it is not queued again.

        Raises:
            InvalidEndStatusError: If ``status`` is not an end status.
            InvalidTransitionError: If the task cannot finish from its state.
        """
        if status not in END_STATUSES:
            raise InvalidEndStatusError(task_id, status.value)

        if status == TaskStatus.undispatched:
            task = await self.transition(task_id, TaskStatus.inactive, session, finish_time)
            task.activated = False
            task.activated_by = ""
            await session.flush()
            self.logger.info("task_aborted", task_id=task_id)
            return task

        return await self.transition(task_id, status, session, finish_time)

    async def restart(self, task_id: str, session: AsyncSession) -> Task:
        """Start a new execution attempt of a finished task.

        The execution counter is incremented and per-attempt state (host,
        timestamps, secret) is reset so the task can be queued again.

        Raises:
            InvalidTransitionError: If the task has not reached a terminal state.
        """
        task = await self._load(task_id, session)
        if task.status not in TERMINAL_STATUSES:
            raise InvalidTransitionError(task.status, TaskStatus.undispatched, task_id)

        previous_execution = task.execution
        task.execution = previous_execution + 1
        task.status = TaskStatus.undispatched
        task.activated = True
        task.secret = new_task_secret()
        task.host_id = None
        task.dispatch_time = None
        task.start_time = None
        task.finish_time = None
        task.time_taken_seconds = None
        task.cost = None
        await session.flush()

        self.logger.info(
            "task_restarted",
            task_id=task_id,
            previous_execution=previous_execution,
            execution=task.execution,
        )
        return task

    async def _load(self, task_id: str, session: AsyncSession) -> Task:
        result = await session.execute(select(Task).where(Task.id == task_id))
        task = result.scalar_one_or_none()
        if task is None:
            raise NotFoundError("task", task_id)
        return task
