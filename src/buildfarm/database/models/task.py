"""Task model for Buildfarm.

Defines the Task table and TaskStatus enum. Tasks are created by the
scheduling layer when a queue is built; the dispatch core moves them
through their lifecycle and never deletes them.
"""

from __future__ import annotations

import enum
from datetime import datetime

from sqlalchemy import JSON, DateTime, Float, Index, Integer, Text
from sqlalchemy.orm import Mapped, mapped_column

from buildfarm.database.models.base import Base, TimestampMixin


class TaskStatus(str, enum.Enum):
    """State machine for task lifecycle.

    States:
        undispatched: Waiting in a distro queue.
        dispatched: Assigned to a host, agent not yet started.
        started: Agent reported the task as running.
        succeeded: Terminal, finished successfully.
        failed: Terminal, finished unsuccessfully.
        inactive: Terminal, aborted or deactivated before finishing.
    """

    undispatched = "undispatched"
    dispatched = "dispatched"
    started = "started"
    succeeded = "succeeded"
    failed = "failed"
    inactive = "inactive"


TERMINAL_STATUSES: frozenset[TaskStatus] = frozenset(
    {TaskStatus.succeeded, TaskStatus.failed, TaskStatus.inactive}
)


class Task(TimestampMixin, Base):
    """A unit of work executed by an agent on one host.

    Attributes:
        id: Task identifier (primary key).
        secret: Secret handed to the agent together with a dispatch.
        project: Owning project identifier.
        version: Owning version identifier.
        revision: Source revision the task builds.
        distro_id: Distro the task is queued against.
        host_id: Host the task is assigned to, None before dispatch.
        execution: Attempt counter, incremented on every restart.
        depends_on: Identifiers of tasks that must succeed first.
        priority: Scheduling priority (higher runs first).
        activated: Whether the task may be dispatched.
        activated_by: Actor that last changed the activation flag.
        status: Current lifecycle status.
        scheduled_time: When the task was placed on a queue.
        dispatch_time: When the task was assigned to a host.
        start_time: When the agent reported the task started.
        finish_time: When the agent reported the task finished.
        push_time: When the owning version was pushed.
        time_taken_seconds: Wall time between start and finish.
        cost: Cost attributed to the task by cost accounting.
    """

    __tablename__ = "tasks"

    id: Mapped[str] = mapped_column(Text, primary_key=True)
    secret: Mapped[str] = mapped_column(Text, nullable=False)
    project: Mapped[str] = mapped_column(Text, nullable=False, default="")
    version: Mapped[str] = mapped_column(Text, nullable=False, default="")
    revision: Mapped[str] = mapped_column(Text, nullable=False, default="")
    distro_id: Mapped[str] = mapped_column(Text, nullable=False)
    host_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    execution: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    depends_on: Mapped[list[str] | None] = mapped_column(JSON, nullable=True)
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    activated: Mapped[bool] = mapped_column(nullable=False, default=True)
    activated_by: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[TaskStatus] = mapped_column(
        default=TaskStatus.undispatched,
        nullable=False,
    )
    scheduled_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    dispatch_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    start_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    finish_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    push_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    time_taken_seconds: Mapped[float | None] = mapped_column(Float, nullable=True)
    cost: Mapped[float | None] = mapped_column(Float, nullable=True)

    __table_args__ = (
        Index("ix_tasks_distro_id", "distro_id"),
        Index("ix_tasks_status", "status"),
    )
