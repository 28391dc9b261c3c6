"""Distro task queue models for Buildfarm.

A ``TaskQueue`` row marks that the scheduler has built a queue for a
distro; ``TaskQueueItem`` rows are its ordered entries. ``task_id`` is
unique across all items, so a task sits in at most one queue, and
deleting an item is the atomic claim a dispatcher makes on a task.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Index, Integer, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from buildfarm.database.models.base import Base


class TaskQueue(Base):
    """The dispatch backlog of one distro.

    Attributes:
        distro_id: Distro the queue belongs to (primary key).
        generated_at: When the scheduler last rebuilt the queue.
    """

    __tablename__ = "task_queues"

    distro_id: Mapped[str] = mapped_column(Text, primary_key=True)
    generated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )


class TaskQueueItem(Base):
    """One queued task.

    Attributes:
        task_id: Queued task (primary key; a task is queued at most once).
        distro_id: Queue the item belongs to.
        position: Ordering within the queue (lowest dispatches first).
    """

    __tablename__ = "task_queue_items"

    task_id: Mapped[str] = mapped_column(Text, primary_key=True)
    distro_id: Mapped[str] = mapped_column(
        ForeignKey("task_queues.distro_id"),
        nullable=False,
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False)

    __table_args__ = (
        Index("ix_task_queue_items_distro_position", "distro_id", "position"),
    )
