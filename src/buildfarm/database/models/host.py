"""Host model for Buildfarm.

Defines the Host table and HostStatus enum. A host is a worker machine
allocated by the fleet; the dispatch core only mutates its running task,
agent revision and secret.
"""

from __future__ import annotations

import enum
from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Index, Integer, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from buildfarm.database.models.base import Base, TimestampMixin


class HostStatus(str, enum.Enum):
    """Lifecycle status of a worker host.

    States:
        provisioning: Allocated, agent not yet started.
        running: Eligible to run tasks.
        decommissioned: Draining; must not receive new work.
        quarantined: Pulled for inspection; must not receive new work.
        terminated: Torn down by the fleet.
    """

    provisioning = "provisioning"
    running = "running"
    decommissioned = "decommissioned"
    quarantined = "quarantined"
    terminated = "terminated"



class Host(TimestampMixin, Base):
    """A worker machine in the build farm.

    Attributes:
        id: Host identifier (primary key).
        host: SSH address, optionally with a ``:port`` suffix.
        user: SSH user; falls back to the distro's user when empty.
        distro_id: Foreign key to the host's distro.
        status: Current lifecycle status.
        running_task: Identifier of the task the host is running, None if idle.
        task_pid: Process id the agent reported for the running task.
        agent_revision: Revision of the agent binary deployed on the host.
        secret: Secret the agent uses to authenticate to the control plane.
        provisioned: Whether the agent has been started on the host.
        last_task_completed: Identifier of the last task the host finished.
        last_task_completed_time: When that task finished.
        distro: Relationship to the Distro.
    """

    __tablename__ = "hosts"

    id: Mapped[str] = mapped_column(Text, primary_key=True)
    host: Mapped[str] = mapped_column(Text, nullable=False)
    user: Mapped[str | None] = mapped_column(Text, nullable=True)
    distro_id: Mapped[str] = mapped_column(ForeignKey("distros.id"), nullable=False)
    status: Mapped[HostStatus] = mapped_column(
        default=HostStatus.provisioning,
        nullable=False,
    )
    running_task: Mapped[str | None] = mapped_column(Text, nullable=True)
    task_pid: Mapped[int | None] = mapped_column(Integer, nullable=True)
    agent_revision: Mapped[str | None] = mapped_column(Text, nullable=True)
    secret: Mapped[str | None] = mapped_column(Text, nullable=True)
    provisioned: Mapped[bool] = mapped_column(default=False, nullable=False)
    last_task_completed: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_task_completed_time: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    distro: Mapped["Distro"] = relationship(  # noqa: F821
        "Distro",
        lazy="selectin",
    )

    __table_args__ = (
        Index("ix_hosts_running_task", "running_task"),
        Index("ix_hosts_distro_id", "distro_id"),
    )
