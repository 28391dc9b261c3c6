"""Distro model for Buildfarm.

A distro is a named machine class. Tasks are queued against a distro,
and the distro determines which agent binary variant a host receives
and where on the host it is placed.
"""

from __future__ import annotations

from sqlalchemy import JSON, Float, Text
from sqlalchemy.orm import Mapped, mapped_column

from buildfarm.database.models.base import Base, TimestampMixin


class Distro(TimestampMixin, Base):
    """A machine class that hosts are allocated from.

    Attributes:
        id: Distro name (primary key).
        arch: Agent architecture, e.g. ``linux_amd64`` or ``windows_amd64``.
        work_dir: Directory on the host where the agent is installed and run.
        user: Default SSH user for hosts of this distro.
        ssh_options: Extra ssh options for hosts of this distro.
        cost_per_hour: Hourly price used for task cost accounting.
    """

    __tablename__ = "distros"

    id: Mapped[str] = mapped_column(Text, primary_key=True)
    arch: Mapped[str] = mapped_column(Text, nullable=False)
    work_dir: Mapped[str] = mapped_column(Text, nullable=False)
    user: Mapped[str | None] = mapped_column(Text, nullable=True)
    ssh_options: Mapped[list[str] | None] = mapped_column(JSON, nullable=True)
    cost_per_hour: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
