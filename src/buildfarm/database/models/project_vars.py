"""Project variables model for Buildfarm.

Per-project key/value settings that agents fetch at run time, so values
that are sensitive or change often stay out of project definitions.
"""

from __future__ import annotations

from sqlalchemy import JSON, Text
from sqlalchemy.orm import Mapped, mapped_column

from buildfarm.database.models.base import Base, TimestampMixin


class ProjectVars(TimestampMixin, Base):
    """Variables of one project.

    Attributes:
        id: Project identifier, matching ``Task.project``.
        vars: Variable name to value mapping.
    """

    __tablename__ = "project_vars"

    id: Mapped[str] = mapped_column(Text, primary_key=True)
    vars: Mapped[dict[str, str]] = mapped_column(JSON, nullable=False, default=dict)
