"""SQLAlchemy ORM models for Buildfarm.

Defines the schema for distros, hosts, tasks, distro task queues,
global locks and project variables. All models use SQLAlchemy 2.0 declarative style.
"""

from buildfarm.database.models.base import Base, TimestampMixin
from buildfarm.database.models.distro import Distro
from buildfarm.database.models.global_lock import GlobalLock
from buildfarm.database.models.host import Host, HostStatus
from buildfarm.database.models.project_vars import ProjectVars
from buildfarm.database.models.task import TERMINAL_STATUSES, Task, TaskStatus
from buildfarm.database.models.task_queue import TaskQueue, TaskQueueItem

__all__ = [
    "Base",
    "TimestampMixin",
    "Distro",
    "GlobalLock",
    "Host",
    "HostStatus",
    "ProjectVars",
    "Task",
    "TaskStatus",
    "TERMINAL_STATUSES",
    "TaskQueue",
    "TaskQueueItem",
]
