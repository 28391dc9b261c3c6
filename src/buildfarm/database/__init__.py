"""Database layer for Buildfarm.

This module handles database connections and session management and
exposes the SQLAlchemy models backing tasks, hosts, distros, distro task
queues, global locks and project variables.

Public API:
    get_engine: Create an AsyncEngine from DatabaseConfig.
    get_session_factory: Create an async_sessionmaker from an engine.
    Base: SQLAlchemy declarative base for all models.
"""

from buildfarm.database.connection import SessionFactory, get_engine, get_session_factory
from buildfarm.database.models import (
    Base,
    Distro,
    GlobalLock,
    Host,
    HostStatus,
    ProjectVars,
    Task,
    TaskQueue,
    TaskQueueItem,
    TaskStatus,
    TimestampMixin,
)

__all__ = [
    "SessionFactory",
    "get_engine",
    "get_session_factory",
    "Base",
    "TimestampMixin",
    "Distro",
    "GlobalLock",
    "Host",
    "HostStatus",
    "ProjectVars",
    "Task",
    "TaskQueue",
    "TaskQueueItem",
    "TaskStatus",
]
