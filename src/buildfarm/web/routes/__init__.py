"""FastAPI route definitions for the Buildfarm control plane.

This module contains the agent reporting routes and health checks.
"""

from __future__ import annotations

from buildfarm.web.routes.health import (
    HealthResponse,
    ReadinessResponse,
    create_health_router,
)
from buildfarm.web.routes.tasks import (
    ProjectVarsResponse,
    TaskEndRequest,
    TaskStartRequest,
    TaskStartResponse,
    create_tasks_router,
)

__all__ = [
    # Health
    "HealthResponse",
    "ReadinessResponse",
    "create_health_router",
    # Agent reports
    "ProjectVarsResponse",
    "TaskEndRequest",
    "TaskStartRequest",
    "TaskStartResponse",
    "create_tasks_router",
]
