"""Agent reporting API endpoints for Buildfarm.

Agents report task start and task end through these routes and receive
the coordinator's decision in the response. They also fetch their
project's variables here before running a task. Every request authenticates
with the task's dispatch secret in the ``Task-Secret`` header.

Routes:
    POST /api/tasks/{task_id}/start - Report that a task started
    POST /api/tasks/{task_id}/end - Report that a task finished
    GET /api/tasks/{task_id}/fetch_vars - Variables of the task's project
"""

from __future__ import annotations

from datetime import datetime

import structlog
from fastapi import APIRouter, Depends, Header, HTTPException
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from buildfarm.database.connection import SessionFactory
from buildfarm.database.models.task import Task
from buildfarm.database.queries.project_vars import get_project_vars
from buildfarm.database.queries.task import get_task
from buildfarm.errors import InvalidEndStatusError, InternalError, LockTimeoutError, NotFoundError
from buildfarm.orchestrator.coordinator import TaskCoordinator, TaskEndResponse
from buildfarm.orchestrator.state_machine import InvalidTransitionError
from buildfarm.web.dependencies import get_coordinator, get_origin, get_session_factory

logger = structlog.get_logger(__name__)

SECRET_HEADER = "Task-Secret"


# --- Pydantic Schemas ---


class TaskStartRequest(BaseModel):
    """Request schema for a task start report."""

    pid: int = Field(..., ge=0)


class TaskStartResponse(BaseModel):
    """Response schema for a task start report."""

    message: str


class ProjectVarsResponse(BaseModel):
    """Variables of the project a task belongs to; empty when none are stored."""

    vars: dict[str, str] = Field(default_factory=dict)


class TaskEndRequest(BaseModel):
    """Request schema for a task end report.

    ``status`` is validated by the coordinator rather than by the schema,
    so an unknown value yields a 400 naming the task.
    """

    status: str
    finish_time: datetime | None = None


# --- Helpers ---


async def authenticate_task(
    session_factory: SessionFactory,
    task_id: str,
    secret: str | None,
) -> Task:
    """Check that ``secret`` is the task's dispatch secret.

    Returns:
        The authenticated task.

    Raises:
        HTTPException: 404 if the task does not exist, 401 if the secret
            is missing or does not match.
    """
    async with session_factory() as session:
        task = await get_task(session, task_id)

    if task is None:
        logger.warning("report_for_unknown_task", task_id=task_id)
        raise HTTPException(status_code=404, detail=f"Task {task_id} not found")

    if not secret or secret != task.secret:
        logger.warning("report_secret_mismatch", task_id=task_id)
        raise HTTPException(status_code=401, detail="Wrong secret sent for task")

    return task


# --- Router ---


def create_tasks_router() -> APIRouter:
    """Create the agent reporting router."""
    router = APIRouter(prefix="/api/tasks", tags=["tasks"])

    @router.post("/{task_id}/start", response_model=TaskStartResponse)
    async def start_task_endpoint(
        task_id: str,
        report: TaskStartRequest,
        task_secret: str | None = Header(default=None, alias=SECRET_HEADER),
        session_factory: SessionFactory = Depends(get_session_factory),  # noqa: B008
        coordinator: TaskCoordinator = Depends(get_coordinator),  # noqa: B008
        origin: str = Depends(get_origin),  # noqa: B008
    ) -> TaskStartResponse | JSONResponse:
        """Record that an agent started running a task.

        Raises:
            HTTPException: 401/404 on authentication failure, 409 if the
                task is not in a startable state.
        """
        await authenticate_task(session_factory, task_id, task_secret)

        try:
            message = await coordinator.start_task(task_id, report.pid, origin)
        except InvalidTransitionError as e:
            raise HTTPException(status_code=409, detail=str(e))
        except (LockTimeoutError, NotFoundError, InternalError) as e:
            logger.error("task_start_report_failed", task_id=task_id, error=str(e))
            return JSONResponse(status_code=500, content={"message": str(e)})

        return TaskStartResponse(message=message)

    @router.post("/{task_id}/end", response_model=TaskEndResponse)
    async def end_task_endpoint(
        task_id: str,
        report: TaskEndRequest,
        task_secret: str | None = Header(default=None, alias=SECRET_HEADER),
        session_factory: SessionFactory = Depends(get_session_factory),  # noqa: B008
        coordinator: TaskCoordinator = Depends(get_coordinator),  # noqa: B008
        origin: str = Depends(get_origin),  # noqa: B008
    ) -> TaskEndResponse | JSONResponse:
        """Record that a task finished and tell the agent what to do next.

        A 200 response either carries the next task to run (``run_next``)
        or tells the agent to terminate. Failures to decide return a 500
        whose body is still a ``TaskEndResponse`` with ``run_next`` unset.

        Raises:
            HTTPException: 400 for an unknown end status, 401/404 on
                authentication failure, 409 if the task cannot finish from
                its current state.
        """
        await authenticate_task(session_factory, task_id, task_secret)

        try:
            return await coordinator.end_task(
                task_id, report.status, origin, finish_time=report.finish_time
            )
        except InvalidEndStatusError as e:
            logger.warning("invalid_end_status", task_id=task_id, status=report.status)
            raise HTTPException(status_code=400, detail=str(e))
        except InvalidTransitionError as e:
            raise HTTPException(status_code=409, detail=str(e))
        except (LockTimeoutError, NotFoundError, InternalError) as e:
            logger.error(
                "task_end_report_failed",
                task_id=task_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            failure = TaskEndResponse(message=str(e))
            return JSONResponse(status_code=500, content=failure.model_dump())

    @router.get("/{task_id}/fetch_vars", response_model=ProjectVarsResponse)
    async def fetch_vars_endpoint(
        task_id: str,
        task_secret: str | None = Header(default=None, alias=SECRET_HEADER),
        session_factory: SessionFactory = Depends(get_session_factory),  # noqa: B008
    ) -> ProjectVarsResponse:
        """Return the variables of the project the task belongs to."""
        task = await authenticate_task(session_factory, task_id, task_secret)

        async with session_factory() as session:
            project_vars = await get_project_vars(session, task.project)

        if project_vars is None:
            logger.debug("project_vars_not_found", task_id=task_id, project=task.project)
            return ProjectVarsResponse()
        return ProjectVarsResponse(vars=project_vars.vars)

    return router
