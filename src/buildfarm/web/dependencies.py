"""FastAPI dependencies resolving shared services from app state."""

from __future__ import annotations

from fastapi import Request

from buildfarm.database.connection import SessionFactory
from buildfarm.orchestrator.coordinator import TaskCoordinator


def get_session_factory(request: Request) -> SessionFactory:
    """Extract session factory from FastAPI app state.

    Args:
        request: Incoming FastAPI request.

    Returns:
        Callable that produces AsyncSession instances.
    """
    return request.app.state.session_factory


def get_coordinator(request: Request) -> TaskCoordinator:
    """Extract the task coordinator from FastAPI app state."""
    return request.app.state.coordinator


def get_origin(request: Request) -> str:
    """Network origin of the reporting agent, used to scope report locks."""
    if request.client is None:
        return "unknown"
    return request.client.host
