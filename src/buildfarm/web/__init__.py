"""Control-plane web interface for Buildfarm.

This module provides the FastAPI application through which agents report
task start and end, plus health endpoints.
"""

from __future__ import annotations

from buildfarm.web.app import build_coordinator, create_app
from buildfarm.web.middleware import RequestLoggingMiddleware

__all__ = [
    "build_coordinator",
    "create_app",
    "RequestLoggingMiddleware",
]
