"""Request logging middleware for Buildfarm.

Every request gets a correlation id (the agent's ``X-Correlation-ID``
header when it sends one, otherwise a fresh UUID) that is echoed on the
response and merged into every log line emitted while handling it.
Agent calls (``/api/tasks/<task_id>/start|end|fetch_vars``) additionally bind the
task id before routing, so authentication failures are attributed to the
task too.

Example:
    >>> app = FastAPI()
    >>> app.add_middleware(RequestLoggingMiddleware)
"""

from __future__ import annotations

import re
import time
import uuid
from typing import TYPE_CHECKING

from starlette.middleware.base import BaseHTTPMiddleware

from buildfarm.logging import (
    bind_task_context,
    clear_task_context,
    get_logger,
    set_correlation_id,
)

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from starlette.requests import Request
    from starlette.responses import Response

logger = get_logger(__name__)

CORRELATION_HEADER = "X-Correlation-ID"

_REPORT_PATH = re.compile(r"^/api/tasks/(?P<task_id>[^/]+)/(?P<report>start|end|fetch_vars)$")


def _elapsed_ms(started: float) -> float:
    return round((time.perf_counter() - started) * 1000, 2)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Logs each request with its duration, status and correlation id."""

    async def dispatch(
        self,
        request: Request,
        call_next: Callable[[Request], Awaitable[Response]],
    ) -> Response:
        correlation_id = request.headers.get(CORRELATION_HEADER) or str(uuid.uuid4())
        set_correlation_id(correlation_id)

        fields: dict[str, object] = {"method": request.method, "path": request.url.path}
        report = _REPORT_PATH.match(request.url.path)
        if report is not None:
            bind_task_context(report.group("task_id"))
            fields["report"] = report.group("report")

        started = time.perf_counter()
        logger.info(
            "request_started",
            client=request.client.host if request.client else None,
            **fields,
        )

        try:
            response = await call_next(request)
        except Exception as exc:
            logger.error(
                "request_failed",
                duration_ms=_elapsed_ms(started),
                error=str(exc),
                exc_info=True,
                **fields,
            )
            raise
        finally:
            set_correlation_id(None)
            clear_task_context()

        log = logger.warning if response.status_code >= 500 else logger.info
        log(
            "request_completed",
            status_code=response.status_code,
            duration_ms=_elapsed_ms(started),
            correlation_id=correlation_id,
            **fields,
        )
        response.headers[CORRELATION_HEADER] = correlation_id
        return response
