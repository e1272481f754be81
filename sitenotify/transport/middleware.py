# sitenotify/transport/middleware.py
"""
Request middleware: request IDs, job-aware access logging, 500 envelope.

Access log lines for ``/jobs/...`` routes carry the job id (or the target
channel on batch creation) so one job's HTTP traffic can be followed next to
its dispatch log lines.
"""
import re
import time
import uuid
from typing import Callable
from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp
from sitenotify.core.dispatch.models import Channel
from sitenotify.infra.logging_config import get_logger, LogContext

logger = get_logger(__name__)

_JOB_PATH_RE = re.compile(r"^/jobs/(?P<segment>[^/]+)(?:/(?P<action>progress|cancel))?/?$")
_CHANNELS = {c.value for c in Channel}


def job_context(path: str) -> dict[str, str]:
    """
    Pull the job id or channel out of a ``/jobs/...`` path.

    ``/jobs/email`` -> {"channel": "email"}
    ``/jobs/email_ab12/progress`` -> {"job_id": "email_ab12", "channel": "email"}
    """
    match = _JOB_PATH_RE.match(path)
    if not match:
        return {}
    segment = match.group("segment")
    if match.group("action") is None:
        return {"channel": segment} if segment in _CHANNELS else {}

    context = {"job_id": segment}
    prefix = segment.split("_", 1)[0]
    if prefix in _CHANNELS:
        context["channel"] = prefix
    return context


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Add unique request ID to each request for tracing"""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
        request.state.request_id = request_id

        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Access log for the dispatch API; health and metrics checks log at DEBUG."""

    QUIET_PATHS = frozenset({"/health", "/metrics"})

    def __init__(self, app: ASGIApp, enabled: bool = True):
        super().__init__(app)
        self.enabled = enabled

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if not self.enabled:
            return await call_next(request)

        path = request.url.path
        log_ctx = LogContext(
            logger,
            request_id=getattr(request.state, "request_id", "unknown"),
            **job_context(path),
        )
        start_time = time.monotonic()

        try:
            response = await call_next(request)
        except Exception as exc:
            duration_ms = (time.monotonic() - start_time) * 1000
            log_ctx.error(
                f"{request.method} {path} failed: {exc.__class__.__name__} ({duration_ms:.1f}ms)",
                extra={
                    "method": request.method,
                    "path": path,
                    "error_type": exc.__class__.__name__,
                    "duration_ms": duration_ms,
                },
                exc_info=True
            )
            raise

        duration_ms = (time.monotonic() - start_time) * 1000
        log = log_ctx.debug if path in self.QUIET_PATHS else log_ctx.info
        log(
            f"{request.method} {path} -> {response.status_code} ({duration_ms:.1f}ms)",
            extra={
                "method": request.method,
                "path": path,
                "status_code": response.status_code,
                "duration_ms": duration_ms,
                "client_ip": request.client.host if request.client else None,
            }
        )
        return response


class ErrorHandlingMiddleware(BaseHTTPMiddleware):
    """Catch unhandled exceptions and answer in the API's error envelope"""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        try:
            return await call_next(request)
        except Exception as exc:
            request_id = getattr(request.state, "request_id", "unknown")

            logger.error(
                f"Unhandled exception on {request.method} {request.url.path}: "
                f"{exc.__class__.__name__}: {exc}",
                extra={"request_id": request_id, **job_context(request.url.path)},
                exc_info=True
            )

            return JSONResponse(
                status_code=500,
                content={
                    "success": False,
                    "error": "Internal server error",
                    "request_id": request_id,
                }
            )
