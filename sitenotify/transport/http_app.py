# sitenotify/transport/http_app.py
"""
HTTP surface of the batch dispatch engine.

Routes only parse the request, call the dispatch services held on
``app.state`` and map ``DispatchError`` subtypes to HTTP responses.
Every error body uses the ``{"success": false, "error": ...}`` envelope the
admin frontend expects.
"""
from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from sitenotify.config import settings
from sitenotify.core.dispatch.cancellation import CancellationController
from sitenotify.core.dispatch.dispatcher import Dispatcher
from sitenotify.core.dispatch.errors import DispatchError
from sitenotify.core.dispatch.job_store import InMemoryJobStore
from sitenotify.core.dispatch.models import Channel
from sitenotify.core.dispatch.ports import ChannelClient, RecipientDirectory
from sitenotify.core.dispatch.progress import ProgressReader
from sitenotify.core.dispatch.worker_pool import WorkerPool
from sitenotify.infra.http_client import close_all_sessions
from sitenotify.infra.job_sweeper import JobSweeper
from sitenotify.infra.logging_config import get_logger, setup_logging
from sitenotify.infra.metrics import get_metrics_collector
from sitenotify.infra.notification_channels import get_channel_clients
from sitenotify.infra.rate_limiter import InMemoryRateLimiter, RateLimitDependency
from sitenotify.infra.recipient_directory import InlineRecipientDirectory
from sitenotify.transport.middleware import (
    ErrorHandlingMiddleware,
    RequestIDMiddleware,
    RequestLoggingMiddleware,
)
from sitenotify.transport.schemas import CreateBatchJobIn, CreateBatchJobOut, SuccessOut

# Initialize logging first
setup_logging(
    level=settings.log_level,
    use_json=settings.is_production
)

logger = get_logger(__name__)


# ============================================================================
# DEPENDENCIES
# ============================================================================

def get_dispatcher(request: Request) -> Dispatcher:
    return request.app.state.dispatcher


def get_progress_reader(request: Request) -> ProgressReader:
    return request.app.state.progress


def get_cancellation(request: Request) -> CancellationController:
    return request.app.state.cancellation


async def rate_limit_check(request: Request) -> None:
    """Rate limit dependency for job creation"""
    limiter_dep = request.app.state.rate_limiter
    await limiter_dep(request)


def _to_http(exc: DispatchError) -> HTTPException:
    return HTTPException(status_code=exc.status_code, detail=exc.detail)


# ============================================================================
# APP FACTORY
# ============================================================================

def create_app(
    *,
    channels: dict[Channel, ChannelClient] | None = None,
    directory: RecipientDirectory | None = None,
) -> FastAPI:
    """
    Build the application.  ``channels`` and ``directory`` default to the
    configured SMTP/WhatsApp clients and the inline recipient directory.
    """

    @asynccontextmanager
    async def lifespan(fastapi_app: FastAPI):
        """Application lifecycle: startup and shutdown"""

        # STARTUP
        logger.info(f"Starting application: env={settings.app_env}")

        store = InMemoryJobStore()
        pool = WorkerPool(
            store,
            concurrency=settings.dispatch_concurrency,
            send_timeout=settings.dispatch_send_timeout_seconds,
            send_interval=settings.dispatch_send_interval_seconds,
        )
        clients = channels if channels is not None else get_channel_clients()

        fastapi_app.state.store = store
        fastapi_app.state.pool = pool
        fastapi_app.state.dispatcher = Dispatcher(
            store,
            pool,
            directory if directory is not None else InlineRecipientDirectory(),
            clients,
            max_batch_size=settings.max_batch_size,
            default_language=settings.default_language,
        )
        fastapi_app.state.progress = ProgressReader(store)
        fastapi_app.state.cancellation = CancellationController(store)
        limiter = InMemoryRateLimiter(max_requests=settings.rate_limit_per_minute, window_seconds=60)
        fastapi_app.state.rate_limiter = RateLimitDependency(limiter)

        sweeper = JobSweeper(
            store,
            rate_limiter=limiter,
            retention_seconds=settings.job_retention_seconds,
            interval=settings.job_sweep_interval_seconds,
        )
        fastapi_app.state.sweeper = sweeper
        await sweeper.start()

        logger.info(
            f"Dispatch ready: channels={[c.value for c in clients]}, "
            f"concurrency={pool.concurrency}, max_batch={settings.max_batch_size}"
        )

        yield

        # SHUTDOWN
        logger.info("Shutting down application")
        await sweeper.stop()
        await pool.stop()
        await close_all_sessions()
        logger.info("Application shutdown complete")

    app = FastAPI(
        title="sitenotify",
        description="Bulk notification dispatch for worker QR codes and account credentials",
        version="1.0.0",
        lifespan=lifespan,
        docs_url=None if settings.is_production else "/docs",
        redoc_url=None if settings.is_production else "/redoc",
        openapi_url=None if settings.is_production else "/openapi.json",
    )

    if settings.is_production or settings.is_staging:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=settings.allowed_origins if settings.allowed_origins != ["*"] else [],
            allow_credentials=False,
            allow_methods=["GET", "POST"],
            allow_headers=["Content-Type", "Authorization"],
        )
    else:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    app.add_middleware(ErrorHandlingMiddleware)
    app.add_middleware(RequestLoggingMiddleware, enabled=settings.enable_request_logging)
    app.add_middleware(RequestIDMiddleware)

    _register_exception_handlers(app)
    _register_routes(app)
    return app


# ============================================================================
# EXCEPTION HANDLERS
# ============================================================================

def _register_exception_handlers(app: FastAPI) -> None:

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        if exc.status_code >= 500:
            logger.error(f"Server error: {exc.detail}", extra={"status_code": exc.status_code})

        return JSONResponse(
            status_code=exc.status_code,
            content={"success": False, "error": exc.detail},
            headers=exc.headers,
        )

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        first = exc.errors()[0] if exc.errors() else {}
        location = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
        message = first.get("msg", "Invalid request body")
        return JSONResponse(
            status_code=400,
            content={"success": False, "error": f"{location}: {message}" if location else message},
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception):
        logger.error(f"Unhandled exception: {exc.__class__.__name__}", exc_info=True)

        error_message = "Internal server error" if settings.is_production else f"{exc.__class__.__name__}: {exc}"
        return JSONResponse(
            status_code=500,
            content={"success": False, "error": error_message},
        )


# ============================================================================
# ROUTES
# ============================================================================

def _register_routes(app: FastAPI) -> None:

    @app.get("/health")
    def health():
        return {"status": "healthy"}

    @app.get("/metrics")
    def metrics():
        collector = get_metrics_collector()
        return collector.get_metrics()

    @app.post(
        "/jobs/{channel}",
        status_code=202,
        response_model=CreateBatchJobOut,
        dependencies=[Depends(rate_limit_check)],
    )
    async def create_batch_job(
        channel: str,
        payload: CreateBatchJobIn,
        dispatcher: Dispatcher = Depends(get_dispatcher),
    ):
        """Start a batch send; returns immediately with the job id."""
        try:
            job_id = await dispatcher.create_job(
                channel,
                payload.kind,
                payload.recipients,
                language=payload.language,
                login_url=payload.login_url,
            )
        except DispatchError as exc:
            raise _to_http(exc)
        return CreateBatchJobOut(jobId=job_id)

    @app.get("/jobs")
    async def list_jobs(request: Request, reader: ProgressReader = Depends(get_progress_reader)):
        jobs = reader.list_jobs()
        return {
            "success": True,
            "counts": request.app.state.store.count_by_status(),
            "jobs": [
                {
                    "jobId": j.job_id,
                    "channel": j.channel,
                    "kind": j.kind,
                    "status": j.status.value,
                    "progress": j.progress,
                    "total": j.total,
                    "success": j.success,
                    "failed": j.failed,
                    "createdAt": j.created_at.isoformat(),
                }
                for j in jobs
            ],
        }

    @app.get("/jobs/{job_id}/progress")
    async def get_job_progress(job_id: str, reader: ProgressReader = Depends(get_progress_reader)):
        try:
            progress = reader.get_snapshot(job_id)
        except DispatchError as exc:
            raise _to_http(exc)
        return {"success": True, "progress": progress.to_dict()}

    @app.post("/jobs/{job_id}/cancel", response_model=SuccessOut)
    async def cancel_job(job_id: str, controller: CancellationController = Depends(get_cancellation)):
        try:
            controller.cancel(job_id)
        except DispatchError as exc:
            raise _to_http(exc)
        return SuccessOut()


app = create_app()
