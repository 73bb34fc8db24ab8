"""FastAPI application factory."""

import asyncio
from contextlib import asynccontextmanager
from typing import Callable, Optional

import structlog
from fastapi import FastAPI, Request, Response, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from starlette.exceptions import HTTPException as StarletteHTTPException

from tryon.api.routes import credits, jobs, payments, webhooks
from tryon.core import timezone  # noqa: F401  (sets TZ=UTC)
from tryon.core.config import Settings, configure_logging
from tryon.core.database import setup_db_session
from tryon.services.auth import AuthClient
from tryon.services.ledger import CreditLedger
from tryon.services.lifecycle import JobLifecycleManager
from tryon.services.payments.midtrans import MidtransClient, PaymentService
from tryon.services.providers.registry import ProviderRegistry
from tryon.uow import create_uow_factory
from tryon.workers.status_sweep_worker import run_status_sweep_worker

logger = structlog.get_logger()


class WorkerHandle:
    """Points at whichever task currently runs a restartable worker."""

    def __init__(self, worker_name: str, shutdown_event: asyncio.Event):
        self.worker_name = worker_name
        self.shutdown_event = shutdown_event
        self.task: Optional[asyncio.Task] = None
        self.restart_task: Optional[asyncio.Task] = None
        self.restarts = 0

    async def stop(self) -> None:
        """Signal shutdown, then cancel and await the running task and any pending restart."""
        self.shutdown_event.set()
        pending = [t for t in (self.restart_task, self.task) if t is not None]
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)


def create_resilient_worker(
    coro_func,
    session_factory,
    settings,
    worker_name: str,
    shutdown_event: asyncio.Event,
    restart_delay: float = 1,
) -> WorkerHandle:
    """Create a worker with automatic restart on failure.

    Args:
        coro_func: Worker coroutine function (e.g., run_status_sweep_worker)
        session_factory: Database session factory
        settings: Application settings
        worker_name: Human-readable worker name for logging
        shutdown_event: Event to signal graceful shutdown
        restart_delay: Seconds to wait before restarting a crashed worker

    Returns:
        Handle whose ``task`` follows the worker across restarts
    """
    handle = WorkerHandle(worker_name, shutdown_event)

    def start() -> None:
        handle.task = asyncio.create_task(coro_func(session_factory, settings))
        handle.task.add_done_callback(on_worker_done)

    def on_worker_done(task: asyncio.Task):
        if shutdown_event.is_set():
            logger.info("worker.shutdown_complete", worker=worker_name)
            return

        if task.cancelled():
            logger.info("worker.cancelled", worker=worker_name)
            return

        exc = task.exception()
        if exc:
            logger.error(
                "worker.crashed",
                worker=worker_name,
                error=str(exc),
                error_type=type(exc).__name__,
                retry_in_seconds=restart_delay,
                exc_info=exc,
            )
        else:
            # Infinite loop workers only return on a bug
            logger.warning(
                "worker.stopped_unexpectedly",
                worker=worker_name,
                retry_in_seconds=restart_delay,
            )

        async def restart_worker():
            await asyncio.sleep(restart_delay)

            if shutdown_event.is_set():
                return

            logger.info("worker.restarting", worker=worker_name)
            handle.restarts += 1
            start()

        handle.restart_task = asyncio.create_task(restart_worker())

    start()
    return handle


def init_services(app: FastAPI, uow_factory: Callable) -> None:
    """Create the services that need a database on app.state.

    Called from the lifespan once the session factory exists. Tests call it
    with their own unit of work factory.
    """
    settings: Settings = app.state.settings
    app.state.uow_factory = uow_factory
    app.state.lifecycle = JobLifecycleManager.from_settings(
        settings, uow_factory, app.state.registry
    )
    app.state.payments = PaymentService(
        uow_factory=uow_factory,
        ledger=app.state.ledger,
        client=MidtransClient(
            settings.midtrans_server_key,
            settings.midtrans_snap_url,
            timeout=settings.provider_timeout_seconds,
        ),
        server_key=settings.midtrans_server_key,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan context manager.

    Handles startup and shutdown tasks:
    - Startup: Initialize database session factory, configure logging, start the sweep worker
    - Shutdown: Stop the worker
    """
    settings: Settings = app.state.settings

    configure_logging(settings)

    session_factory = setup_db_session(settings.database_url, settings.db_pool_size)
    app.state.session_factory = session_factory
    init_services(app, create_uow_factory(session_factory))

    shutdown_event = asyncio.Event()
    sweep_worker = None
    if settings.sweep_enabled:
        sweep_worker = create_resilient_worker(
            run_status_sweep_worker, session_factory, settings, "status_sweep", shutdown_event
        )

    logger.info(
        "application.startup",
        db_url=settings.database_url.split("@")[-1],
        providers=[p.value for p in app.state.registry.providers],
    )

    yield

    logger.info("application.shutdown")
    shutdown_event.set()

    if sweep_worker is not None:
        await sweep_worker.stop()


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """Create and configure FastAPI application.

    Args:
        settings: Settings to use instead of the environment (tests)

    Returns:
        Configured FastAPI application instance
    """
    settings = settings or Settings()  # type: ignore[call-arg]

    app = FastAPI(
        title="Try-On Backend API",
        description="Virtual try-on job lifecycle, provider webhooks and credit ledger",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.state.settings = settings
    app.state.registry = ProviderRegistry.from_settings(settings)
    app.state.ledger = CreditLedger.from_settings(settings)
    app.state.auth_client = AuthClient(settings.supabase_url, settings.supabase_service_role_key)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(jobs.router)
    app.include_router(credits.router)
    app.include_router(payments.router)
    app.include_router(webhooks.router, prefix="/webhooks", tags=["webhooks"])

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        return JSONResponse(
            status_code=exc.status_code,
            content={"success": False, "error": exc.detail},
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={
                "success": False,
                "error": "Invalid request",
                "details": jsonable_encoder(exc.errors()),
            },
        )

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        logger.error(
            "request.unhandled_error",
            path=request.url.path,
            error=str(exc),
            error_type=type(exc).__name__,
        )
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content={"error": str(exc)}
        )

    # Health check endpoint with database validation
    @app.get("/health")
    async def health_check(response: Response):
        """Health check endpoint with database connectivity test.

        Returns:
            200: {"status": "healthy"} if database connection succeeds
            503: {"status": "unhealthy", "error": {...}} if database connection fails
        """
        try:
            async with app.state.session_factory() as session:
                result = await session.execute(text("SELECT 1"))
                result.scalar()

            logger.debug("health_check.success")
            return {"status": "healthy"}

        except Exception as e:
            logger.error(
                "health_check.failed",
                error=str(e),
                error_type=type(e).__name__,
            )
            response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
            return {
                "status": "unhealthy",
                "error": {
                    "type": type(e).__name__,
                    "message": str(e),
                },
            }

    return app


# Create app instance for uvicorn
app = create_app()
