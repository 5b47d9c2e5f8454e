from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI
from loguru import logger

from cardpool_api import __version__
from cardpool_api.core.settings import settings
from cardpool_api.db.session import async_session
from .api.routes import api_router
from .core.logging import configure_logging
from .observability.tracing import configure_tracing
from .scheduling import SweepJobScheduler
from .workers import AccountLifecycleWorker, PendingReconciliationWorker

APP_VERSION = __version__


def _session_factory():
    return async_session()


def _resolve_schedule_path() -> Path:
    schedule_path = Path(settings.job_schedule_path)
    if not schedule_path.is_absolute():
        schedule_path = Path(__file__).resolve().parent.parent.parent / schedule_path
    return schedule_path


@asynccontextmanager
async def lifespan(app: FastAPI):
    pending_worker = PendingReconciliationWorker(_session_factory)
    lifecycle_worker = AccountLifecycleWorker(_session_factory)
    schedule_path = _resolve_schedule_path()
    job_scheduler = SweepJobScheduler(session_factory=_session_factory, config_path=schedule_path)

    app.state.pending_reconciliation_worker = pending_worker
    app.state.account_lifecycle_worker = lifecycle_worker
    app.state.sweep_job_scheduler = job_scheduler

    scheduler_enabled = settings.job_scheduler_enabled
    if scheduler_enabled:
        try:
            job_scheduler.start()
        except FileNotFoundError as exc:
            logger.exception("Sweep scheduler failed to start", error=str(exc))
        else:
            logger.info("Sweep scheduler enabled", schedule_path=str(schedule_path))
    else:
        logger.info("Sweep scheduler disabled", reason="job_scheduler_enabled is false")

    # A sweep is driven either by its interval worker or by the scheduler, never both.
    pending_enabled = settings.pending_reconciler_enabled and not scheduler_enabled
    if pending_enabled:
        pending_worker.start()
    elif settings.pending_reconciler_enabled:
        logger.info("Pending reconciliation managed via scheduler", schedule_path=str(schedule_path))
    else:
        logger.info("Pending reconciliation worker disabled", reason="pending_reconciler_enabled is false")

    lifecycle_enabled = settings.lifecycle_sweep_enabled and not scheduler_enabled
    if lifecycle_enabled:
        lifecycle_worker.start()
    elif settings.lifecycle_sweep_enabled:
        logger.info("Account lifecycle sweep managed via scheduler", schedule_path=str(schedule_path))
    else:
        logger.info("Account lifecycle worker disabled", reason="lifecycle_sweep_enabled is false")

    try:
        yield
    finally:
        if pending_enabled and pending_worker.is_running:
            await pending_worker.stop()
        if lifecycle_enabled and lifecycle_worker.is_running:
            await lifecycle_worker.stop()
        if scheduler_enabled and job_scheduler.is_running:
            await job_scheduler.stop()


def create_app() -> FastAPI:
    """Application factory for the cardpool service."""
    configure_logging(
        service_name="cardpool-api",
        environment=settings.environment,
        version=APP_VERSION,
    )

    app = FastAPI(
        title="Cardpool API",
        version=APP_VERSION,
        docs_url="/docs",
        redoc_url=None,
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    configure_tracing(
        app,
        service_name="cardpool-api",
        service_version=APP_VERSION,
        environment=settings.environment,
    )

    app.include_router(api_router)
    return app
