# outreach/transport/http_app.py
"""
Ops HTTP surface for the run dispatch engine.

Security layers:
1. Public: /health only (no details)
2. Protected: run control, scheduler trigger, metrics (require admin token)

The lifespan owns every background task: the asyncpg pool, per-run
dispatch loops, scheduled-run timers and the scheduled-run poller.
"""
from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from outreach.config import settings, validate_or_warn
from outreach.core.capacity import DispatchTuning
from outreach.core.dispatch_loop import DispatchLoop
from outreach.core.errors import DispatchEngineError
from outreach.core.run_metrics import MetricsAggregator
from outreach.core.run_state import RunStateRegistry
from outreach.core.scheduler import RunScheduler, ScheduledRunPoller
from outreach.infra.db_async import close_pool, init_pool
from outreach.infra.event_publisher import get_event_publisher
from outreach.infra.health_checks_async import AsyncHealthChecker
from outreach.infra.http_client import close_all_sessions
from outreach.infra.logging_config import get_logger, setup_logging
from outreach.infra.metrics import get_metrics_collector
from outreach.infra.pg_call_repo_async import get_call_repo
from outreach.infra.pg_directory_async import get_directory
from outreach.infra.pg_row_repo_async import get_row_repo
from outreach.infra.pg_run_repo_async import get_run_repo
from outreach.infra.telephony_client import RetellDispatcher
from outreach.transport.middleware import RequestIDMiddleware, RequestLoggingMiddleware
from outreach.transport.schemas import IncrementMetricRequest, OrgScopedRequest, ScheduleRunRequest
from outreach.transport.security import check_token_strength, require_admin_auth

# Initialize logging first
setup_logging(
    level=settings.log_level,
    use_json=settings.is_production
)

logger = get_logger(__name__)


# ============================================================================
# DEPENDENCIES
# ============================================================================

def get_scheduler(request: Request) -> RunScheduler:
    """Get the run scheduler from app state"""
    scheduler = getattr(request.app.state, "scheduler", None)
    if scheduler is None:
        raise HTTPException(status_code=503, detail="Dispatch engine not started")
    return scheduler


def get_health_checker(request: Request) -> AsyncHealthChecker:
    registry = getattr(request.app.state, "registry", None)
    return AsyncHealthChecker(registry)


def build_scheduler(tuning: DispatchTuning) -> tuple[RunScheduler, RunStateRegistry, MetricsAggregator]:
    """Wire the engine to the Postgres repositories, the telephony API and the event publisher."""
    runs = get_run_repo()
    rows = get_row_repo()
    publisher = get_event_publisher()

    registry = RunStateRegistry(tuning)
    aggregator = MetricsAggregator(runs, publisher, debounce_seconds=tuning.metrics_debounce_seconds)
    loop = DispatchLoop(
        runs=runs,
        rows=rows,
        calls=get_call_repo(),
        directory=get_directory(),
        dispatcher=RetellDispatcher(),
        publisher=publisher,
        metrics=aggregator,
        registry=registry,
        tuning=tuning,
        processor_id=settings.processor_id,
    )
    scheduler = RunScheduler(
        runs=runs,
        rows=rows,
        loop=loop,
        registry=registry,
        metrics=aggregator,
        publisher=publisher,
    )
    return scheduler, registry, aggregator


# ============================================================================
# LIFESPAN
# ============================================================================

@asynccontextmanager
async def lifespan(fastapi_app: FastAPI):
    """Startup and shutdown lifecycle"""
    # STARTUP
    logger.info(f"Starting dispatch engine processor_id={settings.processor_id} env={settings.app_env}")

    validate_or_warn(settings)
    check_token_strength()

    await init_pool()

    tuning = DispatchTuning.from_settings(settings)
    scheduler, registry, aggregator = build_scheduler(tuning)
    fastapi_app.state.scheduler = scheduler
    fastapi_app.state.registry = registry

    if settings.resume_running_runs_on_startup:
        resumed = await scheduler.resume_running_runs()
        logger.info(f"Startup recovery: resumed {len(resumed)} running run(s)")

    poller: Optional[ScheduledRunPoller] = None
    if settings.scheduler_poll_enabled:
        poller = ScheduledRunPoller(scheduler, interval=settings.scheduler_poll_interval_seconds)
        await poller.start()
    else:
        logger.info("Scheduled-run poller skipped (scheduler_poll_enabled=false)")

    logger.info("Application startup complete")

    yield

    # SHUTDOWN
    logger.info("Shutting down application")

    if poller is not None:
        await poller.stop()

    await scheduler.shutdown()
    await aggregator.close()
    await close_all_sessions()
    await close_pool()

    fastapi_app.state.scheduler = None
    logger.info("Application shutdown complete")


# ============================================================================
# CREATE APP
# ============================================================================

app = FastAPI(
    title="Outreach Dispatch Engine",
    description="Outbound call campaign run dispatcher",
    version="1.0.0",
    lifespan=lifespan,
    docs_url=None if settings.is_production else "/docs",
    redoc_url=None if settings.is_production else "/redoc",
    openapi_url=None if settings.is_production else "/openapi.json",
)

app.add_middleware(RequestLoggingMiddleware, enabled=settings.enable_request_logging)
app.add_middleware(RequestIDMiddleware)


# ============================================================================
# EXCEPTION HANDLERS
# ============================================================================

@app.exception_handler(DispatchEngineError)
async def engine_error_handler(request: Request, exc: DispatchEngineError):
    """Map engine errors to their HTTP status"""
    if exc.status_code >= 500:
        logger.error(f"Engine error: {exc.detail}", extra={"status_code": exc.status_code})
    return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    """Handle HTTP exceptions with appropriate logging"""
    if exc.status_code >= 500:
        logger.error(f"Server error: {exc.detail}", extra={"status_code": exc.status_code})

    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.detail},
        headers=exc.headers,
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    """Handle unexpected exceptions"""
    logger.error(f"Unhandled exception: {exc.__class__.__name__}", exc_info=True)
    message = "Internal server error" if settings.is_production else f"{exc.__class__.__name__}: {exc}"
    return JSONResponse(status_code=500, content={"error": message})


# ============================================================================
# PUBLIC ENDPOINTS
# ============================================================================

@app.get("/health")
def health():
    """Liveness probe. Returns minimal information."""
    return {"status": "healthy"}


# ============================================================================
# OPS ENDPOINTS (admin token)
# ============================================================================

@app.get("/health/detailed", dependencies=[Depends(require_admin_auth)])
async def detailed_health(checker: AsyncHealthChecker = Depends(get_health_checker)):
    result = await checker.run_checks(include_non_critical=True)
    status_code = 503 if result["status"] == "unhealthy" else 200
    return JSONResponse(status_code=status_code, content=result)


@app.get("/metrics", dependencies=[Depends(require_admin_auth)])
def metrics():
    return get_metrics_collector().get_metrics()


@app.post("/runs/{run_id}/schedule", dependencies=[Depends(require_admin_auth)])
async def schedule_run(
        run_id: str,
        payload: ScheduleRunRequest,
        scheduler: RunScheduler = Depends(get_scheduler),
):
    run = await scheduler.schedule_run(run_id, payload.scheduled_at, payload.org_id)
    return {
        "run_id": run.id,
        "status": run.status.value,
        "scheduled_at": run.scheduled_at.isoformat() if run.scheduled_at else None,
    }


@app.delete("/runs/{run_id}/schedule", dependencies=[Depends(require_admin_auth)])
async def cancel_schedule(
        run_id: str,
        org_id: str,
        scheduler: RunScheduler = Depends(get_scheduler),
):
    run = await scheduler.cancel_schedule(run_id, org_id)
    return {"run_id": run.id, "status": run.status.value}


@app.post("/runs/{run_id}/start", dependencies=[Depends(require_admin_auth)])
async def start_run(
        run_id: str,
        payload: OrgScopedRequest,
        scheduler: RunScheduler = Depends(get_scheduler),
):
    started = await scheduler.start_run(run_id, payload.org_id)
    return {"run_id": run_id, "started": started}


@app.post("/runs/{run_id}/pause", dependencies=[Depends(require_admin_auth)])
async def pause_run(
        run_id: str,
        payload: OrgScopedRequest,
        scheduler: RunScheduler = Depends(get_scheduler),
):
    run = await scheduler.pause_run(run_id, payload.org_id)
    return {"run_id": run.id, "status": run.status.value}


@app.post("/runs/{run_id}/complete", dependencies=[Depends(require_admin_auth)])
async def complete_run(
        run_id: str,
        payload: OrgScopedRequest,
        scheduler: RunScheduler = Depends(get_scheduler),
):
    completed = await scheduler.complete_run(run_id, payload.org_id)
    return {"run_id": run_id, "completed": completed}


@app.post("/runs/{run_id}/metrics", dependencies=[Depends(require_admin_auth)])
async def increment_metric(
        run_id: str,
        payload: IncrementMetricRequest,
        scheduler: RunScheduler = Depends(get_scheduler),
):
    try:
        applied = await scheduler.increment_metric(run_id, payload.path, payload.amount)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return {"run_id": run_id, "path": payload.path, "applied": applied}


@app.post("/internal/check-scheduled", dependencies=[Depends(require_admin_auth)])
async def check_scheduled(scheduler: RunScheduler = Depends(get_scheduler)):
    started = await scheduler.check_scheduled_runs()
    return {"started": started, "count": len(started)}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "outreach.transport.http_app:app",
        host="0.0.0.0",
        port=8099,
        reload=not settings.is_production,
        log_level=settings.log_level.lower(),
        access_log=not settings.is_production,  # Middleware logs requests in prod
        server_header=False,
        date_header=False,
    )
