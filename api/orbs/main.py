import asyncio
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Response
from sqlalchemy import text

from orbs.config import settings
from orbs.database import async_session_factory, engine
from orbs.logging_config import configure_logging
from orbs.metrics import metrics_endpoint
from orbs.middleware.logging_middleware import RequestLoggingMiddleware
from orbs.routers import jobs, snapshots
from orbs.services.generation import GenerationService
from orbs.services.labeling import LabelGenerator
from orbs.services.store import OrbStore
from orbs.worker.orbs_worker import OrbsWorker, orbs_worker_loop

log = structlog.get_logger(__name__)


def build_orbs_worker(generation: GenerationService) -> OrbsWorker:
    """Wire the worker's collaborators; lifecycle stays with the caller."""
    return OrbsWorker(
        store=OrbStore(async_session_factory),
        labeler=LabelGenerator(generation, retry_delay=settings.label_retry_delay_seconds),
        config=settings,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Configure structured logging before anything else
    configure_logging()

    app.state.generation = GenerationService()
    app.state.orbs_worker = build_orbs_worker(app.state.generation)

    # Optional in-process scheduler; usually an external cron hits /jobs
    app.state.orbs_worker_task = None
    if settings.recompute_interval_seconds > 0:
        app.state.orbs_worker_task = asyncio.create_task(
            orbs_worker_loop(app.state.orbs_worker, settings.recompute_interval_seconds)
        )
    else:
        log.info("orbs_scheduler_disabled")
    try:
        yield
    finally:
        if app.state.orbs_worker_task is not None:
            app.state.orbs_worker_task.cancel()
        await app.state.generation.close()
        await engine.dispose()


app = FastAPI(title=settings.app_name, version="0.1.0", lifespan=lifespan)

# Register request logging middleware (runs on every request)
app.add_middleware(RequestLoggingMiddleware)

app.include_router(jobs.router)
app.include_router(snapshots.router)

# Prometheus metrics endpoint
app.get("/metrics")(metrics_endpoint)


@app.get("/health")
async def health_check(response: Response):
    """Health check — verifies the database and the in-process scheduler.

    Returns 200 if all components are healthy, 503 if any component is unhealthy.
    The scheduler check only applies when RECOMPUTE_INTERVAL_SECONDS > 0.
    """
    checks = {}
    overall_healthy = True

    try:
        async with async_session_factory() as db:
            await db.execute(text("SELECT 1"))
        checks["database"] = {"status": "healthy"}
    except Exception as e:
        checks["database"] = {"status": "unhealthy", "error": str(e)}
        overall_healthy = False

    worker = getattr(app.state, "orbs_worker_task", None)
    if worker is None:
        checks["orbs_worker"] = {"status": "disabled"}
    elif worker.done() or worker.cancelled():
        checks["orbs_worker"] = {"status": "unhealthy", "error": "Worker task stopped"}
        overall_healthy = False
    else:
        checks["orbs_worker"] = {"status": "healthy"}

    response.status_code = 200 if overall_healthy else 503
    return {"status": "healthy" if overall_healthy else "unhealthy", "checks": checks}
