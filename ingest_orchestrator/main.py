# File: ingest_orchestrator/main.py
import time
import uuid
import structlog
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request, status as fastapi_status
from fastapi.responses import JSONResponse
from prometheus_client import make_asgi_app
from sqlalchemy.exc import SQLAlchemyError

from ingest_orchestrator.core.logging_config import setup_logging
setup_logging()

from ingest_orchestrator.core.config import settings
from ingest_orchestrator.api.v1.endpoints import settings as settings_endpoints
from ingest_orchestrator.api.v1.endpoints import tasks
from ingest_orchestrator.api.v1.schemas import HealthResponse
from ingest_orchestrator.core.metrics import REQUEST_PROCESSING_DURATION_SECONDS
from ingest_orchestrator.db.postgres_client import check_db_connection, create_schema, dispose_async_engine
from ingest_orchestrator.dependencies import build_default_container

log = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    log.info("Ingest Orchestrator startup sequence initiated...")
    container = build_default_container()
    app.state.container = container
    if settings.DB_CREATE_SCHEMA_ON_STARTUP:
        try:
            await create_schema()
        except (SQLAlchemyError, OSError) as e:
            log.critical("CRITICAL: Could not create database schema", error=str(e))
            await container.close()
            await dispose_async_engine()
            raise
    container.scheduler.start()
    log.info("Dependencies initialized, reconciliation scheduler running.")
    yield
    log.info("Ingest Orchestrator shutdown sequence initiated...")
    await container.close()
    await dispose_async_engine()
    log.info("Shutdown sequence complete.")


app = FastAPI(
    title=settings.PROJECT_NAME,
    openapi_url=f"{settings.API_V1_STR}/openapi.json",
    version="1.0.0",
    description="Tracks document conversion jobs on the worker and ingests their results exactly once.",
    lifespan=lifespan,
)

metrics_app = make_asgi_app()
app.mount("/metrics", metrics_app)


@app.middleware("http")
async def add_request_context_and_metrics(request: Request, call_next):
    start_time = time.perf_counter()
    request_id = request.headers.get("x-request-id", str(uuid.uuid4()))

    if request.url.path.startswith("/metrics"):
        return await call_next(request)

    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(request_id=request_id)

    response = await call_next(request)

    process_time = time.perf_counter() - start_time
    route = request.scope.get("route")
    path = getattr(route, "path", request.url.path)
    REQUEST_PROCESSING_DURATION_SECONDS.labels(method=request.method, path=path).observe(process_time)

    response.headers["X-Request-ID"] = request_id
    log.info("Request processed", method=request.method, path=request.url.path, status_code=response.status_code, duration_ms=round(process_time * 1000, 2))
    return response


app.include_router(tasks.router, prefix=settings.API_V1_STR, tags=["Tasks"])
app.include_router(settings_endpoints.router, prefix=settings.API_V1_STR, tags=["Settings"])


@app.get("/health", tags=["Health Check"], response_model=HealthResponse)
async def health_check(request: Request):
    container = getattr(request.app.state, "container", None)
    if container is None:
        return JSONResponse(
            status_code=fastapi_status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"status": "starting", "service": settings.PROJECT_NAME, "dependencies": {}},
        )

    db_ok = await check_db_connection()
    worker_ok = await container.worker.health_check()
    dependencies = {
        "database": "ok" if db_ok else "unavailable",
        "worker": "ok" if worker_ok else "unavailable",
        "scheduler": "running" if container.scheduler.is_running else "stopped",
    }
    # the worker being down only delays tasks; the database is required
    if not db_ok:
        return JSONResponse(
            status_code=fastapi_status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"status": "unhealthy", "service": settings.PROJECT_NAME, "dependencies": dependencies},
        )
    return HealthResponse(
        status="healthy" if worker_ok else "degraded",
        service=settings.PROJECT_NAME,
        dependencies=dependencies,
    )
