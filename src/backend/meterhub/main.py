"""MeterHub FastAPI Application Entry Point."""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

import structlog
from fastapi import FastAPI, Depends
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from meterhub.api import router as api_router
from meterhub.core.config import settings
from meterhub.core.deps import async_session_factory, get_db, engine
from meterhub.core.logging import configure_logging
from meterhub.services.bootstrap_service import create_schema, ensure_master_user
from meterhub.services.device_monitor_service import DeviceMonitorService
from meterhub.services.health_service import VERSION, liveness, readiness

configure_logging()

logger = structlog.get_logger()

# Module-level reference for the background sweeper
_device_monitor: DeviceMonitorService | None = None


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler for startup/shutdown events."""
    global _device_monitor

    # Startup
    logger.info("Starting MeterHub application", environment=settings.environment)

    if settings.auto_create_schema:
        await create_schema(engine)

    # Master operator exists before the first request is served
    async with async_session_factory() as session:
        await ensure_master_user(session)

    if settings.device_monitor_enabled:
        try:
            _device_monitor = DeviceMonitorService(
                session_factory=async_session_factory,
                poll_interval=settings.device_monitor_poll_interval,
                offline_threshold_seconds=settings.device_offline_threshold_seconds,
            )
            await _device_monitor.start()
        except Exception as e:
            logger.warning("Failed to start device monitor service", error=str(e))

    yield

    # Shutdown
    logger.info("Shutting down MeterHub application")

    if _device_monitor:
        await _device_monitor.stop()
        _device_monitor = None

    await engine.dispose()


app = FastAPI(
    title="MeterHub API",
    description="Energy meter telemetry ingestion and relay control",
    version=VERSION,
    docs_url="/api/docs",
    redoc_url="/api/redoc",
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include API routes
app.include_router(api_router, prefix="/api/v1")


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request, exc):
    # Convert errors to JSON-serializable format
    errors = []
    for error in exc.errors():
        err = {
            "loc": error.get("loc"),
            "msg": str(error.get("msg")),
            "type": error.get("type"),
        }
        errors.append(err)

    logger.warning("Validation error",
                   path=str(request.url.path),
                   errors=errors)
    return JSONResponse(
        status_code=422,
        content={"detail": errors}
    )


# Set up Prometheus metrics instrumentation
if settings.metrics_enabled:
    from meterhub.core.metrics import setup_metrics, expose_metrics

    _instrumentator = setup_metrics(app)
    expose_metrics(app, _instrumentator)


@app.get("/health")
async def health_check() -> dict:
    """Liveness: the process is up and serving."""
    return liveness()


@app.get("/health/ready")
async def readiness_check(db: AsyncSession = Depends(get_db)) -> JSONResponse:
    """Readiness: meter registry reachable and offline sweeper running when enabled."""
    report = await readiness(db, _device_monitor)
    return JSONResponse(status_code=200 if report.ready else 503, content=report.to_dict())
