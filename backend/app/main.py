"""
FastAPI application entry point.

Run with:
    uvicorn backend.app.main:app --reload --port 8000

Or from the project root:
    python -m uvicorn backend.app.main:app --reload
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

# ── Core infrastructure ──
from backend.app.core.config import settings
from backend.app.core.logging_config import setup_logging, get_logger
from backend.app.core.errors import register_error_handlers
from backend.app.core.middleware import RequestLoggingMiddleware
from backend.app.core.health import HealthStatus, run_health_check

# ── Fanout engine ──
from backend.app.notifications.container import build_container

# ── API routers ──
from backend.app.api.v1.alerts import router as alert_router
from backend.app.api.v1.topics import router as topic_router
from backend.app.api.v1.deliveries import router as delivery_router
from backend.app.api.v1.devices import router as device_router
from backend.app.api.v1.realtime import router as realtime_router

# ── Initialise logging ──
setup_logging()
logger = get_logger(__name__)


# ── Application lifespan (startup / shutdown) ──

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the notification container, start jobs, tear down on exit."""
    logger.info(
        "Starting %s v%s [%s]",
        settings.APP_NAME, settings.APP_VERSION, settings.ENVIRONMENT,
    )
    container = await build_container()
    app.state.container = container
    if settings.ENABLE_BACKGROUND_JOBS:
        await container.start_jobs()
    try:
        yield
    finally:
        logger.info("Shutting down %s", settings.APP_NAME)
        await container.close()


# ── Create application ──

app = FastAPI(
    title=settings.APP_NAME,
    description=(
        "Alert fanout engine for missing-person cases. "
        "Maps alert categories to delivery channels through an escalation "
        "table, resolves audiences from topic subscriptions, roles, "
        "explicit recipients, case contacts and geographic radius, "
        "delivers over realtime, push, email and SMS with per-channel "
        "failure isolation, records every delivery attempt, and retries "
        "transient failures in the background."
    ),
    version=settings.APP_VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

# ── Middleware stack (outermost first) ──

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS if not settings.CORS_ALLOW_ALL else ["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(RequestLoggingMiddleware)

# ── Error handlers ──
register_error_handlers(app)

# ── Register routers ──
app.include_router(alert_router)
app.include_router(topic_router)
app.include_router(delivery_router)
app.include_router(device_router)
app.include_router(realtime_router)


# ── Root & health endpoints ──

@app.get("/", tags=["root"])
async def root():
    return {
        "service": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "environment": settings.ENVIRONMENT,
        "modules": [
            "escalation-policy",
            "audience-resolution",
            "topic-subscriptions",
            "channel-delivery",
            "delivery-records",
            "retry-scheduler",
            "realtime-websocket",
            "device-registry",
            "daily-digest",
        ],
        "docs": "/docs",
    }


@app.get("/health", tags=["health"])
async def health_check(request: Request):
    """Deep health probe — checks all subsystems."""
    report = await run_health_check(request.app.state.container)
    return report.to_dict()


@app.get("/health/live", tags=["health"])
async def liveness():
    """Kubernetes liveness probe — is the process alive?"""
    return {"status": "alive"}


@app.get("/health/ready", tags=["health"])
async def readiness(request: Request):
    """Kubernetes readiness probe — can we serve traffic?"""
    report = await run_health_check(request.app.state.container)
    if report.status == HealthStatus.UNHEALTHY:
        return JSONResponse(status_code=503, content=report.to_dict())
    return report.to_dict()
