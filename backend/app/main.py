"""
FastAPI application entry point.

Run with:
    uvicorn backend.app.main:app --reload --port 8000

Or from the project root:
    python -m uvicorn backend.app.main:app --reload
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

# ── Core infrastructure ──
from backend.app.core.config import settings
from backend.app.core.logging_config import setup_logging, get_logger
from backend.app.core.errors import register_error_handlers
from backend.app.core.middleware import RequestLoggingMiddleware
from backend.app.core.health import HealthStatus, run_health_check

# ── Alert pipeline ──
from backend.app.alerts.alert_service import build_alert_service

# ── API routers ──
from backend.app.api.v1.alerts import router as alert_router
from backend.app.api.v1.communities import router as community_router
from backend.app.api.v1.identity import router as identity_router

# ── Initialise logging ──
setup_logging()
logger = get_logger(__name__)


# ── Application lifespan (startup / shutdown) ──

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the alert service, start background monitoring, tear down on exit."""
    logger.info(
        "Starting %s v%s [%s] (store=%s)",
        settings.APP_NAME, settings.APP_VERSION, settings.ENVIRONMENT,
        settings.ALERT_STORE_BACKEND,
    )
    # A pre-built service (tests, embedding) takes precedence
    service = getattr(app.state, "alert_service", None) or build_alert_service(settings)
    app.state.alert_service = service
    await run_in_threadpool(service.start)
    yield
    logger.info("Shutting down %s", settings.APP_NAME)
    await run_in_threadpool(service.shutdown)
    app.state.alert_service = None


# ── Create application ──

app = FastAPI(
    title=settings.APP_NAME,
    description=(
        "Community emergency alerts. Members broadcast an SOS with their "
        "best available location; every other member's device receives it "
        "once per channel (in-app dialog and system notification), filtered "
        "by a per-observer freshness watermark so history replays and the "
        "sender's own alerts never re-notify."
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
app.include_router(community_router)
app.include_router(identity_router)


# ── Root & health endpoints ──

@app.get("/", tags=["root"])
async def root():
    return {
        "service": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "environment": settings.ENVIRONMENT,
        "modules": [
            "emergency-broadcast",
            "freshness-filter",
            "alert-dispatch",
            "dual-observers",
            "community-registry",
        ],
        "docs": "/docs",
    }


@app.get("/health", tags=["health"])
async def health_check():
    """Deep health probe — store, observers, preferences."""
    report = await run_health_check(app.state.alert_service)
    return report.to_dict()


@app.get("/health/live", tags=["health"])
async def liveness():
    """Kubernetes liveness probe — is the process alive?"""
    return {"status": "alive"}


@app.get("/health/ready", tags=["health"])
async def readiness():
    """Kubernetes readiness probe — can we serve traffic?"""
    report = await run_health_check(app.state.alert_service)
    if report.status == HealthStatus.UNHEALTHY:
        return JSONResponse(status_code=503, content=report.to_dict())
    return report.to_dict()
