"""
FastAPI application entry point.

Run with:
    uvicorn sos_relay.app.main:app --reload --port 8000
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

# ── Core infrastructure ──
from sos_relay.app.core.config import settings
from sos_relay.app.core.logging_config import setup_logging, get_logger
from sos_relay.app.core.errors import register_error_handlers
from sos_relay.app.core.middleware import RequestLoggingMiddleware
from sos_relay.app.core.health import HealthStatus, run_health_check
from sos_relay.app.services import build_services, get_services, set_services

# ── API routers ──
from sos_relay.app.api.v1.alerts import router as alert_router
from sos_relay.app.api.v1.profiles import router as profile_router
from sos_relay.app.api.v1.dispatch import router as dispatch_router

# ── Initialise logging ──
setup_logging()
logger = get_logger(__name__)


# ── Application lifespan (startup / shutdown) ──

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build services, subscribe the live feed and escalation; close everything on shutdown."""
    logger.info(
        "Starting %s v%s [%s]",
        settings.APP_NAME, settings.APP_VERSION, settings.ENVIRONMENT,
    )
    services = build_services(settings)
    services.start()
    set_services(services)
    try:
        await services.arm_from_registry()
        yield
    finally:
        logger.info("Shutting down %s", settings.APP_NAME)
        await services.close()
        set_services(None)


# ── Create application ──

app = FastAPI(
    title=settings.APP_NAME,
    description=(
        "Emergency SOS relay. Accepts citizen reports (with an SMS "
        "fallback when offline), persists them to a realtime store, "
        "push-notifies registered dispatchers, and serves the dispatcher "
        "feed, status lifecycle, alarm escalation and AI advisory "
        "text."
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
app.include_router(profile_router)
app.include_router(dispatch_router)


# ── Root & health endpoints ──

@app.get("/", tags=["root"])
async def root():
    return {
        "service": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "environment": settings.ENVIRONMENT,
        "modules": [
            "citizen-submission",
            "sms-handoff",
            "push-broadcast",
            "dispatcher-feed",
            "alert-lifecycle",
            "alarm-escalation",
            "ai-advisory",
        ],
        "docs": "/docs",
    }


@app.get("/health", tags=["health"])
async def health_check():
    """Deep health check — store, push, advisory and live feed."""
    report = await run_health_check(get_services())
    if report.status == HealthStatus.UNHEALTHY:
        return JSONResponse(status_code=503, content=report.to_dict())
    return report.to_dict()


@app.get("/health/live", tags=["health"])
async def liveness():
    """Liveness check — is the process alive?"""
    return {"status": "alive"}
