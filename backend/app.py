"""
SignalDesk FastAPI Backend
Main application entry point.

Production features:
- Real health check with subsystem status
- Request correlation IDs for log tracing
- Structured JSON logging
- Rate limiting per endpoint
- Graceful shutdown with in-flight request draining
"""
import asyncio
import os
import threading
from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from starlette.middleware.gzip import GZipMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse
import logging
import uvicorn

from api.routes import router as api_router
from api.dependencies import close_gateways
from api.middleware import (
    correlation_id_middleware,
    configure_structured_logging,
    limiter,
    rate_limit_exceeded_handler,
)
from api.health import build_health_response, mark_startup, APP_VERSION
from config.settings import get_settings
from services.logging_service import configure_file_logging, cleanup_old_files
from storage.database import init_db, check_integrity

logger = logging.getLogger(__name__)

# ── Graceful Shutdown State ──────────────────────────────────────────────────
_shutdown_event = threading.Event()


def _is_shutting_down() -> bool:
    return _shutdown_event.is_set()


@asynccontextmanager
async def _lifespan(_app: FastAPI):
    """Configure logging and storage, then release gateways on shutdown."""
    settings = get_settings()
    try:
        configure_file_logging(settings.log_directory)
        removed = cleanup_old_files(settings.log_directory, settings.log_retention_days)
        if removed:
            logger.info("Removed %d expired log files", removed)
    except OSError:
        logger.warning("File logging unavailable at %s", settings.log_directory, exc_info=True)
    configure_structured_logging(settings.log_level)
    mark_startup()
    _shutdown_event.clear()
    logger.info("SignalDesk backend starting up (env=%s)", settings.environment)

    # ── Database init ────────────────────────────────────────────────────
    try:
        init_db()
        logger.info("Database initialized successfully")
    except (RuntimeError, ValueError, TypeError):
        logger.exception("Failed to initialize database schema")
        raise

    ok, result = check_integrity()
    if not ok:
        logger.critical("Database integrity check failed: %s; continuing anyway", result)

    try:
        yield
    finally:
        logger.info("Initiating graceful shutdown...")
        _shutdown_event.set()
        await close_gateways()
        # Allow in-flight requests to drain
        await asyncio.sleep(0.5)
        logger.info("Graceful shutdown complete")


app = FastAPI(
    title="SignalDesk API",
    description="Signal generation and risk-gated trade execution service",
    version=APP_VERSION,
    lifespan=_lifespan,
    openapi_tags=[
        {"name": "Signals", "description": "Signal generation and history"},
        {"name": "Analysis", "description": "Technical indicator analysis"},
        {"name": "Trading", "description": "Trade execution and automated trading"},
        {"name": "Portfolios", "description": "Portfolios, positions and performance"},
    ],
)

# ── Rate Limiter ─────────────────────────────────────────────────────────────
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)
app.add_middleware(SlowAPIMiddleware)

# Compress responses >= 500 bytes (applied first, outermost middleware)
app.add_middleware(GZipMiddleware, minimum_size=500)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        origin.strip()
        for origin in os.getenv("SIGNALDESK_CORS_ORIGINS", "http://localhost:3000").split(",")
        if origin.strip()
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ── Correlation ID middleware (outermost - wraps everything) ─────────────────
@app.middleware("http")
async def _correlation_id(request: Request, call_next):
    return await correlation_id_middleware(request, call_next)


# ── Shutdown rejection middleware ────────────────────────────────────────────
@app.middleware("http")
async def shutdown_rejection_middleware(request: Request, call_next):
    """Reject new write requests during graceful shutdown."""
    if _is_shutting_down() and request.method in {"POST", "PUT", "PATCH", "DELETE"}:
        if request.url.path not in {"/", "/status"}:
            return JSONResponse(
                status_code=503,
                content={"detail": "Server is shutting down. Please retry shortly."},
            )
    return await call_next(request)


@app.get("/")
async def root():
    """Root endpoint."""
    return {"message": "SignalDesk API"}


@app.get("/status")
async def status():
    """
    Production health check endpoint.
    Reports real subsystem status: database and execution gateways.
    """
    return build_health_response()


# Include API routes
app.include_router(api_router)


if __name__ == "__main__":
    uvicorn.run(
        "app:app",
        host=os.getenv("SIGNALDESK_HOST", "127.0.0.1"),
        port=int(os.getenv("SIGNALDESK_PORT", "8000")),
        reload=False,
    )
