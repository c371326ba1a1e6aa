"""
Production health check endpoint.

Reports real subsystem status instead of a static response:
- Database connectivity
- Execution gateway configuration per asset class
"""
import logging
import time
from datetime import datetime, timezone
from typing import Any, Dict

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from storage.database import SessionLocal

logger = logging.getLogger(__name__)

# Track startup time for uptime reporting
_startup_time: float = time.monotonic()
_startup_utc: str = datetime.now(timezone.utc).isoformat()

APP_VERSION = "0.1.0"


def mark_startup() -> None:
    """Call once at startup to record the process start time."""
    global _startup_time, _startup_utc
    _startup_time = time.monotonic()
    _startup_utc = datetime.now(timezone.utc).isoformat()


def build_health_response() -> Dict[str, Any]:
    """
    Build a comprehensive health check payload.

    Returns a dict with:
      status: "healthy" | "degraded" | "unhealthy"
      checks: per-subsystem status
      uptime_seconds: process uptime
      version: app version
    """
    checks: Dict[str, Dict[str, Any]] = {}
    overall_healthy = True
    degraded = False

    # ── Database ─────────────────────────────────────────────────────────
    db_ok = False
    db_error = ""
    try:
        db = SessionLocal()
        try:
            db.execute(text("SELECT 1"))
            db_ok = True
        finally:
            db.close()
    except SQLAlchemyError as exc:
        db_error = str(exc)[:200]
        overall_healthy = False

    checks["database"] = {
        "status": "up" if db_ok else "down",
        "error": db_error or None,
    }

    # ── Execution gateways ───────────────────────────────────────────────
    try:
        from api.dependencies import get_gateways
        for asset_type, gateway in get_gateways().items():
            configured = gateway.is_configured()
            if not configured:
                degraded = True
            checks[f"{asset_type.value}_gateway"] = {
                "status": "configured" if configured else "not_configured",
                "gateway": gateway.name,
            }
    except (RuntimeError, ValueError, ImportError) as exc:
        logger.warning("Gateway health check failed: %s", exc)
        checks["gateways"] = {"status": "degraded", "error": str(exc)[:200]}
        degraded = True

    # ── Overall status ───────────────────────────────────────────────────
    if not overall_healthy:
        status = "unhealthy"
    elif degraded:
        status = "degraded"
    else:
        status = "healthy"

    return {
        "status": status,
        "service": "SignalDesk Backend",
        "version": APP_VERSION,
        "uptime_seconds": round(time.monotonic() - _startup_time, 1),
        "started_at": _startup_utc,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "checks": checks,
    }
