"""
Request middleware and log formatting for the SignalDesk API.

Every request gets an X-Request-ID (echoed from the client or generated) that
is stamped on each JSON log line emitted while the request is handled, along
with trade context passed through `extra=` (portfolio, symbol, order, signal).
"""
import json
import logging
import time
import uuid
from contextvars import ContextVar

from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from config.settings import get_settings

logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"

request_id_ctx: ContextVar[str] = ContextVar("request_id", default="")


def _build_limiter() -> Limiter:
    settings = get_settings()
    return Limiter(
        key_func=get_remote_address,
        default_limits=[settings.rate_limit],
        storage_uri="memory://",
        enabled=settings.rate_limit_enabled,
    )


limiter = _build_limiter()


def rate_limit_exceeded_handler(_request: Request, exc: RateLimitExceeded) -> JSONResponse:
    return JSONResponse(
        status_code=429,
        content={"detail": f"Rate limit exceeded: {exc.detail}"},
        headers={"Retry-After": "60"},
    )


async def correlation_id_middleware(request: Request, call_next) -> Response:
    """Tag the request with a correlation id and log its outcome and latency."""
    rid = request.headers.get(REQUEST_ID_HEADER, "").strip() or uuid.uuid4().hex[:16]
    token = request_id_ctx.set(rid)
    start = time.monotonic()
    try:
        response: Response = await call_next(request)
    except Exception:
        logger.exception(
            "%s %s failed after %.1fms", request.method, request.url.path,
            (time.monotonic() - start) * 1000,
        )
        raise
    else:
        response.headers[REQUEST_ID_HEADER] = rid
        # Trade and signal writes at INFO, reads at DEBUG
        logger.log(
            logging.DEBUG if request.method == "GET" else logging.INFO,
            "%s %s -> %d in %.1fms", request.method, request.url.path,
            response.status_code, (time.monotonic() - start) * 1000,
        )
        return response
    finally:
        request_id_ctx.reset(token)


class StructuredFormatter(logging.Formatter):
    """One JSON object per log line, carrying the request id and trade context."""

    CONTEXT_FIELDS = ("portfolio_id", "symbol", "order_id", "signal_id")

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        rid = request_id_ctx.get()
        if rid:
            payload["request_id"] = rid
        for name in self.CONTEXT_FIELDS:
            value = getattr(record, name, None)
            if value is not None:
                payload[name] = value
        if record.exc_info and record.exc_info[1]:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def configure_structured_logging(log_level: str = "INFO") -> None:
    """
    Switch every root handler to JSON output at the given level.

    A console handler is added when only file handlers are attached.
    """
    root = logging.getLogger()
    level = logging.getLevelName(log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO
    root.setLevel(level)

    formatter = StructuredFormatter()
    for handler in root.handlers:
        handler.setFormatter(formatter)

    has_console = any(
        isinstance(h, logging.StreamHandler) and not isinstance(h, logging.FileHandler)
        for h in root.handlers
    )
    if not has_console:
        console = logging.StreamHandler()
        console.setLevel(level)
        console.setFormatter(formatter)
        root.addHandler(console)
