"""
Logging and correlation ids.

Provides:
- Logging configuration (human-readable in debug, JSON otherwise)
- A correlation id per sync cycle, propagated to log records and to the
  X-Correlation-ID header of every request the engine sends
- Request logging middleware for the reference ledger

When CORRELATION_IDS_ENABLED is active every push, poll and dedup pass
runs under its own id, and the ledger echoes incoming ids back.
"""

import json
import logging
import sys
import time
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Callable, Iterator, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from salesync.core.config import Settings
from salesync.core.feature_flags import is_enabled


correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

logger = logging.getLogger("salesync")

CORRELATION_HEADER = "X-Correlation-ID"


def get_correlation_id() -> Optional[str]:
    """Get current correlation ID from context."""
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str]) -> None:
    """Set correlation ID in context."""
    correlation_id_var.set(correlation_id)


class CorrelationIdFilter(logging.Filter):
    """Copies the current correlation id onto every log record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation_id = get_correlation_id() or "-"
        return True


class JSONFormatter(logging.Formatter):
    def format(self, record):
        return json.dumps({
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "correlation_id": getattr(record, "correlation_id", "-"),
            "module": record.module,
            "line": record.lineno,
        })


def configure_logging(settings: Settings) -> None:
    """Configure the root logger: readable output in debug, JSON otherwise."""
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, settings.log_level))
    root_logger.handlers.clear()

    if settings.debug:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - [%(correlation_id)s] %(message)s"
        ))
    else:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(JSONFormatter())

    handler.addFilter(CorrelationIdFilter())
    root_logger.addHandler(handler)


@contextmanager
def sync_cycle(name: str) -> Iterator[Optional[str]]:
    """Run a block under a fresh correlation id and log its duration."""
    if not is_enabled("CORRELATION_IDS_ENABLED"):
        yield None
        return

    cycle_id = str(uuid.uuid4())
    token = correlation_id_var.set(cycle_id)
    start_time = time.time()
    logger.debug(f"[{cycle_id}] {name} started")
    try:
        yield cycle_id
    finally:
        duration_ms = (time.time() - start_time) * 1000
        logger.debug(f"[{cycle_id}] {name} finished in {duration_ms:.2f}ms")
        correlation_id_var.reset(token)


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """
    Middleware to add correlation IDs to requests.

    Reuses the X-Correlation-ID sent by the engine or generates a new one.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if not is_enabled("CORRELATION_IDS_ENABLED"):
            return await call_next(request)

        correlation_id = request.headers.get(CORRELATION_HEADER) or str(uuid.uuid4())
        set_correlation_id(correlation_id)
        response = await call_next(request)
        response.headers[CORRELATION_HEADER] = correlation_id
        return response


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Logs method, path, status and timing of every ledger request."""

    EXCLUDED_PATHS = {"/health"}

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if request.url.path in self.EXCLUDED_PATHS:
            return await call_next(request)

        start_time = time.time()
        try:
            response = await call_next(request)
        except Exception as e:
            duration_ms = (time.time() - start_time) * 1000
            logger.error(
                f"{request.method} {request.url.path} failed after {duration_ms:.2f}ms: {e}",
                exc_info=True,
            )
            raise

        duration_ms = (time.time() - start_time) * 1000
        logger.info(
            f"{request.method} {request.url.path} completed {response.status_code} in {duration_ms:.2f}ms"
        )
        return response


def setup_observability(app) -> None:
    """
    Setup observability middleware on the ledger app.

    Call this during app initialization.
    """
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(CorrelationIdMiddleware)

    @app.get("/health")
    async def health_check():
        return {
            "status": "healthy",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "features": {
                "correlation_ids": is_enabled("CORRELATION_IDS_ENABLED"),
            },
        }
