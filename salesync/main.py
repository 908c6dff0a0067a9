"""Reference sales ledger: the FastAPI server the offline sync engine talks to."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from salesync.api.routes import api_router
from salesync.core.config import settings
from salesync.core.observability import configure_logging, setup_observability
from salesync.core.rate_limit import limiter
from salesync.db.base import LedgerBase
from salesync.db.session import ensure_sqlite_dir, ledger_engine

configure_logging(settings)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    logger.info("Starting sales ledger")

    # Create tables if they don't exist (SQLite dev mode)
    if settings.ledger_database_url.startswith("sqlite"):
        ensure_sqlite_dir(settings.ledger_database_url)
        LedgerBase.metadata.create_all(bind=ledger_engine)
        logger.info("Ledger tables created (SQLite mode)")

    yield

    logger.info("Shutting down sales ledger")


def create_app() -> FastAPI:
    app = FastAPI(
        title="Sales Ledger",
        description="Authoritative ledger for offline-first POS sales",
        version="1.0.0",
        lifespan=lifespan,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
    )

    # Rate limiting setup
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

    setup_observability(app)
    app.include_router(api_router)
    return app


app = create_app()
