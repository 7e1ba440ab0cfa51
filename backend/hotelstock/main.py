"""FastAPI application entry point."""

import json
import logging
import sys
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from sqlalchemy import text

from hotelstock import __version__
from hotelstock.api.routes import api_router
from hotelstock.core.config import settings
from hotelstock.core.exceptions import ReconciliationError
from hotelstock.core.observability import CorrelationIdMiddleware, RequestLoggingMiddleware
from hotelstock.core.rate_limit import limiter
from hotelstock.db.base import Base
from hotelstock.db.session import SessionLocal, engine
import hotelstock.models  # noqa: F401  (registers tables on Base.metadata)

# Configure logging - use JSON format in production, human-readable in dev
root_logger = logging.getLogger()
root_logger.setLevel(getattr(logging, settings.log_level))
root_logger.handlers.clear()

if settings.debug:
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s"))
else:

    class JSONFormatter(logging.Formatter):
        def format(self, record):
            return json.dumps({
                "ts": self.formatTime(record, self.datefmt),
                "level": record.levelname,
                "logger": record.name,
                "msg": record.getMessage(),
                "module": record.module,
                "line": record.lineno,
            })

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter())

root_logger.addHandler(handler)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    logger.info("Starting hotel stock reconciliation service")

    # Create tables if they don't exist (for SQLite dev)
    if settings.database_url.startswith("sqlite"):
        Base.metadata.create_all(bind=engine)
        logger.info("Database tables created (SQLite mode)")

    yield

    logger.info("Shutting down hotel stock reconciliation service")


app = FastAPI(
    title="Hotel Stock Reconciliation",
    description="Stock counts, reconciliation reports and discount cycles for hotel operations",
    version=__version__,
    lifespan=lifespan,
    redirect_slashes=True,
    docs_url="/docs" if settings.debug else None,
    redoc_url="/redoc" if settings.debug else None,
)

# Rate limiting setup
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


@app.exception_handler(ReconciliationError)
async def reconciliation_error_handler(request: Request, exc: ReconciliationError):
    """Render engine errors with their own status code."""
    if exc.status_code >= 409:
        logger.warning("%s on %s %s: %s", type(exc).__name__, request.method, request.url.path, exc.message)
    body = {"detail": exc.message, "error": type(exc).__name__}
    product_ids = getattr(exc, "product_ids", None)
    if product_ids:
        body["product_ids"] = product_ids
    return JSONResponse(status_code=exc.status_code, content=body)


# Request logging middleware
app.add_middleware(RequestLoggingMiddleware)

# Correlation IDs (runs before request logging)
app.add_middleware(CorrelationIdMiddleware)

# CORS middleware - MUST be added last so it runs first (Starlette LIFO order).
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "OPTIONS"],
    allow_headers=[
        "Content-Type",
        "Authorization",
        "Accept",
        "Origin",
        "X-Requested-With",
        "X-Correlation-ID",
    ],
    expose_headers=["X-Correlation-ID"],
    max_age=600,  # Cache preflight for 10 minutes
)

# Include API routes
app.include_router(api_router, prefix=settings.api_v1_prefix)


@app.get("/health")
def health_check():
    """Basic liveness check endpoint."""
    return {"status": "healthy", "version": __version__}


@app.get("/health/ready")
def readiness_check():
    """Readiness probe with database connectivity check."""
    db = SessionLocal()
    try:
        db.execute(text("SELECT 1"))
        database = "healthy"
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        database = "unhealthy"
    finally:
        db.close()

    ready = database == "healthy"
    return JSONResponse(
        status_code=200 if ready else 503,
        content={"status": "ready" if ready else "not_ready", "checks": {"database": database}},
    )
