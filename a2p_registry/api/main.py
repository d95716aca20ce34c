"""FastAPI application for the A2P registry API.

Provides the main application instance with routers, middleware,
and exception handlers configured.
"""

import logging
import sys
import time as _time
from contextlib import asynccontextmanager
from importlib.metadata import PackageNotFoundError
from importlib.metadata import version as _pkg_version

from fastapi import FastAPI, Request

# Configure logging to stdout for uvicorn to capture
logging.basicConfig(
    level=logging.INFO,
    format="%(levelname)s:%(name)s:%(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
)
# Ensure our application loggers are captured
logging.getLogger("a2p_registry").setLevel(logging.INFO)
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from a2p_registry.api.middleware.auth import maybe_require_api_key
from a2p_registry.api.routes import ops, registrations, webhooks
from a2p_registry.db.connection import init_db
from a2p_registry.errors import (
    ConflictError,
    DomainError,
    FatalGatewayError,
    NotFoundError,
    ReconciliationRequired,
    RetriableGatewayError,
    ValidationError,
    error_from_exception,
)
from a2p_registry.services.client_provider import shutdown_clients

logger = logging.getLogger(__name__)

# Module-level state for the health endpoint
_startup_time: float = 0.0


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create tables on startup; close upstream clients on shutdown."""
    global _startup_time

    # --- Startup ---
    _startup_time = _time.time()
    init_db()

    yield

    # --- Shutdown ---
    shutdown_clients()


app = FastAPI(
    title="A2P Registry API",
    description="A2P 10DLC brand, campaign and phone-number registration orchestrator",
    version="0.4.0",
    lifespan=lifespan,
)

# Optional API auth for /api/* when api.api_key is configured.
app.middleware("http")(maybe_require_api_key)


def status_code_for(exc: DomainError) -> int:
    """HTTP status for a domain exception."""
    if isinstance(exc, NotFoundError):
        return 404
    if isinstance(exc, ValidationError):
        return 400
    if isinstance(exc, (ConflictError, ReconciliationRequired)):
        return 409
    if isinstance(exc, RetriableGatewayError):
        return 503
    if isinstance(exc, FatalGatewayError):
        return 422
    return 500


@app.exception_handler(DomainError)
async def domain_error_handler(request: Request, exc: DomainError) -> JSONResponse:
    """Handle domain exceptions with consistent format.

    Args:
        request: The incoming request.
        exc: Exception raised by the service layer.

    Returns:
        JSONResponse with error code, message, remediation and retryability.
    """
    error = error_from_exception(exc)
    status_code = status_code_for(exc)
    if status_code >= 500:
        logger.warning("%s %s failed: %s", request.method, request.url.path, error)
    return JSONResponse(
        status_code=status_code,
        content={
            "error_code": error.code,
            "message": error.message,
            "remediation": error.remediation,
            "is_retryable": error.is_retryable,
            "field_errors": error.field_errors or None,
            "details": error.details or None,
        },
    )


# Include routers
app.include_router(registrations.router, prefix="/api/v1")
app.include_router(ops.router, prefix="/api/v1")
app.include_router(webhooks.router, prefix="/api/v1")


@app.get("/health")
def health_check() -> dict:
    """Health check endpoint with database reachability and uptime.

    Returns:
        Dictionary with status, version, uptime_seconds and database state.
    """
    from a2p_registry.db.connection import get_db_context

    uptime = int(_time.time() - _startup_time) if _startup_time else 0

    try:
        with get_db_context() as db:
            db.execute(text("SELECT 1"))
        database = "ok"
    except SQLAlchemyError as e:
        logger.error("Health check could not reach the database: %s", e)
        database = "unavailable"

    try:
        app_version = _pkg_version("a2p-registry")
    except PackageNotFoundError:
        app_version = app.version

    return {
        "status": "ok" if database == "ok" else "degraded",
        "version": app_version,
        "uptime_seconds": uptime,
        "database": database,
    }
