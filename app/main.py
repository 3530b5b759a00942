# ==== RECEIVABLES LEDGER MAIN APPLICATION MODULE ==== #

"""
Main FastAPI application for the billing, receivables and collections ledger.

This module wires middleware, observability, routers and the mapping of
ledger business errors onto HTTP responses.
"""

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text

from app.business.errors import LedgerError
from app.middleware.correlation import CorrelationMiddleware
from app.observability.logging import get_logger, init_logging
from app.observability.metrics import init_metrics, metrics_router
from app.observability.tracing import init_tracing, instrument_app
from app.routes import collections, invoices, notes, receivables
from app.services.ledger_lock import get_lock_manager
from app.services.policy_loader import get_billing_policy
from app.settings import settings
from app.storage.db import close_database, get_session, init_database


logger = get_logger(__name__)


# ==== APPLICATION LIFECYCLE MANAGEMENT ==== #


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Application lifespan manager for startup and shutdown operations.

    Initializes logging, tracing, the database engine and the billing
    policy; releases the lock backend and database connections on shutdown.

    Args:
        app (FastAPI): FastAPI application instance

    Yields:
        None: Control back to FastAPI during application runtime
    """
    # --► STARTUP SEQUENCE
    init_logging(settings.LOG_LEVEL, settings.LOG_DIR if settings.LOG_TO_FILES else None)
    init_tracing(settings.SERVICE_NAME)
    init_database()
    policy = get_billing_policy()
    logger.info(
        "Ledger started",
        environment=settings.APP_ENV,
        lock_backend=settings.LEDGER_LOCK_BACKEND,
        tax_rate_percent=str(policy.tax_rate_percent),
        payment_terms_days=policy.payment_terms_days,
    )

    yield

    # --► SHUTDOWN SEQUENCE
    await get_lock_manager().close()
    await close_database()


# ==== APPLICATION FACTORY ==== #


def create_app() -> FastAPI:
    """
    Create and configure the FastAPI application.

    Returns:
        FastAPI: Fully configured FastAPI application instance
    """
    app = FastAPI(
        title="Receivables Ledger",
        description="Billing, receivables and collections ledger",
        version="0.1.0",
        lifespan=lifespan,
        docs_url="/docs" if settings.APP_ENV == "dev" else None,
        redoc_url="/redoc" if settings.APP_ENV == "dev" else None
    )

    # --► OBSERVABILITY INITIALIZATION
    init_metrics(app)

    # --► MIDDLEWARE STACK CONFIGURATION
    # CORS middleware must be added first
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://localhost:3000", "http://localhost:8080"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Correlation-Id"],
    )
    app.add_middleware(CorrelationMiddleware)

    # --► HEALTH CHECK ENDPOINTS
    _register_health_endpoints(app)

    # --► ROUTER REGISTRATION
    _register_routers(app)

    # --► EXCEPTION HANDLERS
    _register_exception_handlers(app)

    # --► OPENTELEMETRY INSTRUMENTATION
    instrument_app(app)

    return app


# ==== ENDPOINT REGISTRATION HELPERS ==== #


def _register_health_endpoints(app: FastAPI) -> None:
    """
    Register liveness and readiness probes.

    Args:
        app (FastAPI): FastAPI application instance
    """
    @app.get("/healthz", tags=["health"])
    async def health_check() -> dict:
        return {
            "status": "ok",
            "service": settings.SERVICE_NAME,
            "timestamp": datetime.now(timezone.utc).isoformat()
        }

    @app.get("/readyz", tags=["health"])
    async def readiness_check() -> JSONResponse:
        """
        Readiness probe; reports not-ready while the database is unreachable.

        Returns:
            JSONResponse: Readiness status with environment information
        """
        database_status = "connected"
        try:
            async with get_session() as session:
                await session.execute(text("SELECT 1"))
        except Exception as e:
            logger.warning(f"Readiness check failed: {e}")
            database_status = "disconnected"

        ready = database_status == "connected"
        return JSONResponse(
            status_code=200 if ready else 503,
            content={
                "status": "ready" if ready else "not_ready",
                "service": settings.SERVICE_NAME,
                "environment": settings.APP_ENV,
                "database_status": database_status,
                "lock_backend": settings.LEDGER_LOCK_BACKEND,
            }
        )


def _register_routers(app: FastAPI) -> None:
    """
    Register all application routers with their prefixes and tags.

    Args:
        app (FastAPI): FastAPI application instance
    """
    app.include_router(metrics_router, prefix="", tags=["monitoring"])
    app.include_router(invoices.router, prefix="/invoices", tags=["invoices"])
    app.include_router(receivables.router, prefix="/receivables", tags=["receivables"])
    app.include_router(collections.router, prefix="/collections", tags=["collections"])
    app.include_router(notes.router, prefix="/notes", tags=["notes"])


# ==== EXCEPTION HANDLERS ==== #


def _register_exception_handlers(app: FastAPI) -> None:
    """
    Register exception handlers with a consistent error body.

    Args:
        app (FastAPI): FastAPI application instance
    """
    @app.exception_handler(LedgerError)
    async def ledger_error_handler(request: Request, exc: LedgerError) -> JSONResponse:
        """
        Render a ledger business error with its own status code.

        Args:
            request (Request): HTTP request that caused the exception
            exc (LedgerError): Business error raised by a service

        Returns:
            JSONResponse: Error code, message, context and correlation ID
        """
        correlation_id = getattr(request.state, 'correlation_id', 'unknown')
        body = exc.to_dict()
        return JSONResponse(
            status_code=exc.status_code,
            content=jsonable_encoder({
                "error": type(exc).__name__,
                "correlation_id": correlation_id,
                **body,
            })
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """
        Global exception handler for unhandled errors.

        Args:
            request (Request): HTTP request that caused the exception
            exc (Exception): Exception that occurred

        Returns:
            JSONResponse: Standardized error response
        """
        correlation_id = getattr(request.state, 'correlation_id', 'unknown')
        logger.exception(f"Unhandled error on {request.method} {request.url.path}: {exc}")

        return JSONResponse(
            status_code=500,
            content={
                "error": "Internal server error",
                "message": "An unexpected error occurred",
                "correlation_id": correlation_id,
                "code": "INTERNAL_ERROR"
            }
        )


# ==== APPLICATION INSTANCE ==== #


# Create application instance for deployment
app = create_app()
