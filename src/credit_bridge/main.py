"""FastAPI application factory.

Creates the app with logging middleware, CORS for the CRM widget, error
handlers that render {success: false, error} bodies, lifespan events for
database initialization and the reconciliation scheduler, and the v1
API router.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from src.credit_bridge.api.middleware.logging import LoggingMiddleware
from src.credit_bridge.api.v1.router import router as v1_router
from src.credit_bridge.config import get_settings
from src.credit_bridge.core.database import close_db, init_db
from src.credit_bridge.core.exceptions import (
    CreditBridgeError,
    CRMCommunicationError,
    DuplicateSubmissionError,
    PersistenceError,
    ProviderCommunicationError,
    UnsupportedOperationError,
    ValidationError,
)
from src.credit_bridge.core.logging import configure_structlog
from src.credit_bridge.credit.container import build_services

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: init DB and services on startup, stop on shutdown."""
    settings = get_settings()
    configure_structlog()
    await init_db()

    services = build_services(settings)
    app.state.credit_services = services
    services.scheduler.start()
    logger.info(
        "app.started",
        environment=settings.ENVIRONMENT.value,
        providers=[a.provider_id.value for a in services.providers],
        interval_minutes=settings.STATUS_CHECK_INTERVAL_MINUTES,
    )

    yield

    services.scheduler.stop()
    await close_db()
    logger.info("app.stopped")


# ── Error Handlers ──────────────────────────────────────────────────────────


def _status_for(exc: CreditBridgeError) -> int:
    if isinstance(exc, DuplicateSubmissionError):
        return status.HTTP_409_CONFLICT
    if isinstance(exc, (ValidationError, UnsupportedOperationError)):
        return status.HTTP_400_BAD_REQUEST
    if isinstance(exc, (ProviderCommunicationError, CRMCommunicationError)):
        return status.HTTP_502_BAD_GATEWAY
    return status.HTTP_500_INTERNAL_SERVER_ERROR


async def credit_error_handler(request: Request, exc: CreditBridgeError) -> JSONResponse:
    status_code = _status_for(exc)
    content: dict = {"success": False, "error": str(exc)}
    if isinstance(exc, ProviderCommunicationError):
        content["provider"] = exc.provider
    if isinstance(exc, PersistenceError) and exc.application_id:
        content["application_id"] = exc.application_id

    log_method = logger.error if status_code >= 500 else logger.warning
    log_method(
        "request.failed",
        path=request.url.path,
        error_type=type(exc).__name__,
        error=str(exc),
    )
    return JSONResponse(status_code=status_code, content=content)


async def http_error_handler(request: Request, exc: HTTPException) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "error": exc.detail},
    )


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="Credit Bridge API",
        version="0.1.0",
        description="Credit application integration between Simla CRM and credit providers",
        lifespan=lifespan,
    )

    app.add_exception_handler(CreditBridgeError, credit_error_handler)
    app.add_exception_handler(HTTPException, http_error_handler)

    # Middleware is added in reverse order (last added = outermost)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(LoggingMiddleware)

    app.include_router(v1_router)

    return app


# Module-level app for uvicorn
app = create_app()
