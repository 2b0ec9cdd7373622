"""FastAPI dependency injection for the credit services.

Services are built once in the application lifespan and stored on
app.state; these dependencies hand them to endpoint functions.
"""

from __future__ import annotations

from fastapi import HTTPException, Request, status

from src.credit_bridge.credit.container import CreditServices
from src.credit_bridge.credit.feed import FeedService
from src.credit_bridge.credit.orchestrator import ApplicationOrchestrator
from src.credit_bridge.credit.reconciliation import ReconciliationEngine


def get_services(request: Request) -> CreditServices:
    """Retrieve CreditServices from app.state, 503 if not available."""
    services = getattr(request.app.state, "credit_services", None)
    if services is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Credit services not initialized",
        )
    return services


def get_orchestrator(request: Request) -> ApplicationOrchestrator:
    return get_services(request).orchestrator


def get_engine(request: Request) -> ReconciliationEngine:
    return get_services(request).engine


def get_feed(request: Request) -> FeedService:
    return get_services(request).feed
