"""API middleware package."""

from src.credit_bridge.api.middleware.logging import LoggingMiddleware

__all__ = ["LoggingMiddleware"]
