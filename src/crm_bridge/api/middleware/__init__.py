"""API middleware package."""

from src.crm_bridge.api.middleware.logging import LoggingMiddleware
from src.crm_bridge.api.middleware.scope import RequestScopeMiddleware

__all__ = ["LoggingMiddleware", "RequestScopeMiddleware"]
