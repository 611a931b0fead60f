"""Request scope middleware.

Opens a RequestScope for every request, carrying the caller's bearer token
(the user assertion for OnBehalf auth) and the request id set by
LoggingMiddleware. The scope, and with it the request's store connection,
is closed when the response has been produced.
"""

from __future__ import annotations

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from src.crm_bridge.api.middleware.logging import bearer_token, token_subject
from src.crm_bridge.core.scope import request_scope

# Paths served without a request scope
SKIP_SCOPE_PATHS = ("/health", "/metrics", "/docs", "/openapi.json")


class RequestScopeMiddleware(BaseHTTPMiddleware):
    """Middleware that wraps each request in its own RequestScope."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        path = request.url.path
        if any(path.startswith(skip) for skip in SKIP_SCOPE_PATHS):
            return await call_next(request)

        token = bearer_token(request)
        async with request_scope(
            user_assertion=token,
            user_id=token_subject(token),
            request_id=getattr(request.state, "request_id", None),
        ):
            return await call_next(request)
