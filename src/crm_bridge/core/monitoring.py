"""Prometheus metrics, Sentry integration, and store call tracking.

Provides:
- MetricsMiddleware: ASGI middleware for HTTP request metrics
- track_store_call(): Context manager for remote store call metrics
- record_credential_acquisition(): Counter for token acquisitions
- init_sentry(): Initialize Sentry with request-scope-aware before_send callback
- get_metrics_response(): Prometheus exposition for the /metrics route
"""

from __future__ import annotations

import time
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from prometheus_client import (
    REGISTRY,
    Counter,
    Histogram,
    generate_latest,
)
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

# ── HTTP Metrics ─────────────────────────────────────────────────────────────

http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status_code"],
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint"],
    buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

# ── Store Metrics ────────────────────────────────────────────────────────────

store_requests_total = Counter(
    "store_requests_total",
    "Total remote store calls",
    ["operation", "entity", "status"],
)

store_request_duration_seconds = Histogram(
    "store_request_duration_seconds",
    "Remote store call duration in seconds",
    ["operation", "entity"],
    buckets=(0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
)

credential_acquisitions_total = Counter(
    "credential_acquisitions_total",
    "Access token acquisitions",
    ["mode", "status"],
)


# ── Metrics Middleware ───────────────────────────────────────────────────────


class MetricsMiddleware(BaseHTTPMiddleware):
    """ASGI middleware that records Prometheus metrics for every HTTP request.

    Skips the /metrics endpoint itself to avoid self-referential counting.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if request.url.path == "/metrics":
            return await call_next(request)

        start_time = time.perf_counter()
        response = await call_next(request)
        duration = time.perf_counter() - start_time

        # Route pattern keeps record ids out of the label set
        route = request.scope.get("route")
        endpoint = getattr(route, "path", None) or request.url.path

        http_requests_total.labels(
            method=request.method,
            endpoint=endpoint,
            status_code=str(response.status_code),
        ).inc()

        http_request_duration_seconds.labels(
            method=request.method,
            endpoint=endpoint,
        ).observe(duration)

        return response


# ── Store Metrics Helpers ───────────────────────────────────────────────────


@asynccontextmanager
async def track_store_call(operation: str, entity: str | None) -> AsyncGenerator[None, None]:
    """Context manager that tracks one remote store call.

    Usage:
        async with track_store_call("retrieve", "contact"):
            response = await client.get(...)

    Records duration and a success/error count per operation and entity.
    """
    entity_label = entity or "-"
    start_time = time.perf_counter()
    status = "success"

    try:
        yield
    except Exception:
        status = "error"
        raise
    finally:
        duration = time.perf_counter() - start_time
        store_requests_total.labels(operation=operation, entity=entity_label, status=status).inc()
        store_request_duration_seconds.labels(operation=operation, entity=entity_label).observe(duration)


def record_credential_acquisition(mode: str, success: bool) -> None:
    credential_acquisitions_total.labels(mode=mode, status="success" if success else "error").inc()


# ── Sentry Integration ───────────────────────────────────────────────────────


def init_sentry(dsn: str, environment: str) -> None:
    """Initialize Sentry SDK, tagging events with the current request id.

    Args:
        dsn: Sentry DSN string.
        environment: Deployment environment (development, staging, production).
    """
    try:
        import sentry_sdk
        from sentry_sdk.integrations.fastapi import FastApiIntegration
        from sentry_sdk.integrations.starlette import StarletteIntegration
    except ImportError:
        import structlog

        structlog.get_logger(__name__).warning("sentry.not_installed")
        return

    traces_sample_rate = 0.1 if environment == "production" else 1.0

    def before_send(event: dict, hint: dict) -> dict:
        """Add request scope context to Sentry events."""
        from src.crm_bridge.core.scope import current_scope_or_none

        scope = current_scope_or_none()
        if scope is not None:
            event.setdefault("tags", {})["request_id"] = scope.request_id
        return event

    sentry_sdk.init(
        dsn=dsn,
        environment=environment,
        traces_sample_rate=traces_sample_rate,
        integrations=[
            StarletteIntegration(),
            FastApiIntegration(),
        ],
        before_send=before_send,
    )


# ── Metrics Endpoint ─────────────────────────────────────────────────────────


def get_metrics_response() -> Response:
    """Generate Prometheus exposition format response."""
    return Response(
        content=generate_latest(REGISTRY),
        media_type="text/plain; version=0.0.4; charset=utf-8",
    )
