"""FastAPI application factory.

Creates the app with request scope, logging and metrics middleware, CORS,
Sentry, connector error handlers, the v1 router and one router per table.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.requests import Request
from fastapi.responses import Response

from src.crm_bridge.api.errors import install_error_handlers
from src.crm_bridge.api.middleware.logging import LoggingMiddleware, configure_structlog
from src.crm_bridge.api.middleware.scope import RequestScopeMiddleware
from src.crm_bridge.api.tables import build_table_router
from src.crm_bridge.api.v1.router import router as v1_router
from src.crm_bridge.auth.credentials import AzureAdCredentialProvider, CredentialProvider
from src.crm_bridge.config import Settings, get_settings
from src.crm_bridge.core.monitoring import MetricsMiddleware, get_metrics_response, init_sentry
from src.crm_bridge.mapping.mapper import EntityMapper
from src.crm_bridge.mapping.registry import MappingRegistry
from src.crm_bridge.samples.activity_logger import TABLES
from src.crm_bridge.store.connection import ClientFactory

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: logging and Sentry on startup."""
    settings: Settings = app.state.settings
    configure_structlog()

    if settings.SENTRY_DSN:
        init_sentry(dsn=settings.SENTRY_DSN, environment=settings.ENVIRONMENT.value)

    logger.info(
        "app.started",
        environment=settings.ENVIRONMENT.value,
        tenant=settings.MSDC_TENANT_URL or None,
        auth_method=settings.MSDC_AUTH_METHOD.value,
        tables=sorted(app.state.tables),
    )
    yield
    logger.info("app.stopped")


def create_app(
    settings: Settings | None = None,
    tables: dict[str, EntityMapper[Any]] | None = None,
    credential_provider: CredentialProvider | None = None,
    store_client_factory: ClientFactory | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        settings: Settings to use; defaults to get_settings().
        tables: Table name -> entity mapper; defaults to the sample tables.
        credential_provider: Token source; defaults to Azure AD from settings.
        store_client_factory: Builds the store client for a token; defaults
            to the Web API client.

    Raises:
        ValueError: If a table mapping is invalid.
    """
    settings = settings or get_settings()
    if tables is None:
        tables = {name: factory() for name, factory in TABLES.items()}

    # Fail at startup on a broken mapping
    registry = MappingRegistry()
    for mapper in tables.values():
        registry.register(mapper)
    registry.validate()

    app = FastAPI(
        title="CRM Bridge API",
        version="0.1.0",
        description="Uniform table API over a Dynamics CRM tenant",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.tables = tables
    app.state.registry = registry
    app.state.credential_provider = credential_provider or AzureAdCredentialProvider.from_settings(settings)
    app.state.store_client_factory = store_client_factory

    install_error_handlers(app)

    # Middleware is added in reverse order (last added = outermost)

    # Request scope (inner -- needs the request id set by logging middleware)
    app.add_middleware(RequestScopeMiddleware)

    # CORS middleware
    if settings.CORS_ALLOWED_ORIGINS == "*":
        origins = ["*"]
    else:
        origins = [o.strip() for o in settings.CORS_ALLOWED_ORIGINS.split(",")]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Logging middleware (logs every request with timing)
    app.add_middleware(LoggingMiddleware)

    # Metrics middleware (outermost -- records Prometheus metrics for all requests)
    app.add_middleware(MetricsMiddleware)

    app.include_router(v1_router)
    for name, mapper in tables.items():
        app.include_router(build_table_router(name, mapper))

    # Prometheus metrics endpoint (infrastructure route, outside v1 router)
    @app.get("/metrics", include_in_schema=False)
    async def metrics(request: Request) -> Response:
        """Prometheus metrics endpoint."""
        return get_metrics_response()

    return app


# Module-level app for uvicorn
app = create_app()
