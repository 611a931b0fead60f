"""FastAPI dependency injection for request-scoped connector resources.

These dependencies are used in endpoint function signatures to inject the
current request scope and its store connection. The credential provider and
store client factory are set on app.state by create_app().
"""

from __future__ import annotations

from fastapi import Depends, Request

from src.crm_bridge.auth.credentials import CredentialProvider
from src.crm_bridge.config import Settings, get_settings
from src.crm_bridge.core.scope import RequestScope, get_current_scope
from src.crm_bridge.store.connection import StoreConnection, get_store_connection


async def get_scope() -> RequestScope:
    """Get the current request scope (set by RequestScopeMiddleware)."""
    return get_current_scope()


def get_app_settings(request: Request) -> Settings:
    return getattr(request.app.state, "settings", None) or get_settings()


def get_credential_provider(request: Request) -> CredentialProvider:
    return request.app.state.credential_provider


async def get_connection(
    request: Request,
    scope: RequestScope = Depends(get_scope),
    settings: Settings = Depends(get_app_settings),
    credentials: CredentialProvider = Depends(get_credential_provider),
) -> StoreConnection:
    """Get the request scope's store connection, created on first use."""
    return get_store_connection(
        scope,
        credentials,
        settings,
        client_factory=getattr(request.app.state, "store_client_factory", None),
    )
