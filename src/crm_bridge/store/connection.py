"""Request-scoped, memoized connection to the CRM store.

The first acquire() in a request scope reads endpoint and auth method from
Settings, resolves an access token through the CredentialProvider and builds
a token-bound StoreClient. Later calls in the same scope reuse that handle.
Concurrent acquire() calls from one scope share a lock, so at most one token
is acquired per scope.

Token failures propagate as CredentialError with no retry and no fallback. A
failed acquisition is remembered: every later acquire() in the scope raises
the same error without asking the CredentialProvider again.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass

import structlog

from src.crm_bridge.auth.credentials import CredentialProvider
from src.crm_bridge.config import AuthMethod, Settings
from src.crm_bridge.core.errors import CredentialError, StoreError
from src.crm_bridge.core.scope import RequestScope
from src.crm_bridge.store.client import StoreClient
from src.crm_bridge.store.webapi import WebApiStoreClient

logger = structlog.get_logger(__name__)

ClientFactory = Callable[[Settings, str], StoreClient]


def web_api_client_factory(settings: Settings, access_token: str) -> StoreClient:
    """Default factory: a Web API client for the configured tenant."""
    return WebApiStoreClient(
        base_url=settings.crm_api_base_url,
        access_token=access_token,
        timeout=settings.MSDC_TIMEOUT_SECONDS,
    )


@dataclass(frozen=True)
class ConnectionHandle:
    """A token-bound store client and what it was built for."""

    client: StoreClient
    endpoint: str
    auth_method: AuthMethod


class StoreConnection:
    """Lazily established store connection owned by one request scope.

    Args:
        scope: The owning request scope (source of the user assertion).
        credentials: Resolves access tokens.
        settings: Endpoint and auth method source.
        client_factory: Builds a StoreClient from settings and a token.
    """

    def __init__(
        self,
        scope: RequestScope,
        credentials: CredentialProvider,
        settings: Settings,
        client_factory: ClientFactory | None = None,
    ) -> None:
        self._scope = scope
        self._credentials = credentials
        self._settings = settings
        self._client_factory = client_factory or web_api_client_factory
        self._handle: ConnectionHandle | None = None
        self._failure: CredentialError | None = None
        self._lock = asyncio.Lock()
        self._closed = False

    @property
    def is_established(self) -> bool:
        return self._handle is not None

    async def acquire(self) -> ConnectionHandle:
        """Return the scope's connection handle, establishing it on first use.

        Raises:
            CredentialError: If the access token cannot be acquired.
            StoreError: If the connection was closed or no endpoint is configured.
        """
        if self._closed:
            raise StoreError("connect", "connection used after its request scope ended")
        if self._handle is not None:
            return self._handle
        if self._failure is not None:
            raise self._failure

        async with self._lock:
            if self._failure is not None:
                raise self._failure
            if self._handle is None:
                try:
                    self._handle = await self._establish()
                except CredentialError as exc:
                    self._failure = exc
                    raise
        return self._handle

    async def _establish(self) -> ConnectionHandle:
        endpoint = self._settings.MSDC_TENANT_URL
        if not endpoint:
            raise StoreError("connect", "MSDC_TENANT_URL is not configured")
        method = self._settings.MSDC_AUTH_METHOD

        token = await self._credentials.acquire_token(
            endpoint,
            method,
            user_assertion=self._scope.user_assertion,
        )
        client = self._client_factory(self._settings, token)

        logger.info(
            "store.connection_established",
            endpoint=endpoint,
            auth_method=method.value,
            request_id=self._scope.request_id,
        )
        return ConnectionHandle(client=client, endpoint=endpoint, auth_method=method)

    async def close(self) -> None:
        """Release the handle's client. Further acquire() calls are refused."""
        self._closed = True
        handle, self._handle = self._handle, None
        if handle is not None:
            await handle.client.aclose()


def get_store_connection(
    scope: RequestScope,
    credentials: CredentialProvider,
    settings: Settings,
    client_factory: ClientFactory | None = None,
) -> StoreConnection:
    """Return the scope's StoreConnection, creating and registering it once."""
    if scope.connection is None:
        if scope.closed:
            raise StoreError("connect", "request scope has already ended")
        connection = StoreConnection(scope, credentials, settings, client_factory)
        scope.connection = connection
        scope.add_cleanup(connection.close)
    return scope.connection
