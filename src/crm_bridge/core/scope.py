"""Request scope propagation via Python contextvars.

A RequestScope is created when an inbound operation starts and discarded
when it ends. It carries the caller's identity (for delegated auth) and the
request's store connection, which is created lazily on first use and never
outlives the scope. Scopes are never shared between requests.
"""

from __future__ import annotations

import contextvars
import uuid
from collections.abc import AsyncGenerator, Awaitable, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

import structlog

if TYPE_CHECKING:
    from src.crm_bridge.store.connection import StoreConnection

logger = structlog.get_logger(__name__)


@dataclass
class RequestScope:
    """Per-request state: caller identity plus the lazily created connection.

    Attributes:
        request_id: Correlation id for logs.
        user_assertion: Caller's bearer token, used for OnBehalf auth.
        user_id: Caller's subject claim, for logging only.
        connection: The request's StoreConnection once created.
    """

    request_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    user_assertion: str | None = field(default=None, repr=False)
    user_id: str | None = None
    connection: StoreConnection | None = field(default=None, repr=False)
    _cleanups: list[Callable[[], Awaitable[None]]] = field(default_factory=list, repr=False)
    closed: bool = False

    def add_cleanup(self, callback: Callable[[], Awaitable[None]]) -> None:
        """Register an async callback to run when the scope closes."""
        self._cleanups.append(callback)

    async def close(self) -> None:
        """Run cleanups in reverse registration order. Idempotent."""
        if self.closed:
            return
        self.closed = True
        while self._cleanups:
            callback = self._cleanups.pop()
            try:
                await callback()
            except Exception:
                logger.warning("scope.cleanup_failed", request_id=self.request_id, exc_info=True)


_request_scope: contextvars.ContextVar[RequestScope] = contextvars.ContextVar("request_scope")


def get_current_scope() -> RequestScope:
    """Get the scope of the current request.

    Raises RuntimeError if no scope has been set (i.e., the call is not
    within a request).
    """
    try:
        return _request_scope.get()
    except LookupError:
        raise RuntimeError("No request scope set -- call is not within a request")


def current_scope_or_none() -> RequestScope | None:
    return _request_scope.get(None)


def set_request_scope(scope: RequestScope) -> contextvars.Token[RequestScope]:
    """Set the scope for the current request. Returns a token for reset."""
    return _request_scope.set(scope)


@asynccontextmanager
async def request_scope(
    user_assertion: str | None = None,
    user_id: str | None = None,
    request_id: str | None = None,
) -> AsyncGenerator[RequestScope, None]:
    """Open a request scope for the duration of the block.

    The scope is closed (connection released) on exit, even on error.
    """
    scope = RequestScope(user_assertion=user_assertion, user_id=user_id)
    if request_id:
        scope.request_id = request_id

    token = set_request_scope(scope)
    try:
        yield scope
    finally:
        await scope.close()
        _request_scope.reset(token)
