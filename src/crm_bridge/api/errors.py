"""Connector error -> HTTP response mapping.

    ValidationError (incl. TranslationError)   400
    CredentialError                            401
    RecordNotFoundError                        404
    ConcurrencyConflictError                   409
    NotImplementedError                        501
    StoreError                                 502
"""

from __future__ import annotations

import structlog
from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from src.crm_bridge.core.errors import (
    ConcurrencyConflictError,
    CredentialError,
    RecordNotFoundError,
    StoreError,
    TranslationError,
    ValidationError,
)

logger = structlog.get_logger(__name__)


async def _validation_error(request: Request, exc: ValidationError) -> JSONResponse:
    content: dict = {"detail": str(exc)}
    if isinstance(exc, TranslationError):
        content.update(field=exc.field, clause=exc.clause)
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content=content)


async def _conflict_error(request: Request, exc: ConcurrencyConflictError) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_409_CONFLICT,
        content={
            "detail": str(exc),
            "id": exc.record_id,
            "version": exc.actual_version,
        },
    )


async def _credential_error(request: Request, exc: CredentialError) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_401_UNAUTHORIZED,
        content={"detail": "Could not authenticate against the CRM store"},
    )


async def _not_found_error(request: Request, exc: RecordNotFoundError) -> JSONResponse:
    return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content={"detail": "Not found"})


async def _store_error(request: Request, exc: StoreError) -> JSONResponse:
    logger.error(
        "api.store_error",
        operation=exc.operation,
        entity=exc.entity_name,
        status_code=exc.status_code,
        detail=exc.detail,
    )
    return JSONResponse(status_code=status.HTTP_502_BAD_GATEWAY, content={"detail": str(exc)})


async def _not_implemented(request: Request, exc: NotImplementedError) -> JSONResponse:
    return JSONResponse(status_code=status.HTTP_501_NOT_IMPLEMENTED, content={"detail": str(exc)})


def install_error_handlers(app: FastAPI) -> None:
    """Register the connector error handlers on an app."""
    app.add_exception_handler(ValidationError, _validation_error)
    app.add_exception_handler(ConcurrencyConflictError, _conflict_error)
    app.add_exception_handler(CredentialError, _credential_error)
    app.add_exception_handler(RecordNotFoundError, _not_found_error)
    app.add_exception_handler(StoreError, _store_error)
    app.add_exception_handler(NotImplementedError, _not_implemented)
