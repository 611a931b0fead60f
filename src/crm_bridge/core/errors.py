"""Connector error taxonomy.

Every failure the connector surfaces is one of these types (or the builtin
NotImplementedError for unsupported operations). Store clients translate
transport and remote failures into StoreError subclasses so callers never
see raw httpx exceptions.

Not-found is not an error: lookup, delete and patch of a missing or
malformed id return None/False instead of raising.
"""

from __future__ import annotations


class ConnectorError(Exception):
    """Base class for all connector errors."""


class ValidationError(ConnectorError):
    """Raised for malformed input, rejected before any store call.

    Covers malformed ids in contexts where an id is required, misformatted
    query options, and misaligned paging. Never retried.
    """


class TranslationError(ValidationError):
    """Raised when a query clause cannot be translated to the native query.

    Attributes:
        field: The offending DTO field name.
        clause: The query clause containing it (filter, orderby, select).
    """

    def __init__(self, field: str, clause: str, reason: str = "field is not mapped") -> None:
        self.field = field
        self.clause = clause
        self.reason = reason
        super().__init__(f"Cannot translate {clause} on field '{field}': {reason}")


class ConcurrencyConflictError(ConnectorError):
    """Raised when a replace carries a stale concurrency token.

    Attributes:
        record_id: The record being replaced.
        expected_version: Version carried by the caller's data object.
        actual_version: Version currently held by the store.
    """

    def __init__(
        self,
        record_id: str,
        expected_version: str | None,
        actual_version: str | None,
    ) -> None:
        self.record_id = record_id
        self.expected_version = expected_version
        self.actual_version = actual_version
        super().__init__(
            f"Version conflict on record {record_id}: "
            f"caller has {expected_version!r}, store has {actual_version!r}"
        )


class StoreError(ConnectorError):
    """Raised when a call to the remote store fails.

    Attributes:
        operation: The store operation (create, retrieve, update, ...).
        entity_name: Logical name of the entity involved, if any.
        status_code: HTTP status returned by the store, if any.
        detail: Error text reported by the store or transport.
    """

    def __init__(
        self,
        operation: str,
        detail: str,
        entity_name: str | None = None,
        status_code: int | None = None,
    ) -> None:
        self.operation = operation
        self.entity_name = entity_name
        self.status_code = status_code
        self.detail = detail
        target = f"[{entity_name}] " if entity_name else ""
        status = f" (HTTP {status_code})" if status_code is not None else ""
        super().__init__(f"{target}{operation} failed{status}: {detail}")


class RecordNotFoundError(StoreError):
    """Raised by store clients when the addressed record does not exist."""


class CredentialError(StoreError):
    """Raised when an access token for the store cannot be acquired."""

    def __init__(self, detail: str, status_code: int | None = None) -> None:
        super().__init__("acquire_token", detail, status_code=status_code)
