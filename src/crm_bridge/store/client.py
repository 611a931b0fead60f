"""Store client abstract base class -- the remote CRM store's operation surface.

Every store backend (the tenant Web API, the in-memory reference store)
implements this ABC. The domain manager only ever talks to a StoreClient
obtained from the request's StoreConnection.

Failures are reported as StoreError; a missing record as RecordNotFoundError.
"""

from __future__ import annotations

import uuid
from abc import ABC, abstractmethod
from typing import Any

from src.crm_bridge.mapping.schemas import Entity
from src.crm_bridge.query.native import ColumnSet, NativeQuery


class StoreClient(ABC):
    """Abstract interface for CRM store operations.

    Methods:
        create: Create a record, return the store-assigned id.
        retrieve: Fetch one record by id with the given columns.
        retrieve_multiple: Run a native query, return records in store order.
        update: Write the entity's attributes to an existing record.
        delete: Delete a record by id.
        execute: Run a named store message (action) with parameters.
        aclose: Release transport resources.
    """

    @abstractmethod
    async def create(self, entity: Entity) -> uuid.UUID:
        """Create a record, return its id."""
        ...

    @abstractmethod
    async def retrieve(self, entity_name: str, record_id: uuid.UUID, column_set: ColumnSet) -> Entity:
        """Fetch one record. Raises RecordNotFoundError if it does not exist."""
        ...

    @abstractmethod
    async def retrieve_multiple(self, query: NativeQuery) -> list[Entity]:
        """Run a native query."""
        ...

    @abstractmethod
    async def update(self, entity: Entity, expected_version: str | None = None) -> None:
        """Update an existing record. Raises RecordNotFoundError if it does not exist.

        With expected_version the write only happens while the record still
        holds that version; otherwise ConcurrencyConflictError is raised.
        """
        ...

    @abstractmethod
    async def delete(self, entity_name: str, record_id: uuid.UUID) -> None:
        """Delete a record. Raises RecordNotFoundError if it does not exist."""
        ...

    @abstractmethod
    async def execute(self, request_name: str, parameters: dict[str, Any]) -> dict[str, Any]:
        """Run a named store message and return its response payload."""
        ...

    async def aclose(self) -> None:
        """Release transport resources. No-op by default."""
        return None
