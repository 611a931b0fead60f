"""Domain manager -- CRUD and query over one CRM table for one request scope.

DomainManager is the inbound surface of the connector. It converts data
objects to entities through the table's EntityMapper, obtains the store
client from the request's StoreConnection (acquiring a token on first use),
and converts results back. Entities never leave this module.

Contract highlights:
- malformed or unknown ids are not errors: lookup/replace/patch return None,
  delete returns False
- replace is version checked; a stale or missing version raises
  ConcurrencyConflictError and leaves the record untouched
- patch is fetch-modify-replace, so it goes through the same version check
- undelete and the synchronous variants are not supported
"""

from __future__ import annotations

import uuid
from collections.abc import Callable, Mapping
from typing import Any, Generic, Protocol, TypeVar

import structlog
from pydantic import ValidationError as PydanticValidationError

from src.crm_bridge.core.errors import ConcurrencyConflictError, RecordNotFoundError, ValidationError
from src.crm_bridge.mapping.mapper import EntityMapper, parse_record_id
from src.crm_bridge.mapping.schemas import VERSION_ATTRIBUTE, TableData
from src.crm_bridge.query.builder import QueryExpressionBuilder
from src.crm_bridge.query.native import ColumnSet, NativeQuery
from src.crm_bridge.query.odata import parse_query_options
from src.crm_bridge.query.schemas import QueryRequest
from src.crm_bridge.store.client import StoreClient
from src.crm_bridge.store.connection import ConnectionHandle

logger = structlog.get_logger(__name__)

TDto = TypeVar("TDto", bound=TableData)

QueryModifier = Callable[[NativeQuery], None]


class Connection(Protocol):
    async def acquire(self) -> ConnectionHandle: ...


class DomainManager(Generic[TDto]):
    """Async table operations for one DTO type.

    Args:
        mapper: Entity mapper for the table.
        connection: The request scope's store connection.
        max_page_size: Largest $top accepted by query(); None for no limit.
    """

    def __init__(
        self,
        mapper: EntityMapper[TDto],
        connection: Connection,
        max_page_size: int | None = None,
    ) -> None:
        self._mapper = mapper
        self._connection = connection
        self._max_page_size = max_page_size

    @property
    def entity_name(self) -> str:
        return self._mapper.entity_logical_name

    async def _client(self) -> StoreClient:
        handle = await self._connection.acquire()
        return handle.client

    async def _fetch(self, client: StoreClient, record_id: uuid.UUID) -> TDto:
        entity = await client.retrieve(self.entity_name, record_id, ColumnSet.all())
        return self._mapper.to_dto(entity)

    # ── Create / read ───────────────────────────────────────────────────────

    async def insert(self, data: TDto) -> TDto:
        """Create a record from `data` and return it as stored.

        A valid GUID in `data.id` is sent as the requested primary key.

        Raises:
            ValidationError: If `data` cannot be mapped.
            StoreError: If the store rejects the create.
        """
        entity = self._mapper.to_entity(data)
        client = await self._client()

        record_id = await client.create(entity)
        result = await self._fetch(client, record_id)

        logger.info("domain.insert_completed", entity=self.entity_name, record_id=str(record_id))
        return result

    async def lookup(self, id: str) -> TDto | None:
        """Return the record with `id`, or None if the id is malformed or unknown."""
        record_id = parse_record_id(id)
        if record_id is None:
            logger.debug("domain.lookup_invalid_id", entity=self.entity_name, id=id)
            return None

        client = await self._client()
        try:
            return await self._fetch(client, record_id)
        except RecordNotFoundError:
            return None

    async def query(
        self,
        request: QueryRequest | None = None,
        query_modifier: QueryModifier | None = None,
    ) -> list[TDto]:
        """Run a protocol query and return matching records in store order.

        Args:
            request: Filter, ordering, projection and paging. None returns all.
            query_modifier: Optional callback that adjusts the translated
                NativeQuery before it is sent, e.g. to add a fixed condition.

        Raises:
            ValidationError: For misaligned paging or malformed options.
            TranslationError: If the request names an unmapped field.
        """
        native = QueryExpressionBuilder(
            self.entity_name,
            request or QueryRequest(),
            self._mapper,
            max_page_size=self._max_page_size,
        ).build()

        if query_modifier is not None:
            query_modifier(native)

        if native.is_empty:
            logger.debug("domain.query_short_circuited", entity=self.entity_name)
            return []

        client = await self._client()
        entities = await client.retrieve_multiple(native)
        results = [self._mapper.to_dto(entity) for entity in entities]

        logger.info("domain.query_completed", entity=self.entity_name, count=len(results))
        return results

    async def query_options(
        self,
        params: Mapping[str, str],
        query_modifier: QueryModifier | None = None,
    ) -> list[TDto]:
        """Parse OData query options and run them through query()."""
        return await self.query(parse_query_options(params), query_modifier)

    # ── Update / delete ─────────────────────────────────────────────────────

    async def replace(self, id: str, data: TDto) -> TDto | None:
        """Overwrite the record `id` with `data` if `data.version` is current.

        Returns None if the id is malformed or the record does not exist.

        Raises:
            ValidationError: If `data.id` is set and differs from `id`.
            ConcurrencyConflictError: If `data.version` is missing or stale.
        """
        record_id = parse_record_id(id)
        if record_id is None:
            return None
        if data.id is not None and parse_record_id(data.id) != record_id:
            raise ValidationError(f"Id in body ({data.id}) does not match the addressed record ({id})")

        client = await self._client()
        try:
            current = await client.retrieve(
                self.entity_name,
                record_id,
                ColumnSet(columns=[self._mapper.primary_id_attribute, VERSION_ATTRIBUTE]),
            )
        except RecordNotFoundError:
            return None

        if data.version is None or data.version != current.version:
            logger.warning(
                "domain.replace_conflict",
                entity=self.entity_name,
                record_id=str(record_id),
                expected_version=data.version,
                actual_version=current.version,
            )
            raise ConcurrencyConflictError(str(record_id), data.version, current.version)

        entity = self._mapper.to_entity(data)
        entity.id = record_id
        try:
            await client.update(entity, expected_version=data.version)
        except RecordNotFoundError:
            return None
        except ConcurrencyConflictError as exc:
            # written by someone else between the version read and the update
            actual_version = exc.actual_version
            if actual_version is None:
                try:
                    latest = await client.retrieve(
                        self.entity_name,
                        record_id,
                        ColumnSet(columns=[self._mapper.primary_id_attribute, VERSION_ATTRIBUTE]),
                    )
                except RecordNotFoundError:
                    return None
                actual_version = latest.version
            logger.warning(
                "domain.replace_conflict",
                entity=self.entity_name,
                record_id=str(record_id),
                expected_version=data.version,
                actual_version=actual_version,
            )
            raise ConcurrencyConflictError(str(record_id), data.version, actual_version) from exc
        result = await self._fetch(client, record_id)

        logger.info(
            "domain.replace_completed",
            entity=self.entity_name,
            record_id=str(record_id),
            version=result.version,
        )
        return result

    async def patch(self, id: str, changes: Mapping[str, Any] | TableData) -> TDto | None:
        """Apply a partial update to the record `id`.

        `changes` is a field -> value mapping or a DTO whose explicitly set
        fields are the changes. `id` in the changes is ignored. Without a
        version in the changes the current version is used.

        Returns None if the id is malformed or the record does not exist.
        """
        current = await self.lookup(id)
        if current is None:
            return None

        if isinstance(changes, TableData):
            updates = changes.model_dump(exclude_unset=True)
        else:
            updates = dict(changes)
        updates.pop("id", None)

        unknown = sorted(set(updates) - set(self._mapper.dto_type.model_fields))
        if unknown:
            raise ValidationError(f"Unknown fields for {self._mapper.dto_type.__name__}: {', '.join(unknown)}")

        merged = current.model_dump()
        merged.update(updates)
        try:
            patched = self._mapper.dto_type.model_validate(merged)
        except PydanticValidationError as exc:
            raise ValidationError(f"Patch does not produce a valid {self._mapper.dto_type.__name__}: {exc}") from exc

        logger.debug("domain.patch_applied", entity=self.entity_name, record_id=current.id, fields=sorted(updates))
        return await self.replace(id, patched)

    async def delete(self, id: str) -> bool:
        """Delete the record `id`. False if the id is malformed or unknown."""
        record_id = parse_record_id(id)
        if record_id is None:
            return False

        client = await self._client()
        try:
            await client.delete(self.entity_name, record_id)
        except RecordNotFoundError:
            return False

        logger.info("domain.delete_completed", entity=self.entity_name, record_id=str(record_id))
        return True

    async def undelete(self, id: str, data: TDto | None = None) -> TDto | None:
        raise NotImplementedError("The store does not keep deleted records; undelete is not supported")

    # ── Messages ────────────────────────────────────────────────────────────

    async def execute(self, request_name: str, parameters: Mapping[str, Any] | None = None) -> dict[str, Any]:
        """Run a named store message (action or function) and return its response."""
        client = await self._client()
        response = await client.execute(request_name, dict(parameters or {}))
        logger.info("domain.execute_completed", request_name=request_name, response_fields=sorted(response))
        return response

    # ── Synchronous variants ────────────────────────────────────────────────

    def lookup_sync(self, id: str) -> TDto | None:
        raise NotImplementedError("Synchronous lookup is not supported; use lookup()")

    def query_sync(self, request: QueryRequest | None = None) -> list[TDto]:
        raise NotImplementedError("Synchronous query is not supported; use query()")
