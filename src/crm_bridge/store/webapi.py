"""Async HTTP store client for the CRM tenant Web API.

Provides WebApiStoreClient, a StoreClient bound to one access token. Native
queries are sent as FetchXML; single-record operations use the entity set
endpoints. Entity set names and primary id attributes are read from the
tenant's entity metadata on first use and cached for the client's lifetime
(one request scope).

Transient failures (connect errors, timeouts, HTTP 429/503) of reads, updates
and deletes are retried with tenacity, 3 attempts with exponential backoff.
POSTs are retried only when the request never reached the store (connect
errors and HTTP 429), so a create whose response was lost is not re-sent.
A conditional update that fails its ETag check raises
ConcurrencyConflictError. Everything else surfaces immediately as
StoreError / RecordNotFoundError.
"""

from __future__ import annotations

import re
import uuid
from datetime import date, datetime
from decimal import Decimal
from typing import Any
from urllib.parse import unquote
from xml.etree import ElementTree

import httpx
import structlog
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

from src.crm_bridge.core.errors import ConcurrencyConflictError, RecordNotFoundError, StoreError
from src.crm_bridge.core.monitoring import track_store_call
from src.crm_bridge.mapping.schemas import Entity, EntityReference
from src.crm_bridge.query.native import ColumnSet, NativeQuery
from src.crm_bridge.store.client import StoreClient
from src.crm_bridge.store.fetchxml import to_fetchxml

logger = structlog.get_logger(__name__)

RETRYABLE_STATUS_CODES = frozenset({429, 503})

_ENTITY_ID_PATTERN = re.compile(r"\(([0-9a-fA-F-]{36})\)\s*$")
_LOOKUP_PATTERN = re.compile(r"^_(?P<name>\w+)_value$")
_LOOKUP_LOGICAL_NAME = "@Microsoft.Dynamics.CRM.lookuplogicalname"
_MORE_RECORDS = "@Microsoft.Dynamics.CRM.morerecords"
_PAGING_COOKIE = "@Microsoft.Dynamics.CRM.fetchxmlpagingcookie"


class _RetryableStatusError(Exception):
    """Internal: store answered with a status worth retrying."""

    def __init__(self, response: httpx.Response) -> None:
        self.response = response
        super().__init__(f"HTTP {response.status_code}")


def _is_transient(exc: BaseException) -> bool:
    return isinstance(exc, (httpx.ConnectError, httpx.TimeoutException, _RetryableStatusError))


def _is_unsent(exc: BaseException) -> bool:
    """True when the store cannot have processed the request."""
    if isinstance(exc, _RetryableStatusError):
        return exc.response.status_code == 429
    return isinstance(exc, (httpx.ConnectError, httpx.ConnectTimeout))


_store_retry = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=10),
    retry=retry_if_exception(_is_transient),
    reraise=True,
)

_unsent_retry = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=10),
    retry=retry_if_exception(_is_unsent),
    reraise=True,
)


def _error_detail(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text[:500] or response.reason_phrase
    error = payload.get("error") if isinstance(payload, dict) else None
    if isinstance(error, dict):
        return str(error.get("message") or response.reason_phrase)
    if isinstance(error, str) and error:
        return error
    return response.reason_phrase


def _paging_cookie(annotation: str | None) -> str | None:
    """Extract the FetchXML paging cookie from the page annotation.

    The annotation is a <cookie pagingcookie="..."/> element whose attribute
    holds the cookie URL-encoded twice.
    """
    if not annotation:
        return None
    try:
        element = ElementTree.fromstring(annotation)
    except ElementTree.ParseError:
        logger.warning("store.paging_cookie_unreadable")
        return None
    cookie = element.get("pagingcookie")
    return unquote(unquote(cookie)) if cookie else None


def _serialize_value(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, Decimal):
        return float(value)
    return value


class WebApiStoreClient(StoreClient):
    """StoreClient speaking the tenant Web API (OData v4 + FetchXML).

    Args:
        base_url: Web API root, e.g. https://contoso.crm.dynamics.com/api/data/v9.2
        access_token: Bearer token for the tenant.
        timeout: Per-request timeout in seconds.
        entity_set_names: Optional static logical name -> entity set name
            overrides; skips the metadata lookup for those entities.
        transport: Optional httpx transport (tests inject MockTransport).
    """

    def __init__(
        self,
        base_url: str,
        access_token: str,
        timeout: float = 30.0,
        entity_set_names: dict[str, str] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/") + "/",
            headers={
                "Authorization": f"Bearer {access_token}",
                "Accept": "application/json",
                "OData-MaxVersion": "4.0",
                "OData-Version": "4.0",
                "Prefer": 'odata.include-annotations="*"',
            },
            timeout=timeout,
            transport=transport,
        )
        self._metadata: dict[str, tuple[str, str]] = {}
        self._set_overrides = dict(entity_set_names or {})

    # ── Transport ───────────────────────────────────────────────────────────

    async def _dispatch(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        response = await self._client.request(method, path, **kwargs)
        if response.status_code in RETRYABLE_STATUS_CODES:
            raise _RetryableStatusError(response)
        return response

    @_store_retry
    async def _send(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        return await self._dispatch(method, path, **kwargs)

    @_unsent_retry
    async def _send_once(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        return await self._dispatch(method, path, **kwargs)

    async def _request(
        self,
        operation: str,
        method: str,
        path: str,
        entity_name: str | None = None,
        idempotent: bool = True,
        **kwargs: Any,
    ) -> httpx.Response:
        send = self._send if idempotent else self._send_once
        async with track_store_call(operation, entity_name):
            try:
                response = await send(method, path, **kwargs)
            except _RetryableStatusError as exc:
                response = exc.response
            except httpx.HTTPError as exc:
                logger.error("store.transport_error", operation=operation, entity=entity_name, error=str(exc))
                raise StoreError(operation, str(exc) or type(exc).__name__, entity_name) from exc

            if response.status_code == 404:
                raise RecordNotFoundError(operation, _error_detail(response), entity_name, 404)
            if response.is_error:
                logger.warning(
                    "store.request_failed",
                    operation=operation,
                    entity=entity_name,
                    status_code=response.status_code,
                )
                raise StoreError(operation, _error_detail(response), entity_name, response.status_code)
            return response

    # ── Metadata ────────────────────────────────────────────────────────────

    async def _entity_metadata(self, entity_name: str) -> tuple[str, str]:
        """Return (entity set name, primary id attribute) for a logical name."""
        cached = self._metadata.get(entity_name)
        if cached is not None:
            return cached

        if entity_name in self._set_overrides:
            metadata = (self._set_overrides[entity_name], f"{entity_name}id")
        else:
            try:
                response = await self._request(
                    "metadata",
                    "GET",
                    f"EntityDefinitions(LogicalName='{entity_name}')",
                    entity_name,
                    params={"$select": "EntitySetName,PrimaryIdAttribute"},
                )
            except RecordNotFoundError as exc:
                # an unknown table is a store fault, not a missing record
                raise StoreError("metadata", f"unknown entity '{entity_name}'", entity_name, 404) from exc
            payload = response.json()
            metadata = (payload["EntitySetName"], payload["PrimaryIdAttribute"])

        self._metadata[entity_name] = metadata
        return metadata

    async def _to_body(self, entity: Entity) -> dict[str, Any]:
        body: dict[str, Any] = {}
        for attribute, value in entity.attributes.items():
            if isinstance(value, EntityReference):
                target_set, _ = await self._entity_metadata(value.logical_name)
                body[f"{attribute}@odata.bind"] = f"/{target_set}({value.id})"
            else:
                body[attribute] = _serialize_value(value)
        return body

    def _to_entity(self, entity_name: str, primary_id: str, record: dict[str, Any]) -> Entity:
        attributes: dict[str, Any] = {}
        for key, value in record.items():
            if "@" in key:
                continue
            lookup = _LOOKUP_PATTERN.match(key)
            if lookup:
                name = lookup.group("name")
                target = record.get(f"{key}{_LOOKUP_LOGICAL_NAME}")
                attributes[name] = (
                    EntityReference(logical_name=target or "", id=uuid.UUID(value))
                    if value
                    else None
                )
            else:
                attributes[key] = value

        raw_id = attributes.get(primary_id)
        record_id = uuid.UUID(raw_id) if raw_id else None
        if record_id is not None:
            attributes[primary_id] = record_id
        return Entity(logical_name=entity_name, id=record_id, attributes=attributes)

    # ── StoreClient ─────────────────────────────────────────────────────────

    async def create(self, entity: Entity) -> uuid.UUID:
        entity_set, primary_id = await self._entity_metadata(entity.logical_name)
        body = await self._to_body(entity)
        if entity.id is not None:
            body[primary_id] = str(entity.id)

        response = await self._request(
            "create", "POST", entity_set, entity.logical_name, idempotent=False, json=body
        )

        location = response.headers.get("OData-EntityId", "")
        match = _ENTITY_ID_PATTERN.search(location)
        if match is None:
            raise StoreError("create", "response carried no OData-EntityId", entity.logical_name)
        record_id = uuid.UUID(match.group(1))
        logger.info("store.created", entity=entity.logical_name, record_id=str(record_id))
        return record_id

    async def retrieve(self, entity_name: str, record_id: uuid.UUID, column_set: ColumnSet) -> Entity:
        entity_set, primary_id = await self._entity_metadata(entity_name)
        params = {} if column_set.all_columns else {"$select": ",".join(column_set.columns)}
        response = await self._request(
            "retrieve", "GET", f"{entity_set}({record_id})", entity_name, params=params
        )
        return self._to_entity(entity_name, primary_id, response.json())

    async def retrieve_multiple(self, query: NativeQuery) -> list[Entity]:
        entity_set, primary_id = await self._entity_metadata(query.entity_name)
        fetchxml = to_fetchxml(query)
        records: list[dict[str, Any]] = []
        page = 1
        while True:
            response = await self._request(
                "retrieve_multiple", "GET", entity_set, query.entity_name, params={"fetchXml": fetchxml}
            )
            payload = response.json()
            records.extend(payload.get("value", []))
            # an explicit page was asked for; otherwise follow the store's pages to the end
            if query.page_info is not None or not payload.get(_MORE_RECORDS):
                break
            page += 1
            fetchxml = to_fetchxml(query, page=page, paging_cookie=_paging_cookie(payload.get(_PAGING_COOKIE)))
            logger.debug("store.next_page", entity=query.entity_name, page=page)
        logger.info("store.retrieved_multiple", entity=query.entity_name, count=len(records), pages=page)
        return [self._to_entity(query.entity_name, primary_id, r) for r in records]

    async def update(self, entity: Entity, expected_version: str | None = None) -> None:
        if entity.id is None:
            raise StoreError("update", "entity has no id", entity.logical_name)
        entity_set, _ = await self._entity_metadata(entity.logical_name)
        body = await self._to_body(entity)
        # If-Match never lets the PATCH upsert; with a version it is also conditional
        if_match = f'W/"{expected_version}"' if expected_version is not None else "*"
        try:
            await self._request(
                "update",
                "PATCH",
                f"{entity_set}({entity.id})",
                entity.logical_name,
                json=body,
                headers={"If-Match": if_match},
            )
        except StoreError as exc:
            if exc.status_code != 412 or expected_version is None:
                raise
            logger.warning(
                "store.update_precondition_failed",
                entity=entity.logical_name,
                record_id=str(entity.id),
                expected_version=expected_version,
            )
            raise ConcurrencyConflictError(str(entity.id), expected_version, None) from exc
        logger.info("store.updated", entity=entity.logical_name, record_id=str(entity.id))

    async def delete(self, entity_name: str, record_id: uuid.UUID) -> None:
        entity_set, _ = await self._entity_metadata(entity_name)
        await self._request("delete", "DELETE", f"{entity_set}({record_id})", entity_name)
        logger.info("store.deleted", entity=entity_name, record_id=str(record_id))

    async def execute(self, request_name: str, parameters: dict[str, Any]) -> dict[str, Any]:
        body = {key: _serialize_value(value) for key, value in parameters.items()}
        if body:
            response = await self._request("execute", "POST", request_name, idempotent=False, json=body)
        else:
            # Parameterless messages (e.g. WhoAmI) are functions
            response = await self._request("execute", "GET", request_name)
        if response.status_code == 204 or not response.content:
            return {}
        return response.json()

    async def aclose(self) -> None:
        await self._client.aclose()
