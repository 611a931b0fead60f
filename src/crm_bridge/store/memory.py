"""In-memory reference store -- evaluates native queries over Python dicts.

Used for local development (no CRM tenant required) and as the reference
implementation of native query semantics in tests. Behaviour follows the
store's rules where they matter to callers:

- every write bumps a store-wide `versionnumber` and stamps createdon/modifiedon
- comparisons against a null attribute are false except null / not-null
- nulls sort first ascending and last descending
- default order is insertion order
- LIKE patterns use % and _ wildcards with [x] escapes

String comparison is case-sensitive.
"""

from __future__ import annotations

import copy
import itertools
import re
import uuid
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone
from typing import Any

import structlog

from src.crm_bridge.core.errors import ConcurrencyConflictError, RecordNotFoundError, StoreError
from src.crm_bridge.mapping.schemas import (
    CREATED_ON_ATTRIBUTE,
    MODIFIED_ON_ATTRIBUTE,
    VERSION_ATTRIBUTE,
    Entity,
    EntityReference,
)
from src.crm_bridge.query.native import (
    ColumnSet,
    ConditionExpression,
    ConditionOperator,
    FilterExpression,
    FilterOperator,
    NativeQuery,
)
from src.crm_bridge.store.client import StoreClient

logger = structlog.get_logger(__name__)

MessageHandler = Callable[[dict[str, Any]], Awaitable[dict[str, Any]]]


def like_to_regex(pattern: str) -> re.Pattern[str]:
    """Compile a LIKE pattern (%, _ and [x] escapes) to an anchored regex."""
    parts: list[str] = []
    index = 0
    while index < len(pattern):
        char = pattern[index]
        if char == "[" and index + 2 < len(pattern) and pattern[index + 2] == "]":
            parts.append(re.escape(pattern[index + 1]))
            index += 3
            continue
        if char == "%":
            parts.append(".*")
        elif char == "_":
            parts.append(".")
        else:
            parts.append(re.escape(char))
        index += 1
    return re.compile("^" + "".join(parts) + "$", re.DOTALL)


def _normalize(value: Any) -> Any:
    if isinstance(value, EntityReference):
        return value.id
    return value


class InMemoryStoreClient(StoreClient):
    """StoreClient holding records in process memory.

    Args:
        primary_id_attributes: Entity logical name -> primary id attribute,
            for entities that do not follow the "<name>id" convention.
    """

    def __init__(self, primary_id_attributes: dict[str, str] | None = None) -> None:
        self._tables: dict[str, dict[uuid.UUID, dict[str, Any]]] = {}
        self._primary_ids = dict(primary_id_attributes or {})
        self._versions = itertools.count(1000)
        self._messages: dict[str, MessageHandler] = {}
        self.closed = False

    # ── Helpers ─────────────────────────────────────────────────────────────

    def _primary_id(self, entity_name: str) -> str:
        return self._primary_ids.get(entity_name, f"{entity_name}id")

    def _table(self, entity_name: str) -> dict[uuid.UUID, dict[str, Any]]:
        return self._tables.setdefault(entity_name, {})

    def _project(self, entity_name: str, record_id: uuid.UUID, row: dict[str, Any], columns: ColumnSet) -> Entity:
        if columns.all_columns:
            attributes = copy.deepcopy(row)
        else:
            attributes = {c: copy.deepcopy(row[c]) for c in columns.columns if c in row}
        return Entity(logical_name=entity_name, id=record_id, attributes=attributes)

    def register_message(self, request_name: str, handler: MessageHandler) -> None:
        """Register a handler for execute(request_name, ...)."""
        self._messages[request_name] = handler

    # ── StoreClient ─────────────────────────────────────────────────────────

    async def create(self, entity: Entity) -> uuid.UUID:
        table = self._table(entity.logical_name)
        record_id = entity.id or uuid.uuid4()
        if record_id in table:
            raise StoreError("create", f"record {record_id} already exists", entity.logical_name, 412)

        now = datetime.now(timezone.utc)
        row = copy.deepcopy(entity.attributes)
        row[self._primary_id(entity.logical_name)] = record_id
        row[VERSION_ATTRIBUTE] = next(self._versions)
        row[CREATED_ON_ATTRIBUTE] = now
        row[MODIFIED_ON_ATTRIBUTE] = now
        table[record_id] = row

        logger.debug("memory_store.created", entity=entity.logical_name, record_id=str(record_id))
        return record_id

    async def retrieve(self, entity_name: str, record_id: uuid.UUID, column_set: ColumnSet) -> Entity:
        row = self._table(entity_name).get(record_id)
        if row is None:
            raise RecordNotFoundError("retrieve", f"record {record_id} does not exist", entity_name, 404)
        return self._project(entity_name, record_id, row, column_set)

    async def retrieve_multiple(self, query: NativeQuery) -> list[Entity]:
        rows = [
            (record_id, row)
            for record_id, row in self._table(query.entity_name).items()
            if self._matches(row, query.criteria)
        ]

        for order in reversed(query.orders):
            rows.sort(
                key=lambda item, attr=order.attribute: _sort_key(item[1].get(attr)),
                reverse=order.descending,
            )

        if query.page_info is not None:
            start = (query.page_info.page_number - 1) * query.page_info.count
            rows = rows[start : start + query.page_info.count]

        return [self._project(query.entity_name, rid, row, query.column_set) for rid, row in rows]

    async def update(self, entity: Entity, expected_version: str | None = None) -> None:
        if entity.id is None:
            raise StoreError("update", "entity has no id", entity.logical_name, 400)
        row = self._table(entity.logical_name).get(entity.id)
        if row is None:
            raise RecordNotFoundError("update", f"record {entity.id} does not exist", entity.logical_name, 404)
        if expected_version is not None and expected_version != str(row[VERSION_ATTRIBUTE]):
            raise ConcurrencyConflictError(str(entity.id), expected_version, str(row[VERSION_ATTRIBUTE]))

        protected = {self._primary_id(entity.logical_name), VERSION_ATTRIBUTE, CREATED_ON_ATTRIBUTE}
        for attribute, value in entity.attributes.items():
            if attribute not in protected:
                row[attribute] = copy.deepcopy(value)
        row[VERSION_ATTRIBUTE] = next(self._versions)
        row[MODIFIED_ON_ATTRIBUTE] = datetime.now(timezone.utc)

    async def delete(self, entity_name: str, record_id: uuid.UUID) -> None:
        table = self._table(entity_name)
        if record_id not in table:
            raise RecordNotFoundError("delete", f"record {record_id} does not exist", entity_name, 404)
        del table[record_id]

    async def execute(self, request_name: str, parameters: dict[str, Any]) -> dict[str, Any]:
        handler = self._messages.get(request_name)
        if handler is None:
            raise StoreError("execute", f"unknown message '{request_name}'", status_code=400)
        return await handler(parameters)

    async def aclose(self) -> None:
        self.closed = True

    # ── Query evaluation ────────────────────────────────────────────────────

    def _matches(self, row: dict[str, Any], expression: FilterExpression) -> bool:
        results = [self._condition(row, c) for c in expression.conditions]
        results.extend(self._matches(row, f) for f in expression.filters if not f.is_empty)
        if not results:
            return True
        if expression.filter_operator == FilterOperator.AND:
            return all(results)
        return any(results)

    def _condition(self, row: dict[str, Any], condition: ConditionExpression) -> bool:
        operator = condition.operator
        actual = _normalize(row.get(condition.attribute))

        if operator == ConditionOperator.NULL:
            return actual is None
        if operator == ConditionOperator.NOT_NULL:
            return actual is not None
        if actual is None:
            return False

        values = [_normalize(v) for v in condition.values]
        expected = values[0] if values else None

        if operator == ConditionOperator.EQUAL:
            return actual == expected
        if operator == ConditionOperator.NOT_EQUAL:
            return actual != expected
        if operator == ConditionOperator.LESS_THAN:
            return actual < expected
        if operator == ConditionOperator.LESS_EQUAL:
            return actual <= expected
        if operator == ConditionOperator.GREATER_THAN:
            return actual > expected
        if operator == ConditionOperator.GREATER_EQUAL:
            return actual >= expected
        if operator == ConditionOperator.IN:
            return actual in values
        if operator == ConditionOperator.NOT_IN:
            return actual not in values

        text = str(actual)
        if operator in (ConditionOperator.LIKE, ConditionOperator.NOT_LIKE):
            matched = bool(like_to_regex(expected).match(text))
            return matched if operator == ConditionOperator.LIKE else not matched
        if operator in (ConditionOperator.BEGINS_WITH, ConditionOperator.NOT_BEGIN_WITH):
            matched = bool(like_to_regex(f"{expected}%").match(text))
            return matched if operator == ConditionOperator.BEGINS_WITH else not matched
        if operator in (ConditionOperator.ENDS_WITH, ConditionOperator.NOT_END_WITH):
            matched = bool(like_to_regex(f"%{expected}").match(text))
            return matched if operator == ConditionOperator.ENDS_WITH else not matched

        raise StoreError("retrieve_multiple", f"unsupported operator '{operator.value}'", status_code=400)


def _sort_key(value: Any) -> tuple[int, Any]:
    value = _normalize(value)
    if value is None:
        return (0, 0)
    if isinstance(value, uuid.UUID):
        return (1, str(value))
    return (1, value)
