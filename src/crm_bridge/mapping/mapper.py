"""Entity mappers -- bidirectional conversion between data objects and CRM entities.

Defines:
- EntityMapper: abstract strategy, one implementation per DTO/entity pair.
- FieldMapping: declarative description of one DTO field's backend attribute.
- FieldMapEntityMapper: EntityMapper driven by a field map dict, the usual way
  to declare a table.

The mapper is the only component that knows backend attribute names. The
query builder asks it to resolve DTO field names; a field it cannot resolve
is untranslatable.
"""

from __future__ import annotations

import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Generic, TypeVar

import structlog
from pydantic import ValidationError as PydanticValidationError

from src.crm_bridge.core.errors import ValidationError
from src.crm_bridge.mapping.schemas import (
    CREATED_ON_ATTRIBUTE,
    MODIFIED_ON_ATTRIBUTE,
    SYSTEM_FIELDS,
    VERSION_ATTRIBUTE,
    Entity,
    EntityReference,
    TableData,
)

logger = structlog.get_logger(__name__)

TDto = TypeVar("TDto", bound=TableData)

FIELD_TYPES = frozenset(
    {"string", "integer", "decimal", "boolean", "datetime", "guid", "lookup", "option"}
)


def parse_record_id(value: Any) -> uuid.UUID | None:
    """Parse a record id in the store's GUID format, or return None."""
    if isinstance(value, uuid.UUID):
        return value
    if not isinstance(value, str):
        return None
    try:
        return uuid.UUID(value.strip())
    except ValueError:
        return None


class EntityMapper(ABC, Generic[TDto]):
    """Abstract mapping strategy between a DTO type and a CRM entity type.

    Attributes:
        dto_type: The TableData subclass this mapper produces.
        entity_logical_name: Logical name of the backend entity type.
        primary_id_attribute: Backend attribute holding the record GUID.
    """

    dto_type: type[TDto]
    entity_logical_name: str
    primary_id_attribute: str

    @abstractmethod
    def to_entity(self, data: TDto) -> Entity:
        """Convert a data object to a backend entity."""
        ...

    @abstractmethod
    def to_dto(self, entity: Entity) -> TDto:
        """Convert a backend entity to a data object."""
        ...

    @abstractmethod
    def resolve_backend_field(self, field_name: str) -> str | None:
        """Return the backend attribute for a DTO field, or None if unmapped."""
        ...

    @abstractmethod
    def resolve_dto_field(self, attribute: str) -> str | None:
        """Return the DTO field for a backend attribute, or None if unmapped."""
        ...

    def to_backend_value(self, field_name: str, value: Any) -> Any:
        """Convert a query literal for a DTO field into a backend value."""
        return value

    def mapped_fields(self) -> list[str]:
        """All DTO fields this mapper can resolve."""
        return [
            name for name in self.dto_type.model_fields if self.resolve_backend_field(name)
        ]


@dataclass(frozen=True)
class FieldMapping:
    """Backend attribute and value type for one DTO field.

    Attributes:
        attribute: Backend attribute logical name.
        type: One of FIELD_TYPES; drives value conversion in both directions.
        target: Target entity logical name, required for lookup fields.
        read_only: If True the field is read from the store but never written.
    """

    attribute: str
    type: str = "string"
    target: str | None = None
    read_only: bool = False

    def __post_init__(self) -> None:
        if self.type not in FIELD_TYPES:
            raise ValueError(f"Unknown field type '{self.type}' for attribute '{self.attribute}'")
        if self.type == "lookup" and not self.target:
            raise ValueError(f"Lookup attribute '{self.attribute}' needs a target entity")


class FieldMapEntityMapper(EntityMapper[TDto]):
    """EntityMapper driven by a declarative field map.

    Args:
        dto_type: TableData subclass to produce.
        entity_logical_name: Backend entity logical name, e.g. "contact".
        field_map: DTO field name -> FieldMapping (or a bare attribute name
            for string fields).
        primary_id_attribute: Backend primary key attribute. Defaults to
            "<logical name>id", the store's naming convention.
    """

    def __init__(
        self,
        dto_type: type[TDto],
        entity_logical_name: str,
        field_map: dict[str, FieldMapping | str],
        primary_id_attribute: str | None = None,
    ) -> None:
        self.dto_type = dto_type
        self.entity_logical_name = entity_logical_name
        self.primary_id_attribute = primary_id_attribute or f"{entity_logical_name}id"
        self.field_map: dict[str, FieldMapping] = {
            name: spec if isinstance(spec, FieldMapping) else FieldMapping(attribute=spec)
            for name, spec in field_map.items()
        }

        self._system_map: dict[str, FieldMapping] = {
            "id": FieldMapping(attribute=self.primary_id_attribute, type="guid", read_only=True),
            "version": FieldMapping(attribute=VERSION_ATTRIBUTE, type="string", read_only=True),
            "created_at": FieldMapping(attribute=CREATED_ON_ATTRIBUTE, type="datetime", read_only=True),
            "updated_at": FieldMapping(attribute=MODIFIED_ON_ATTRIBUTE, type="datetime", read_only=True),
        }

        # Reverse map: attribute -> DTO field
        self._reverse_map: dict[str, str] = {}
        for name, spec in {**self._system_map, **self.field_map}.items():
            self._reverse_map[spec.attribute] = name

    # ── Field resolution ────────────────────────────────────────────────────

    def _spec(self, field_name: str) -> FieldMapping | None:
        return self.field_map.get(field_name) or self._system_map.get(field_name)

    def resolve_backend_field(self, field_name: str) -> str | None:
        spec = self._spec(field_name)
        return spec.attribute if spec else None

    def resolve_dto_field(self, attribute: str) -> str | None:
        return self._reverse_map.get(attribute)

    def to_backend_value(self, field_name: str, value: Any) -> Any:
        spec = self._spec(field_name)
        if spec is None or value is None:
            return value
        if isinstance(value, (list, tuple)):
            return [self.to_backend_value(field_name, v) for v in value]
        if spec.type in ("guid", "lookup"):
            # Filters compare lookups by target id
            parsed = parse_record_id(value)
            if parsed is None:
                raise ValidationError(f"Value {value!r} for field '{field_name}' is not a valid id")
            return parsed
        return _to_backend(spec, value, field_name)

    # ── Record conversion ───────────────────────────────────────────────────

    def to_entity(self, data: TDto) -> Entity:
        entity = Entity(logical_name=self.entity_logical_name)

        if data.id is not None:
            entity.id = parse_record_id(data.id)
            if entity.id is None:
                raise ValidationError(f"Id '{data.id}' is not a valid record id")

        for field_name, spec in self.field_map.items():
            if spec.read_only or field_name in SYSTEM_FIELDS:
                continue
            value = getattr(data, field_name, None)
            entity[spec.attribute] = _to_backend(spec, value, field_name)

        return entity

    def to_dto(self, entity: Entity) -> TDto:
        values: dict[str, Any] = {}
        if entity.id is not None:
            values["id"] = str(entity.id)
        for field_name, spec in {**self._system_map, **self.field_map}.items():
            if field_name == "id" or spec.attribute not in entity:
                continue
            values[field_name] = _from_backend(spec, entity[spec.attribute])

        try:
            return self.dto_type.model_validate(values)
        except PydanticValidationError as exc:
            logger.warning(
                "mapper.to_dto_failed",
                entity=self.entity_logical_name,
                record_id=str(entity.id),
                errors=exc.error_count(),
            )
            raise ValidationError(
                f"Record {entity.id} of '{self.entity_logical_name}' does not fit "
                f"{self.dto_type.__name__}: {exc}"
            ) from exc


# ── Conversion Functions ───────────────────────────────────────────────────


def _to_backend(spec: FieldMapping, value: Any, field_name: str) -> Any:
    """Convert a DTO value to the backend representation for its field type."""
    if value is None:
        return None

    try:
        if spec.type == "string":
            return str(value)
        if spec.type in ("integer", "option"):
            return int(value)
        if spec.type == "decimal":
            return Decimal(str(value))
        if spec.type == "boolean":
            return bool(value)
        if spec.type == "datetime":
            return value if isinstance(value, datetime) else datetime.fromisoformat(str(value))
        if spec.type == "guid":
            return uuid.UUID(str(value))
        if spec.type == "lookup":
            return EntityReference(logical_name=spec.target or "", id=uuid.UUID(str(value)))
    except (TypeError, ValueError, ArithmeticError) as exc:
        raise ValidationError(
            f"Value {value!r} for field '{field_name}' is not a valid {spec.type}"
        ) from exc

    return value


def _from_backend(spec: FieldMapping, value: Any) -> Any:
    """Convert a backend attribute value to the DTO representation."""
    if value is None:
        return None

    if spec.type == "lookup":
        return str(value.id) if isinstance(value, EntityReference) else str(value)
    if spec.type == "guid":
        return str(value)
    if spec.type == "datetime" and isinstance(value, str):
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    if spec.type == "string":
        return str(value)
    return value
