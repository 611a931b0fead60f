"""Mapping registry -- one EntityMapper per DTO type, validated at startup.

Tables are registered once during application bootstrap. validate() checks
every registration eagerly so a broken mapping fails the process at startup
instead of failing individual requests later.
"""

from __future__ import annotations

from typing import Any

import structlog

from src.crm_bridge.mapping.mapper import EntityMapper, FieldMapEntityMapper
from src.crm_bridge.mapping.schemas import SYSTEM_FIELDS, TableData

logger = structlog.get_logger(__name__)


class MappingRegistry:
    """Registry of entity mappers keyed by DTO type."""

    def __init__(self) -> None:
        self._mappers: dict[type[TableData], EntityMapper[Any]] = {}

    def register(self, mapper: EntityMapper[Any]) -> None:
        """Register a mapper. Each DTO type may be registered only once."""
        dto_type = mapper.dto_type
        if dto_type in self._mappers:
            raise ValueError(f"A mapper for {dto_type.__name__} is already registered")
        self._mappers[dto_type] = mapper
        logger.info(
            "mapping.registered",
            dto=dto_type.__name__,
            entity=mapper.entity_logical_name,
        )

    def get(self, dto_type: type[TableData]) -> EntityMapper[Any]:
        """Return the mapper for a DTO type.

        Raises:
            KeyError: If no mapper is registered for the type.
        """
        try:
            return self._mappers[dto_type]
        except KeyError:
            raise KeyError(f"No mapper registered for {dto_type.__name__}") from None

    def logical_names(self) -> dict[type[TableData], str]:
        """Static DTO type -> entity logical name table."""
        return {dto_type: m.entity_logical_name for dto_type, m in self._mappers.items()}

    def validate(self) -> None:
        """Check every registered mapper; raise ValueError listing all problems."""
        problems: list[str] = []

        for dto_type, mapper in self._mappers.items():
            name = dto_type.__name__
            if not getattr(mapper, "entity_logical_name", None):
                problems.append(f"{name}: missing entity logical name")
            if not getattr(mapper, "primary_id_attribute", None):
                problems.append(f"{name}: missing primary id attribute")

            if isinstance(mapper, FieldMapEntityMapper):
                seen: dict[str, str] = {}
                for field_name, spec in mapper.field_map.items():
                    if field_name in SYSTEM_FIELDS:
                        problems.append(f"{name}.{field_name}: system fields cannot be remapped")
                    if field_name not in dto_type.model_fields:
                        problems.append(f"{name}.{field_name}: not a field of {name}")
                    if spec.attribute in seen:
                        problems.append(
                            f"{name}.{field_name}: attribute '{spec.attribute}' "
                            f"already mapped by '{seen[spec.attribute]}'"
                        )
                    seen[spec.attribute] = field_name

        if problems:
            raise ValueError("Invalid table mappings: " + "; ".join(problems))

        logger.info("mapping.validated", tables=len(self._mappers))

    def __len__(self) -> int:
        return len(self._mappers)

    def __contains__(self, dto_type: object) -> bool:
        return dto_type in self._mappers
