"""Mapping between transport data objects and CRM entities.

- TableData / Entity / EntityReference: the two record shapes
- EntityMapper: per-table mapping strategy (ABC)
- FieldMapEntityMapper + FieldMapping: declarative field-map implementation
- MappingRegistry: DTO type -> mapper, validated at startup
"""

from src.crm_bridge.mapping.mapper import (
    EntityMapper,
    FieldMapEntityMapper,
    FieldMapping,
    parse_record_id,
)
from src.crm_bridge.mapping.registry import MappingRegistry
from src.crm_bridge.mapping.schemas import Entity, EntityReference, TableData

__all__ = [
    "Entity",
    "EntityMapper",
    "EntityReference",
    "FieldMapEntityMapper",
    "FieldMapping",
    "MappingRegistry",
    "TableData",
    "parse_record_id",
]
