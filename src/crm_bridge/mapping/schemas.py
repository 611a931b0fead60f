"""Transport and backend record types.

- TableData: base class for transport-facing data objects (DTOs). Carries
  the mobile table system properties (id, version, created_at, updated_at,
  deleted); subclasses declare the domain fields.
- Entity: backend-facing CRM record -- logical name, GUID id, attribute bag.
- EntityReference: lookup attribute value pointing at another record.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict

# Backend system attributes the connector relies on for every entity type.
VERSION_ATTRIBUTE = "versionnumber"
CREATED_ON_ATTRIBUTE = "createdon"
MODIFIED_ON_ATTRIBUTE = "modifiedon"

# TableData system properties, owned by the connector rather than field maps.
SYSTEM_FIELDS = frozenset({"id", "version", "created_at", "updated_at", "deleted"})


class TableData(BaseModel):
    """Base data object exchanged with callers of the connector."""

    model_config = ConfigDict(validate_assignment=True)

    id: str | None = None
    version: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    deleted: bool = False


@dataclass(frozen=True)
class EntityReference:
    """Reference to another CRM record, as stored in lookup attributes."""

    logical_name: str
    id: uuid.UUID


@dataclass
class Entity:
    """A CRM record as the store sees it."""

    logical_name: str
    id: uuid.UUID | None = None
    attributes: dict[str, Any] = field(default_factory=dict)

    def get(self, attribute: str, default: Any = None) -> Any:
        return self.attributes.get(attribute, default)

    def __getitem__(self, attribute: str) -> Any:
        return self.attributes[attribute]

    def __setitem__(self, attribute: str, value: Any) -> None:
        self.attributes[attribute] = value

    def __contains__(self, attribute: object) -> bool:
        return attribute in self.attributes

    @property
    def version(self) -> str | None:
        """Concurrency token as an opaque string, if the store returned one."""
        value = self.attributes.get(VERSION_ATTRIBUTE)
        return None if value is None else str(value)
