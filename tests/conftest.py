"""Shared test fixtures.

Provides:
- AccountDto and its mapper (name/phone/revenue/employees/primary contact)
- An in-memory store and a StoreConnection-compatible stub around it
- A DomainManager over the account table
- Settings pointing at a fake tenant
"""

from __future__ import annotations

from datetime import datetime

import pytest

from src.crm_bridge.config import AuthMethod, Settings
from src.crm_bridge.domain.manager import DomainManager
from src.crm_bridge.mapping.mapper import FieldMapEntityMapper, FieldMapping
from src.crm_bridge.mapping.schemas import TableData
from src.crm_bridge.store.connection import ConnectionHandle
from src.crm_bridge.store.memory import InMemoryStoreClient

TENANT_URL = "https://contoso.crm.dynamics.com"


class AccountDto(TableData):
    name: str | None = None
    phone: str | None = None
    revenue: float | None = None
    employees: int | None = None
    active: bool | None = None
    founded: datetime | None = None
    primary_contact_id: str | None = None


ACCOUNT_FIELDS: dict[str, FieldMapping | str] = {
    "name": "name",
    "phone": "telephone1",
    "revenue": FieldMapping(attribute="revenue", type="decimal"),
    "employees": FieldMapping(attribute="numberofemployees", type="integer"),
    "active": FieldMapping(attribute="isactive", type="boolean"),
    "founded": FieldMapping(attribute="foundedon", type="datetime"),
    "primary_contact_id": FieldMapping(attribute="primarycontactid", type="lookup", target="contact"),
}


def make_account_mapper() -> FieldMapEntityMapper[AccountDto]:
    return FieldMapEntityMapper(AccountDto, "account", ACCOUNT_FIELDS)


class StubConnection:
    """StoreConnection stand-in handing out a fixed client, counting acquisitions."""

    def __init__(self, client) -> None:
        self.client = client
        self.acquire_count = 0

    async def acquire(self) -> ConnectionHandle:
        self.acquire_count += 1
        return ConnectionHandle(client=self.client, endpoint=TENANT_URL, auth_method=AuthMethod.API_APP)


@pytest.fixture
def account_mapper() -> FieldMapEntityMapper[AccountDto]:
    return make_account_mapper()


@pytest.fixture
def memory_store() -> InMemoryStoreClient:
    return InMemoryStoreClient()


@pytest.fixture
def connection(memory_store) -> StubConnection:
    return StubConnection(memory_store)


@pytest.fixture
def manager(account_mapper, connection) -> DomainManager[AccountDto]:
    return DomainManager(account_mapper, connection, max_page_size=50)


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        MSDC_TENANT_URL=TENANT_URL,
        MSDC_AAD_AUTHORITY_URL="https://login.example.com/tenant-1",
        MSDC_AAD_CLIENT_ID="client-1",
        MSDC_AAD_CLIENT_SECRET="secret-1",
        MSDC_AUTH_METHOD=AuthMethod.API_APP,
        MSDC_MAX_PAGE_SIZE=50,
    )


@pytest.fixture
def make_account() -> type[AccountDto]:
    """The account DTO class, for building request payloads."""
    return AccountDto
