"""CRM store clients and the request-scoped connection."""

from src.crm_bridge.store.client import StoreClient
from src.crm_bridge.store.connection import ConnectionHandle, StoreConnection, get_store_connection
from src.crm_bridge.store.memory import InMemoryStoreClient
from src.crm_bridge.store.webapi import WebApiStoreClient

__all__ = [
    "ConnectionHandle",
    "InMemoryStoreClient",
    "StoreClient",
    "StoreConnection",
    "WebApiStoreClient",
    "get_store_connection",
]
