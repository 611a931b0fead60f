"""Table endpoints -- one CRUD + query router per mapped DTO type.

build_table_router() mounts, under /tables/{name}:

    GET    /tables/{name}         OData query options -> query
    GET    /tables/{name}/{id}    lookup
    POST   /tables/{name}         insert
    PUT    /tables/{name}/{id}    replace (version checked)
    PATCH  /tables/{name}/{id}    patch
    DELETE /tables/{name}/{id}    delete

Connector errors are mapped to status codes by api.errors.
"""

# Annotations are evaluated eagerly here: endpoint bodies are typed with the
# table's DTO class, which only exists inside build_table_router().

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status

from src.crm_bridge.api.deps import get_app_settings, get_connection
from src.crm_bridge.config import Settings
from src.crm_bridge.domain.manager import DomainManager
from src.crm_bridge.mapping.mapper import EntityMapper
from src.crm_bridge.store.connection import StoreConnection


def build_table_router(name: str, mapper: EntityMapper[Any]) -> APIRouter:
    """Create the router exposing one table.

    Args:
        name: Table name used in the URL.
        mapper: Entity mapper for the table's DTO type.
    """
    dto_type = mapper.dto_type
    router = APIRouter(prefix=f"/tables/{name}", tags=["tables"])

    async def get_manager(
        connection: StoreConnection = Depends(get_connection),
        settings: Settings = Depends(get_app_settings),
    ) -> DomainManager:
        return DomainManager(mapper, connection, max_page_size=settings.MSDC_MAX_PAGE_SIZE)

    def _not_found(id: str) -> HTTPException:
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"{name} record {id} not found")

    @router.get("", response_model=list[dto_type])
    async def query_records(request: Request, manager: DomainManager = Depends(get_manager)):
        """Query the table with OData options ($filter, $orderby, $select, $skip, $top)."""
        return await manager.query_options(dict(request.query_params))

    @router.get("/{id}", response_model=dto_type)
    async def lookup_record(id: str, manager: DomainManager = Depends(get_manager)):
        result = await manager.lookup(id)
        if result is None:
            raise _not_found(id)
        return result

    @router.post("", response_model=dto_type, status_code=status.HTTP_201_CREATED)
    async def insert_record(data: dto_type, manager: DomainManager = Depends(get_manager)):  # type: ignore[valid-type]
        return await manager.insert(data)

    @router.put("/{id}", response_model=dto_type)
    async def replace_record(
        id: str,
        data: dto_type,  # type: ignore[valid-type]
        manager: DomainManager = Depends(get_manager),
    ):
        """Replace a record. The body must carry the current version."""
        result = await manager.replace(id, data)
        if result is None:
            raise _not_found(id)
        return result

    @router.patch("/{id}", response_model=dto_type)
    async def patch_record(
        id: str,
        changes: dict[str, Any],
        manager: DomainManager = Depends(get_manager),
    ):
        result = await manager.patch(id, changes)
        if result is None:
            raise _not_found(id)
        return result

    @router.delete("/{id}", status_code=status.HTTP_204_NO_CONTENT)
    async def delete_record(id: str, manager: DomainManager = Depends(get_manager)) -> Response:
        if not await manager.delete(id):
            raise _not_found(id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    return router
