"""Query translation -- protocol queries to the store's native query expression.

- schemas: QueryRequest and the filter tree node types
- odata: OData query option parser producing a QueryRequest
- native: NativeQuery and its condition/filter/column/order/paging parts
- builder: QueryExpressionBuilder and reconstruct_filter
"""

from src.crm_bridge.query.builder import QueryExpressionBuilder, reconstruct_filter
from src.crm_bridge.query.native import NativeQuery
from src.crm_bridge.query.odata import parse_query_options
from src.crm_bridge.query.schemas import QueryRequest

__all__ = [
    "NativeQuery",
    "QueryExpressionBuilder",
    "QueryRequest",
    "parse_query_options",
    "reconstruct_filter",
]
