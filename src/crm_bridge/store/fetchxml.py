"""FetchXML rendering of native queries.

The tenant Web API accepts a native query as a FetchXML document passed in
the `fetchXml` query parameter of an entity set request. FetchXML carries
everything a NativeQuery holds: nested and/or filters, condition operators,
explicit or all attributes, orders, and page-number paging. Unpaged queries
are followed page by page with the paging cookie the store hands back.
"""

from __future__ import annotations

import uuid
from datetime import date, datetime
from decimal import Decimal
from typing import Any
from xml.etree import ElementTree

from src.crm_bridge.mapping.schemas import EntityReference
from src.crm_bridge.query.native import (
    VALUELESS_OPERATORS,
    ConditionExpression,
    ConditionOperator,
    FilterExpression,
    NativeQuery,
)

_MULTI_VALUE_OPERATORS = frozenset({ConditionOperator.IN, ConditionOperator.NOT_IN})


def format_value(value: Any) -> str:
    """Render a condition value in FetchXML's text form."""
    if isinstance(value, bool):
        return "1" if value else "0"
    if isinstance(value, EntityReference):
        return str(value.id)
    if isinstance(value, (uuid.UUID, Decimal)):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return str(value)


def _append_condition(parent: ElementTree.Element, condition: ConditionExpression) -> None:
    element = ElementTree.SubElement(
        parent,
        "condition",
        attribute=condition.attribute,
        operator=condition.operator.value,
    )
    if condition.operator in VALUELESS_OPERATORS:
        return
    if condition.operator in _MULTI_VALUE_OPERATORS:
        for value in condition.values:
            ElementTree.SubElement(element, "value").text = format_value(value)
    else:
        element.set("value", format_value(condition.values[0]))


def _append_filter(parent: ElementTree.Element, expression: FilterExpression) -> None:
    if expression.is_empty:
        return
    element = ElementTree.SubElement(parent, "filter", type=expression.filter_operator.value)
    for condition in expression.conditions:
        _append_condition(element, condition)
    for child in expression.filters:
        _append_filter(element, child)


def to_fetchxml(query: NativeQuery, page: int | None = None, paging_cookie: str | None = None) -> str:
    """Render a NativeQuery as a FetchXML document string.

    page and paging_cookie request a follow-up page of an unpaged query.
    """
    fetch = ElementTree.Element("fetch", version="1.0", mapping="logical")
    if query.page_info is not None:
        fetch.set("count", str(query.page_info.count))
        fetch.set("page", str(query.page_info.page_number))
    elif page is not None:
        fetch.set("page", str(page))
        if paging_cookie:
            fetch.set("paging-cookie", paging_cookie)

    entity = ElementTree.SubElement(fetch, "entity", name=query.entity_name)

    if query.column_set.all_columns:
        ElementTree.SubElement(entity, "all-attributes")
    else:
        for column in query.column_set.columns:
            ElementTree.SubElement(entity, "attribute", name=column)

    for order in query.orders:
        ElementTree.SubElement(
            entity,
            "order",
            attribute=order.attribute,
            descending="true" if order.descending else "false",
        )

    _append_filter(entity, query.criteria)

    return ElementTree.tostring(fetch, encoding="unicode")
