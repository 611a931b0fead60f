"""Native query representation of the CRM store.

Mirrors the store's own query expression: an entity logical name, a criteria
tree of AND/OR filter expressions holding attribute conditions, a column set,
ordered sort expressions and a page-based paging descriptor. All attribute
names here are backend attribute names.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ConditionOperator(str, Enum):
    """Store condition operators (values are the FetchXML operator names)."""

    EQUAL = "eq"
    NOT_EQUAL = "ne"
    LESS_THAN = "lt"
    LESS_EQUAL = "le"
    GREATER_THAN = "gt"
    GREATER_EQUAL = "ge"
    LIKE = "like"
    NOT_LIKE = "not-like"
    BEGINS_WITH = "begins-with"
    NOT_BEGIN_WITH = "not-begin-with"
    ENDS_WITH = "ends-with"
    NOT_END_WITH = "not-end-with"
    NULL = "null"
    NOT_NULL = "not-null"
    IN = "in"
    NOT_IN = "not-in"


# Operator -> logical complement, used to push negation down to conditions.
NEGATED_OPERATORS: dict[ConditionOperator, ConditionOperator] = {
    ConditionOperator.EQUAL: ConditionOperator.NOT_EQUAL,
    ConditionOperator.LESS_THAN: ConditionOperator.GREATER_EQUAL,
    ConditionOperator.LESS_EQUAL: ConditionOperator.GREATER_THAN,
    ConditionOperator.LIKE: ConditionOperator.NOT_LIKE,
    ConditionOperator.BEGINS_WITH: ConditionOperator.NOT_BEGIN_WITH,
    ConditionOperator.ENDS_WITH: ConditionOperator.NOT_END_WITH,
    ConditionOperator.NULL: ConditionOperator.NOT_NULL,
    ConditionOperator.IN: ConditionOperator.NOT_IN,
}
NEGATED_OPERATORS.update({v: k for k, v in list(NEGATED_OPERATORS.items())})

# Operators that take no value.
VALUELESS_OPERATORS = frozenset({ConditionOperator.NULL, ConditionOperator.NOT_NULL})


class FilterOperator(str, Enum):
    AND = "and"
    OR = "or"


@dataclass
class ConditionExpression:
    """A single attribute condition."""

    attribute: str
    operator: ConditionOperator
    values: list[Any] = field(default_factory=list)


@dataclass
class FilterExpression:
    """A group of conditions and child filters joined by one logical operator."""

    filter_operator: FilterOperator = FilterOperator.AND
    conditions: list[ConditionExpression] = field(default_factory=list)
    filters: list[FilterExpression] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.conditions and all(f.is_empty for f in self.filters)


@dataclass
class ColumnSet:
    """Columns to return: either every column or an explicit list."""

    columns: list[str] = field(default_factory=list)
    all_columns: bool = False

    @classmethod
    def all(cls) -> ColumnSet:
        return cls(all_columns=True)

    def add(self, column: str) -> None:
        if not self.all_columns and column not in self.columns:
            self.columns.append(column)


@dataclass
class OrderExpression:
    attribute: str
    descending: bool = False


@dataclass
class PagingInfo:
    """Page-based paging: `count` records per page, 1-based `page_number`."""

    count: int
    page_number: int = 1


@dataclass
class NativeQuery:
    """Complete store query for one entity type.

    Attributes:
        entity_name: Logical name of the queried entity.
        criteria: Root filter expression; empty means unrestricted.
        column_set: Columns to return.
        orders: Sort expressions, primary first.
        page_info: Paging descriptor, None for no paging.
        is_empty: True when the query can be answered with no records
            without contacting the store (top=0).
    """

    entity_name: str
    criteria: FilterExpression = field(default_factory=FilterExpression)
    column_set: ColumnSet = field(default_factory=ColumnSet.all)
    orders: list[OrderExpression] = field(default_factory=list)
    page_info: PagingInfo | None = None
    is_empty: bool = False
