"""Pydantic schemas for protocol-level queries.

A QueryRequest is what the HTTP layer hands the domain manager: a filter
tree over DTO field names and literals, sort keys, an optional projection,
and skip/top paging. It knows nothing about backend attribute names.

Filter tree nodes:
- Comparison: field <op> literal (eq, ne, lt, le, gt, ge, in)
- FunctionCall: contains/startswith/endswith(field, literal)
- LogicalGroup: and/or over two or more operands, nesting preserved
- Not: negation of a single operand
"""

from __future__ import annotations

from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field


# ── Enums ───────────────────────────────────────────────────────────────────


class ComparisonOperator(str, Enum):
    """Comparison operators over a field and a literal."""

    EQ = "eq"
    NE = "ne"
    LT = "lt"
    LE = "le"
    GT = "gt"
    GE = "ge"
    IN = "in"


class StringFunction(str, Enum):
    """String functions usable as boolean filter terms."""

    CONTAINS = "contains"
    STARTSWITH = "startswith"
    ENDSWITH = "endswith"


class LogicalOperator(str, Enum):
    AND = "and"
    OR = "or"


# ── Filter Nodes ────────────────────────────────────────────────────────────


class Comparison(BaseModel):
    """Leaf comparison: `field operator value`. A None value means null."""

    kind: Literal["comparison"] = "comparison"
    field: str
    operator: ComparisonOperator
    value: Any = None


class FunctionCall(BaseModel):
    """Leaf string function: `function(field, value)`."""

    kind: Literal["function"] = "function"
    function: StringFunction
    field: str
    value: str


class LogicalGroup(BaseModel):
    """AND/OR combination of operands."""

    kind: Literal["group"] = "group"
    operator: LogicalOperator
    operands: list[FilterNode] = Field(min_length=1)


class Not(BaseModel):
    """Logical negation of one operand."""

    kind: Literal["not"] = "not"
    operand: FilterNode


FilterNode = Annotated[
    Union[Comparison, FunctionCall, LogicalGroup, Not],
    Field(discriminator="kind"),
]

LogicalGroup.model_rebuild()
Not.model_rebuild()


# ── Query Request ───────────────────────────────────────────────────────────


class SortKey(BaseModel):
    """One ordering key; the first key in a list is the primary sort."""

    field: str
    descending: bool = False


class QueryRequest(BaseModel):
    """Structured query over one table of data objects."""

    filter: FilterNode | None = None
    order_by: list[SortKey] = Field(default_factory=list)
    select: list[str] | None = None
    skip: int | None = None
    top: int | None = None
