"""Query expression builder -- translates QueryRequest into the store's NativeQuery.

Translation rules:
- Filter leaves resolve DTO fields through the entity mapper; an unmapped
  field raises TranslationError naming the field and clause. Operators map
  one to one and operand order is never changed.
- AND/OR groups become filter expressions of the same type. Nesting is kept
  as is; no flattening across mixed AND/OR levels.
- NOT is pushed down to the conditions (De Morgan plus operator negation)
  because store filter expressions have no negation node.
- Projection resolves each field; no projection means all columns.
- Sort keys keep request order and direction.
- Paging is page based: skip must be a multiple of top.

reconstruct_filter() performs the inverse walk, rebuilding a protocol filter
tree from native criteria for logging and verification.
"""

from __future__ import annotations

from typing import Any

import structlog

from src.crm_bridge.core.errors import TranslationError, ValidationError
from src.crm_bridge.mapping.mapper import EntityMapper
from src.crm_bridge.mapping.schemas import VERSION_ATTRIBUTE
from src.crm_bridge.query.native import (
    NEGATED_OPERATORS,
    ColumnSet,
    ConditionExpression,
    ConditionOperator,
    FilterExpression,
    FilterOperator,
    NativeQuery,
    OrderExpression,
    PagingInfo,
)
from src.crm_bridge.query.schemas import (
    Comparison,
    ComparisonOperator,
    FilterNode,
    FunctionCall,
    LogicalGroup,
    LogicalOperator,
    Not,
    QueryRequest,
    StringFunction,
)

logger = structlog.get_logger(__name__)

# Protocol comparison operator -> store condition operator
COMPARISON_OPERATORS: dict[ComparisonOperator, ConditionOperator] = {
    ComparisonOperator.EQ: ConditionOperator.EQUAL,
    ComparisonOperator.NE: ConditionOperator.NOT_EQUAL,
    ComparisonOperator.LT: ConditionOperator.LESS_THAN,
    ComparisonOperator.LE: ConditionOperator.LESS_EQUAL,
    ComparisonOperator.GT: ConditionOperator.GREATER_THAN,
    ComparisonOperator.GE: ConditionOperator.GREATER_EQUAL,
    ComparisonOperator.IN: ConditionOperator.IN,
}

# String function -> (store operator, pattern template)
FUNCTION_OPERATORS: dict[StringFunction, tuple[ConditionOperator, str]] = {
    StringFunction.CONTAINS: (ConditionOperator.LIKE, "%{}%"),
    StringFunction.STARTSWITH: (ConditionOperator.BEGINS_WITH, "{}"),
    StringFunction.ENDSWITH: (ConditionOperator.ENDS_WITH, "{}"),
}

_LOGICAL_TO_FILTER = {
    LogicalOperator.AND: FilterOperator.AND,
    LogicalOperator.OR: FilterOperator.OR,
}
_FLIPPED_FILTER = {FilterOperator.AND: FilterOperator.OR, FilterOperator.OR: FilterOperator.AND}


def escape_like(value: str) -> str:
    """Escape LIKE wildcards so a literal matches only itself."""
    return value.replace("[", "[[]").replace("%", "[%]").replace("_", "[_]")


def unescape_like(pattern: str) -> str:
    return pattern.replace("[%]", "%").replace("[_]", "_").replace("[[]", "[")


class QueryExpressionBuilder:
    """Builds a NativeQuery for one entity type from a QueryRequest.

    Args:
        entity_logical_name: Logical name of the queried entity.
        query: The protocol-level query.
        mapper: Entity mapper used to resolve fields and convert literals.
        max_page_size: Largest page the store serves; a larger top is rejected.
    """

    def __init__(
        self,
        entity_logical_name: str,
        query: QueryRequest,
        mapper: EntityMapper[Any],
        max_page_size: int | None = None,
    ) -> None:
        self._entity_name = entity_logical_name
        self._query = query
        self._mapper = mapper
        self._max_page_size = max_page_size

    def build(self) -> NativeQuery:
        """Translate the query. Raises ValidationError / TranslationError."""
        page_info = self._build_paging()

        native = NativeQuery(
            entity_name=self._entity_name,
            criteria=self._build_criteria(self._query.filter),
            column_set=self._build_column_set(),
            orders=self._build_orders(),
            page_info=page_info,
            is_empty=self._query.top == 0,
        )

        logger.debug(
            "query.translated",
            entity=self._entity_name,
            conditions=_count_conditions(native.criteria),
            columns="all" if native.column_set.all_columns else len(native.column_set.columns),
            orders=len(native.orders),
            page=page_info.page_number if page_info else None,
            page_size=page_info.count if page_info else None,
        )
        return native

    # ── Field resolution ────────────────────────────────────────────────────

    def _resolve(self, field_name: str, clause: str) -> str:
        attribute = self._mapper.resolve_backend_field(field_name)
        if attribute is None:
            raise TranslationError(field=field_name, clause=clause)
        return attribute

    # ── Filter ──────────────────────────────────────────────────────────────

    def _build_criteria(self, node: FilterNode | None) -> FilterExpression:
        if node is None:
            return FilterExpression()

        translated = self._translate(node, negate=False)
        if isinstance(translated, FilterExpression):
            return translated
        return FilterExpression(filter_operator=FilterOperator.AND, conditions=[translated])

    def _translate(
        self, node: FilterNode, negate: bool
    ) -> ConditionExpression | FilterExpression:
        if isinstance(node, Not):
            return self._translate(node.operand, not negate)

        if isinstance(node, LogicalGroup):
            filter_operator = _LOGICAL_TO_FILTER[node.operator]
            if negate:
                filter_operator = _FLIPPED_FILTER[filter_operator]
            group = FilterExpression(filter_operator=filter_operator)
            for operand in node.operands:
                child = self._translate(operand, negate)
                if isinstance(child, FilterExpression):
                    group.filters.append(child)
                else:
                    group.conditions.append(child)
            return group

        if isinstance(node, FunctionCall):
            condition = self._translate_function(node)
        elif isinstance(node, Comparison):
            condition = self._translate_comparison(node)
        else:
            raise ValidationError(f"Unsupported filter node: {type(node).__name__}")

        if negate:
            condition.operator = NEGATED_OPERATORS[condition.operator]
        return condition

    def _translate_comparison(self, node: Comparison) -> ConditionExpression:
        attribute = self._resolve(node.field, "filter")

        if node.value is None:
            if node.operator == ComparisonOperator.EQ:
                return ConditionExpression(attribute, ConditionOperator.NULL)
            if node.operator == ComparisonOperator.NE:
                return ConditionExpression(attribute, ConditionOperator.NOT_NULL)
            raise TranslationError(
                field=node.field,
                clause="filter",
                reason=f"null can only be compared with eq or ne, not {node.operator.value}",
            )

        if node.operator == ComparisonOperator.IN:
            if not isinstance(node.value, (list, tuple)) or not node.value:
                raise TranslationError(
                    field=node.field, clause="filter", reason="in requires a non-empty list"
                )
            values = list(self._mapper.to_backend_value(node.field, list(node.value)))
        else:
            values = [self._mapper.to_backend_value(node.field, node.value)]

        return ConditionExpression(attribute, COMPARISON_OPERATORS[node.operator], values)

    def _translate_function(self, node: FunctionCall) -> ConditionExpression:
        attribute = self._resolve(node.field, "filter")
        operator, template = FUNCTION_OPERATORS[node.function]
        return ConditionExpression(attribute, operator, [template.format(escape_like(node.value))])

    # ── Projection / ordering / paging ──────────────────────────────────────

    def _build_column_set(self) -> ColumnSet:
        if self._query.select is None:
            return ColumnSet.all()

        column_set = ColumnSet()
        for field_name in self._query.select:
            column_set.add(self._resolve(field_name, "select"))
        # Identity and concurrency token are always needed to build a DTO
        column_set.add(self._mapper.primary_id_attribute)
        column_set.add(VERSION_ATTRIBUTE)
        return column_set

    def _build_orders(self) -> list[OrderExpression]:
        return [
            OrderExpression(attribute=self._resolve(key.field, "orderby"), descending=key.descending)
            for key in self._query.order_by
        ]

    def _build_paging(self) -> PagingInfo | None:
        skip, top = self._query.skip, self._query.top

        if skip is not None and skip < 0:
            raise ValidationError(f"$skip must not be negative, got {skip}")
        if top is not None and top < 0:
            raise ValidationError(f"$top must not be negative, got {top}")
        if top is not None and self._max_page_size is not None and top > self._max_page_size:
            raise ValidationError(f"$top={top} exceeds the maximum page size of {self._max_page_size}")

        if top is None:
            if skip:
                raise ValidationError("$skip requires $top: the store pages by page size")
            return None
        if top == 0:
            return None

        skip = skip or 0
        if skip % top != 0:
            raise ValidationError(
                f"$skip={skip} is not a multiple of $top={top}: the store only supports page-aligned paging"
            )
        return PagingInfo(count=top, page_number=skip // top + 1)


# ── Reconstruction ──────────────────────────────────────────────────────────


def reconstruct_filter(criteria: FilterExpression, mapper: EntityMapper[Any]) -> FilterNode | None:
    """Rebuild a protocol filter tree from native criteria.

    Negated store operators come back as Not nodes around the positive form,
    so the result is logically (not textually) equal to the original tree.
    Returns None for unrestricted criteria.
    """
    if criteria.is_empty:
        return None
    node = _reconstruct_group(criteria, mapper)
    if (
        isinstance(node, LogicalGroup)
        and node.operator == LogicalOperator.AND
        and len(node.operands) == 1
    ):
        return node.operands[0]
    return node


def _reconstruct_group(expression: FilterExpression, mapper: EntityMapper[Any]) -> LogicalGroup:
    operands: list[FilterNode] = [_reconstruct_condition(c, mapper) for c in expression.conditions]
    operands.extend(_reconstruct_group(f, mapper) for f in expression.filters if not f.is_empty)
    operator = LogicalOperator.AND if expression.filter_operator == FilterOperator.AND else LogicalOperator.OR
    return LogicalGroup(operator=operator, operands=operands)


def _reconstruct_condition(condition: ConditionExpression, mapper: EntityMapper[Any]) -> FilterNode:
    field_name = mapper.resolve_dto_field(condition.attribute) or condition.attribute
    operator = condition.operator

    if operator == ConditionOperator.NULL:
        return Comparison(field=field_name, operator=ComparisonOperator.EQ, value=None)
    if operator == ConditionOperator.NOT_NULL:
        return Comparison(field=field_name, operator=ComparisonOperator.NE, value=None)

    for function, (function_operator, template) in FUNCTION_OPERATORS.items():
        if operator in (function_operator, NEGATED_OPERATORS[function_operator]):
            pattern = condition.values[0]
            if template.startswith("%"):
                pattern = pattern[1:-1]
            node: FilterNode = FunctionCall(
                function=function, field=field_name, value=unescape_like(pattern)
            )
            return node if operator == function_operator else Not(operand=node)

    for comparison, native_operator in COMPARISON_OPERATORS.items():
        if operator == native_operator:
            value = condition.values if comparison == ComparisonOperator.IN else condition.values[0]
            return Comparison(field=field_name, operator=comparison, value=value)

    # Remaining operator is not-in
    positive = Comparison(field=field_name, operator=ComparisonOperator.IN, value=condition.values)
    return Not(operand=positive)


def _count_conditions(expression: FilterExpression) -> int:
    return len(expression.conditions) + sum(_count_conditions(f) for f in expression.filters)
