"""OData query option parsing -- $filter, $orderby, $select, $skip, $top.

Turns the query string of a table request into a QueryRequest. The $filter
grammar covered here is the subset mobile table clients emit:

    expr     := and_expr ("or" and_expr)*
    and_expr := unary ("and" unary)*
    unary    := "not" unary | primary
    primary  := "(" expr ")" | func "(" field "," literal ")" | comparison
    comparison := operand op operand | field "in" "(" literal ("," literal)* ")"

"not" negates the comparison, function call or parenthesized group that
follows it. A literal on the left of a comparison is moved to the right and
the operator mirrored (5 lt f -> f gt 5), so operator semantics are kept.

All parse failures raise ValidationError naming the option and position.
"""

from __future__ import annotations

import re
import uuid
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Any

import structlog

from src.crm_bridge.core.errors import ValidationError
from src.crm_bridge.query.schemas import (
    Comparison,
    ComparisonOperator,
    FilterNode,
    FunctionCall,
    LogicalGroup,
    LogicalOperator,
    Not,
    QueryRequest,
    SortKey,
    StringFunction,
)

logger = structlog.get_logger(__name__)

# Mobile client system property names -> TableData field names
SYSTEM_PROPERTY_ALIASES: dict[str, str] = {
    "__createdAt": "created_at",
    "__updatedAt": "updated_at",
    "__version": "version",
    "__deleted": "deleted",
    "createdAt": "created_at",
    "updatedAt": "updated_at",
}

# Options that are accepted but carry no meaning for translation
IGNORED_OPTIONS = frozenset({"$count", "$inlinecount", "$format"})

_FUNCTION_NAMES = frozenset(f.value for f in StringFunction)

_MIRRORED = {
    ComparisonOperator.EQ: ComparisonOperator.EQ,
    ComparisonOperator.NE: ComparisonOperator.NE,
    ComparisonOperator.LT: ComparisonOperator.GT,
    ComparisonOperator.LE: ComparisonOperator.GE,
    ComparisonOperator.GT: ComparisonOperator.LT,
    ComparisonOperator.GE: ComparisonOperator.LE,
}

_TOKEN_PATTERN = re.compile(
    r"""
    (?P<ws>\s+)
    |(?P<string>'(?:[^']|'')*')
    |(?P<guid>[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}(?![\w-]))
    |(?P<datetime>\d{4}-\d{2}-\d{2}T\d{2}:\d{2}(?::\d{2}(?:\.\d+)?)?(?:Z|[+-]\d{2}:\d{2})?)
    |(?P<date>\d{4}-\d{2}-\d{2}(?![\w:]))
    |(?P<number>-?\d+(?:\.\d+)?(?![\w.]))
    |(?P<name>[A-Za-z_][A-Za-z0-9_]*)
    |(?P<punct>[(),])
    """,
    re.VERBOSE,
)


@dataclass
class _Token:
    kind: str
    text: str
    position: int
    value: Any = None


def _tokenize(text: str) -> list[_Token]:
    tokens: list[_Token] = []
    position = 0
    while position < len(text):
        match = _TOKEN_PATTERN.match(text, position)
        if match is None:
            raise ValidationError(
                f"$filter: unexpected character {text[position]!r} at position {position}"
            )
        kind = match.lastgroup or ""
        raw = match.group()
        if kind != "ws":
            tokens.append(_Token(kind, raw, position, _literal_value(kind, raw)))
        position = match.end()
    return tokens


def _literal_value(kind: str, raw: str) -> Any:
    if kind == "string":
        return raw[1:-1].replace("''", "'")
    if kind == "guid":
        return uuid.UUID(raw)
    if kind == "datetime":
        return datetime.fromisoformat(raw.replace("Z", "+00:00"))
    if kind == "date":
        return date.fromisoformat(raw)
    if kind == "number":
        return Decimal(raw) if "." in raw else int(raw)
    return None


class _FilterParser:
    """Recursive-descent parser over $filter tokens."""

    _KEYWORD_LITERALS = {"true": True, "false": False, "null": None}

    def __init__(self, text: str, aliases: Mapping[str, str]) -> None:
        self._text = text
        self._tokens = _tokenize(text)
        self._index = 0
        self._aliases = aliases

    def parse(self) -> FilterNode:
        if not self._tokens:
            raise ValidationError("$filter: expression is empty")
        node = self._parse_or()
        if self._peek() is not None:
            self._error("unexpected token")
        return node

    # ── Token helpers ───────────────────────────────────────────────────────

    def _peek(self) -> _Token | None:
        return self._tokens[self._index] if self._index < len(self._tokens) else None

    def _next(self) -> _Token:
        token = self._peek()
        if token is None:
            raise ValidationError(f"$filter: unexpected end of expression at position {len(self._text)}")
        self._index += 1
        return token

    def _at_keyword(self, *keywords: str) -> bool:
        token = self._peek()
        return token is not None and token.kind == "name" and token.text.lower() in keywords

    def _expect_punct(self, char: str) -> None:
        token = self._next()
        if token.kind != "punct" or token.text != char:
            self._index -= 1
            self._error(f"expected '{char}'")

    def _error(self, message: str) -> None:
        token = self._peek()
        position = token.position if token else len(self._text)
        found = f" near {token.text!r}" if token else ""
        raise ValidationError(f"$filter: {message} at position {position}{found}")

    # ── Grammar ─────────────────────────────────────────────────────────────

    def _parse_or(self) -> FilterNode:
        operands = [self._parse_and()]
        while self._at_keyword("or"):
            self._next()
            operands.append(self._parse_and())
        if len(operands) == 1:
            return operands[0]
        return LogicalGroup(operator=LogicalOperator.OR, operands=operands)

    def _parse_and(self) -> FilterNode:
        operands = [self._parse_unary()]
        while self._at_keyword("and"):
            self._next()
            operands.append(self._parse_unary())
        if len(operands) == 1:
            return operands[0]
        return LogicalGroup(operator=LogicalOperator.AND, operands=operands)

    def _parse_unary(self) -> FilterNode:
        if self._at_keyword("not"):
            self._next()
            return Not(operand=self._parse_unary())
        return self._parse_primary()

    def _parse_primary(self) -> FilterNode:
        token = self._peek()
        if token is None:
            self._error("expected an expression")

        if token.kind == "punct" and token.text == "(":
            self._next()
            node = self._parse_or()
            self._expect_punct(")")
            return node

        if token.kind == "name" and token.text.lower() in _FUNCTION_NAMES:
            following = self._tokens[self._index + 1] if self._index + 1 < len(self._tokens) else None
            if following is not None and following.text == "(":
                return self._parse_function()

        return self._parse_comparison()

    def _parse_function(self) -> FunctionCall:
        function = StringFunction(self._next().text.lower())
        self._expect_punct("(")
        field_name = self._parse_field()
        self._expect_punct(",")
        value = self._parse_literal()
        self._expect_punct(")")
        if not isinstance(value, str):
            raise ValidationError(f"$filter: {function.value}() on '{field_name}' needs a string literal")
        return FunctionCall(function=function, field=field_name, value=value)

    def _parse_comparison(self) -> Comparison:
        left_is_field, left = self._parse_operand()

        if self._at_keyword("in"):
            self._next()
            if not left_is_field:
                self._error("'in' needs a field on the left")
            return Comparison(field=left, operator=ComparisonOperator.IN, value=self._parse_list())

        op_token = self._next()
        try:
            operator = ComparisonOperator(op_token.text.lower())
        except ValueError:
            self._index -= 1
            self._error("expected a comparison operator")
        right_is_field, right = self._parse_operand()

        if left_is_field and not right_is_field:
            return Comparison(field=left, operator=operator, value=right)
        if right_is_field and not left_is_field:
            return Comparison(field=right, operator=_MIRRORED[operator], value=left)
        what = "two fields" if left_is_field else "two literals"
        raise ValidationError(
            f"$filter: comparison of {what} at position {op_token.position} is not supported"
        )

    def _parse_list(self) -> list[Any]:
        self._expect_punct("(")
        values = [self._parse_literal()]
        while self._peek() is not None and self._peek().text == ",":
            self._next()
            values.append(self._parse_literal())
        self._expect_punct(")")
        return values

    def _parse_operand(self) -> tuple[bool, Any]:
        token = self._peek()
        if token is not None and token.kind == "name" and token.text.lower() not in self._KEYWORD_LITERALS:
            return True, self._parse_field()
        return False, self._parse_literal()

    def _parse_field(self) -> str:
        token = self._next()
        if token.kind != "name":
            self._index -= 1
            self._error("expected a field name")
        return self._aliases.get(token.text, token.text)

    def _parse_literal(self) -> Any:
        token = self._next()
        if token.kind == "name" and token.text.lower() in self._KEYWORD_LITERALS:
            return self._KEYWORD_LITERALS[token.text.lower()]
        if token.kind in ("string", "guid", "datetime", "date", "number"):
            return token.value
        self._index -= 1
        self._error("expected a literal")


# ── Option parsers ──────────────────────────────────────────────────────────


def parse_filter(text: str, aliases: Mapping[str, str] | None = None) -> FilterNode:
    """Parse a $filter expression into a filter tree."""
    return _FilterParser(text, aliases if aliases is not None else SYSTEM_PROPERTY_ALIASES).parse()


def parse_orderby(text: str, aliases: Mapping[str, str] | None = None) -> list[SortKey]:
    """Parse a $orderby list: `field [asc|desc], ...`."""
    aliases = aliases if aliases is not None else SYSTEM_PROPERTY_ALIASES
    keys: list[SortKey] = []
    for index, item in enumerate(text.split(",")):
        parts = item.split()
        if not parts or len(parts) > 2:
            raise ValidationError(f"$orderby: item {index + 1} ({item.strip()!r}) is malformed")
        direction = parts[1].lower() if len(parts) == 2 else "asc"
        if direction not in ("asc", "desc"):
            raise ValidationError(f"$orderby: unknown direction {parts[1]!r} in item {index + 1}")
        keys.append(SortKey(field=aliases.get(parts[0], parts[0]), descending=direction == "desc"))
    return keys


def parse_select(text: str, aliases: Mapping[str, str] | None = None) -> list[str]:
    """Parse a $select list. '*' selects everything and yields an empty projection marker."""
    aliases = aliases if aliases is not None else SYSTEM_PROPERTY_ALIASES
    fields = [item.strip() for item in text.split(",")]
    if any(not f for f in fields):
        raise ValidationError("$select: empty field name")
    return [aliases.get(f, f) for f in fields]


def _parse_count(name: str, text: str) -> int:
    try:
        value = int(text)
    except ValueError:
        raise ValidationError(f"{name}: {text!r} is not an integer") from None
    if value < 0:
        raise ValidationError(f"{name}: must not be negative, got {value}")
    return value


def parse_query_options(
    params: Mapping[str, str],
    aliases: Mapping[str, str] | None = None,
) -> QueryRequest:
    """Build a QueryRequest from OData query options.

    Args:
        params: Query string parameters; non-$ parameters are ignored.
        aliases: Field name aliases; defaults to mobile client system properties.

    Raises:
        ValidationError: If any option is malformed.
    """
    request = QueryRequest()

    for name, raw in params.items():
        if not name.startswith("$"):
            continue
        option = name.lower()
        text = raw.strip()

        if option == "$filter":
            request.filter = parse_filter(text, aliases) if text else None
        elif option == "$orderby":
            request.order_by = parse_orderby(text, aliases) if text else []
        elif option == "$select":
            request.select = None if text in ("", "*") else parse_select(text, aliases)
        elif option == "$skip":
            request.skip = _parse_count("$skip", text)
        elif option == "$top":
            request.top = _parse_count("$top", text)
        elif option in IGNORED_OPTIONS:
            continue
        else:
            raise ValidationError(f"Unsupported query option {name}")

    logger.debug(
        "odata.options_parsed",
        has_filter=request.filter is not None,
        orderby=len(request.order_by),
        select=None if request.select is None else len(request.select),
        skip=request.skip,
        top=request.top,
    )
    return request
