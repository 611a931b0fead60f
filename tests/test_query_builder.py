"""Unit tests for QueryExpressionBuilder and reconstruct_filter.

Covers the operator table, NOT push-down, projection, ordering and
page-aligned paging, plus two properties checked against the in-memory
reference store:
- translated filters select the same records as the untranslated predicate
- AND/OR nesting survives translation (checked via reconstruction)
"""

from __future__ import annotations

import uuid

import pytest

from src.crm_bridge.core.errors import TranslationError, ValidationError
from src.crm_bridge.mapping.schemas import Entity
from src.crm_bridge.query.builder import QueryExpressionBuilder, escape_like, reconstruct_filter, unescape_like
from src.crm_bridge.query.native import ConditionOperator, FilterOperator
from src.crm_bridge.query.schemas import (
    Comparison,
    ComparisonOperator,
    FunctionCall,
    LogicalGroup,
    LogicalOperator,
    Not,
    QueryRequest,
    SortKey,
    StringFunction,
)
from src.crm_bridge.store.memory import InMemoryStoreClient


# ── Helpers ────────────────────────────────────────────────────────────────


def _build(mapper, max_page_size=None, **request):
    return QueryExpressionBuilder("account", QueryRequest(**request), mapper, max_page_size).build()


def _cmp(field, operator, value=None) -> Comparison:
    return Comparison(field=field, operator=ComparisonOperator(operator), value=value)


def _and(*operands) -> LogicalGroup:
    return LogicalGroup(operator=LogicalOperator.AND, operands=list(operands))


def _or(*operands) -> LogicalGroup:
    return LogicalGroup(operator=LogicalOperator.OR, operands=list(operands))


ROWS = [
    {"name": "Acme", "telephone1": "555-0100", "numberofemployees": 5},
    {"name": "Adventure Works", "telephone1": None, "numberofemployees": 10},
    {"name": "Contoso", "telephone1": "555-0199", "numberofemployees": 25},
    {"name": "Fabrikam", "telephone1": "555-0142", "numberofemployees": None},
    {"name": "Northwind 100%", "telephone1": "555-0111", "numberofemployees": 40},
]


@pytest.fixture
async def seeded_store() -> InMemoryStoreClient:
    store = InMemoryStoreClient()
    for row in ROWS:
        await store.create(Entity(logical_name="account", attributes=dict(row)))
    return store


async def _names(store, mapper, **request) -> list[str]:
    native = _build(mapper, **request)
    return [e["name"] for e in await store.retrieve_multiple(native)]


# ── Operator Table ─────────────────────────────────────────────────────────


class TestOperatorTable:
    """Each protocol operator maps to exactly one native operator."""

    @pytest.mark.parametrize(
        ("operator", "expected"),
        [
            ("eq", ConditionOperator.EQUAL),
            ("ne", ConditionOperator.NOT_EQUAL),
            ("lt", ConditionOperator.LESS_THAN),
            ("le", ConditionOperator.LESS_EQUAL),
            ("gt", ConditionOperator.GREATER_THAN),
            ("ge", ConditionOperator.GREATER_EQUAL),
        ],
    )
    def test_comparison_operators(self, account_mapper, operator, expected):
        """Comparisons translate one to one with the literal kept on the right."""
        native = _build(account_mapper, filter=_cmp("employees", operator, 10))

        condition = native.criteria.conditions[0]
        assert condition.attribute == "numberofemployees"
        assert condition.operator == expected
        assert condition.values == [10]

    def test_contains_becomes_like_with_escaped_literal(self, account_mapper):
        """contains() wraps the escaped literal in % wildcards."""
        node = FunctionCall(function=StringFunction.CONTAINS, field="name", value="100%")
        condition = _build(account_mapper, filter=node).criteria.conditions[0]

        assert condition.operator == ConditionOperator.LIKE
        assert condition.values == ["%100[%]%"]

    def test_startswith_and_endswith(self, account_mapper):
        """startswith/endswith map to begins-with/ends-with."""
        starts = FunctionCall(function=StringFunction.STARTSWITH, field="name", value="Ac")
        ends = FunctionCall(function=StringFunction.ENDSWITH, field="name", value="so")
        conditions = _build(account_mapper, filter=_and(starts, ends)).criteria.conditions

        assert [c.operator for c in conditions] == [ConditionOperator.BEGINS_WITH, ConditionOperator.ENDS_WITH]
        assert [c.values for c in conditions] == [["Ac"], ["so"]]

    def test_null_comparisons(self, account_mapper):
        """eq null / ne null become the valueless null / not-null operators."""
        native = _build(account_mapper, filter=_and(_cmp("phone", "eq"), _cmp("name", "ne")))

        assert [(c.operator, c.values) for c in native.criteria.conditions] == [
            (ConditionOperator.NULL, []),
            (ConditionOperator.NOT_NULL, []),
        ]

    def test_ordering_comparison_with_null_rejected(self, account_mapper):
        """lt null has no meaning and is rejected."""
        with pytest.raises(TranslationError) as exc_info:
            _build(account_mapper, filter=_cmp("employees", "lt"))
        assert exc_info.value.field == "employees"

    def test_in_list(self, account_mapper):
        """in keeps every value, converted for the field type."""
        condition = _build(account_mapper, filter=_cmp("employees", "in", ["5", "10"])).criteria.conditions[0]

        assert condition.operator == ConditionOperator.IN
        assert condition.values == [5, 10]

    def test_empty_in_list_rejected(self, account_mapper):
        """in with no values is untranslatable."""
        with pytest.raises(TranslationError):
            _build(account_mapper, filter=_cmp("employees", "in", []))

    def test_lookup_literal_converted_to_guid(self, account_mapper):
        """Lookup fields compare by target id."""
        contact_id = uuid.uuid4()
        condition = _build(
            account_mapper, filter=_cmp("primary_contact_id", "eq", str(contact_id))
        ).criteria.conditions[0]

        assert condition.attribute == "primarycontactid"
        assert condition.values == [contact_id]

    def test_malformed_guid_literal_rejected(self, account_mapper):
        """A non-GUID literal for a lookup field is a validation error."""
        with pytest.raises(ValidationError):
            _build(account_mapper, filter=_cmp("id", "eq", "not-a-guid"))


# ── Field Resolution ───────────────────────────────────────────────────────


class TestFieldResolution:
    """Unmapped fields raise TranslationError naming field and clause."""

    def test_unmapped_filter_field(self, account_mapper):
        """A filter on an unmapped field names the filter clause."""
        with pytest.raises(TranslationError) as exc_info:
            _build(account_mapper, filter=_cmp("nickname", "eq", "x"))
        assert (exc_info.value.field, exc_info.value.clause) == ("nickname", "filter")

    def test_unmapped_select_field(self, account_mapper):
        """A projection of an unmapped field names the select clause."""
        with pytest.raises(TranslationError) as exc_info:
            _build(account_mapper, select=["name", "nickname"])
        assert exc_info.value.clause == "select"

    def test_unmapped_orderby_field(self, account_mapper):
        """A sort on an unmapped field names the orderby clause."""
        with pytest.raises(TranslationError) as exc_info:
            _build(account_mapper, order_by=[SortKey(field="nickname")])
        assert exc_info.value.clause == "orderby"

    def test_system_fields_resolve(self, account_mapper):
        """System properties resolve to the backend system attributes."""
        native = _build(account_mapper, order_by=[SortKey(field="updated_at", descending=True)])

        assert native.orders[0].attribute == "modifiedon"
        assert native.orders[0].descending is True


# ── Projection / Ordering ──────────────────────────────────────────────────


class TestProjectionAndOrdering:
    """Column sets and sort expressions."""

    def test_no_projection_means_all_columns(self, account_mapper):
        """Absent $select returns every column."""
        assert _build(account_mapper).column_set.all_columns is True

    def test_projection_adds_identity_and_version(self, account_mapper):
        """An explicit column set always carries the primary id and version."""
        column_set = _build(account_mapper, select=["name", "phone"]).column_set

        assert column_set.all_columns is False
        assert column_set.columns == ["name", "telephone1", "accountid", "versionnumber"]

    def test_sort_keys_keep_request_order(self, account_mapper):
        """Orders follow request order with direction preserved."""
        orders = _build(
            account_mapper,
            order_by=[SortKey(field="employees", descending=True), SortKey(field="name")],
        ).orders

        assert [(o.attribute, o.descending) for o in orders] == [
            ("numberofemployees", True),
            ("name", False),
        ]


# ── Paging ─────────────────────────────────────────────────────────────────


class TestPaging:
    """skip/top translate to page-based paging only when page aligned."""

    def test_misaligned_skip_rejected(self, account_mapper):
        """skip=3, top=5 cannot be expressed as a page and is rejected."""
        with pytest.raises(ValidationError, match=r"\$skip"):
            _build(account_mapper, skip=3, top=5)

    @pytest.mark.parametrize(("skip", "top", "page"), [(0, 5, 1), (5, 5, 2), (20, 5, 5), (None, 7, 1)])
    def test_aligned_skip_becomes_page_number(self, account_mapper, skip, top, page):
        """A skip that is a multiple of top selects page skip/top + 1."""
        page_info = _build(account_mapper, skip=skip, top=top).page_info

        assert (page_info.count, page_info.page_number) == (top, page)

    def test_skip_without_top_rejected(self, account_mapper):
        """skip alone has no page size to align to."""
        with pytest.raises(ValidationError):
            _build(account_mapper, skip=10)

    def test_top_above_page_ceiling_rejected(self, account_mapper):
        """top larger than the store's page size is rejected."""
        with pytest.raises(ValidationError, match="maximum page size"):
            _build(account_mapper, max_page_size=50, top=51)

    def test_top_zero_marks_query_empty(self, account_mapper):
        """top=0 yields an empty query with no paging."""
        native = _build(account_mapper, top=0)

        assert native.is_empty is True
        assert native.page_info is None

    def test_no_paging_requested(self, account_mapper):
        """Neither skip nor top means no paging descriptor."""
        assert _build(account_mapper).page_info is None

    async def test_pages_cover_the_dataset(self, account_mapper, seeded_store):
        """Every aligned page is served and the pages partition the result."""
        pages = []
        for skip in (0, 2, 4):
            pages.append(await _names(seeded_store, account_mapper, order_by=[SortKey(field="name")], skip=skip, top=2))

        assert pages == [
            ["Acme", "Adventure Works"],
            ["Contoso", "Fabrikam"],
            ["Northwind 100%"],
        ]


# ── Negation ───────────────────────────────────────────────────────────────


class TestNegation:
    """NOT is pushed down to the conditions."""

    def test_not_over_and_becomes_or_of_negations(self, account_mapper):
        """De Morgan: not (a and b) -> (not a) or (not b)."""
        native = _build(account_mapper, filter=Not(operand=_and(_cmp("name", "eq", "Acme"), _cmp("employees", "gt", 5))))

        assert native.criteria.filter_operator == FilterOperator.OR
        assert [c.operator for c in native.criteria.conditions] == [
            ConditionOperator.NOT_EQUAL,
            ConditionOperator.LESS_EQUAL,
        ]

    def test_double_negation_cancels(self, account_mapper):
        """not not a -> a."""
        native = _build(account_mapper, filter=Not(operand=Not(operand=_cmp("name", "eq", "Acme"))))

        assert native.criteria.conditions[0].operator == ConditionOperator.EQUAL

    def test_not_function_call(self, account_mapper):
        """not contains() becomes not-like."""
        node = Not(operand=FunctionCall(function=StringFunction.CONTAINS, field="name", value="o"))
        assert _build(account_mapper, filter=node).criteria.conditions[0].operator == ConditionOperator.NOT_LIKE

    def test_not_null_comparison(self, account_mapper):
        """not (phone eq null) -> phone not-null."""
        native = _build(account_mapper, filter=Not(operand=_cmp("phone", "eq")))
        assert native.criteria.conditions[0].operator == ConditionOperator.NOT_NULL


# ── Reference Store Equivalence ────────────────────────────────────────────


def _present(value) -> bool:
    return value is not None


PREDICATES = [
    (_cmp("employees", "eq", 10), lambda r: r["numberofemployees"] == 10),
    (_cmp("employees", "ne", 10), lambda r: _present(r["numberofemployees"]) and r["numberofemployees"] != 10),
    (_cmp("employees", "lt", 25), lambda r: _present(r["numberofemployees"]) and r["numberofemployees"] < 25),
    (_cmp("employees", "le", 25), lambda r: _present(r["numberofemployees"]) and r["numberofemployees"] <= 25),
    (_cmp("employees", "gt", 10), lambda r: _present(r["numberofemployees"]) and r["numberofemployees"] > 10),
    (_cmp("employees", "ge", 10), lambda r: _present(r["numberofemployees"]) and r["numberofemployees"] >= 10),
    (_cmp("employees", "in", [5, 40]), lambda r: r["numberofemployees"] in (5, 40)),
    (_cmp("phone", "eq"), lambda r: r["telephone1"] is None),
    (_cmp("phone", "ne"), lambda r: r["telephone1"] is not None),
    (
        FunctionCall(function=StringFunction.CONTAINS, field="name", value="o"),
        lambda r: "o" in r["name"],
    ),
    (
        FunctionCall(function=StringFunction.CONTAINS, field="name", value="100%"),
        lambda r: "100%" in r["name"],
    ),
    (
        FunctionCall(function=StringFunction.STARTSWITH, field="name", value="A"),
        lambda r: r["name"].startswith("A"),
    ),
    (
        FunctionCall(function=StringFunction.ENDSWITH, field="phone", value="00"),
        lambda r: r["telephone1"] is not None and r["telephone1"].endswith("00"),
    ),
    (
        _or(_cmp("employees", "lt", 10), _and(_cmp("phone", "ne"), _cmp("employees", "ge", 25))),
        lambda r: (
            (_present(r["numberofemployees"]) and r["numberofemployees"] < 10)
            or (r["telephone1"] is not None and _present(r["numberofemployees"]) and r["numberofemployees"] >= 25)
        ),
    ),
    # negations: a null attribute fails the negated comparison too
    (
        Not(operand=_cmp("employees", "eq", 10)),
        lambda r: _present(r["numberofemployees"]) and r["numberofemployees"] != 10,
    ),
    (
        Not(operand=_cmp("employees", "in", [5, 40])),
        lambda r: _present(r["numberofemployees"]) and r["numberofemployees"] not in (5, 40),
    ),
    (
        Not(operand=FunctionCall(function=StringFunction.CONTAINS, field="name", value="100%")),
        lambda r: "100%" not in r["name"],
    ),
    (
        Not(operand=FunctionCall(function=StringFunction.STARTSWITH, field="name", value="A")),
        lambda r: not r["name"].startswith("A"),
    ),
    (
        Not(operand=FunctionCall(function=StringFunction.ENDSWITH, field="phone", value="00")),
        lambda r: r["telephone1"] is not None and not r["telephone1"].endswith("00"),
    ),
    (Not(operand=_cmp("phone", "eq")), lambda r: r["telephone1"] is not None),
    (Not(operand=_cmp("phone", "ne")), lambda r: r["telephone1"] is None),
    (
        Not(operand=_or(_cmp("employees", "lt", 10), _and(_cmp("phone", "ne"), _cmp("employees", "ge", 25)))),
        lambda r: (
            _present(r["numberofemployees"])
            and r["numberofemployees"] >= 10
            and (r["telephone1"] is None or r["numberofemployees"] < 25)
        ),
    ),
    (
        Not(operand=_and(_cmp("phone", "ne"), _cmp("employees", "gt", 10))),
        lambda r: r["telephone1"] is None or (_present(r["numberofemployees"]) and r["numberofemployees"] <= 10),
    ),
]


class TestReferenceEquivalence:
    """Translated queries select the records the predicate selects."""

    @pytest.mark.parametrize(("node", "predicate"), PREDICATES)
    async def test_same_records_as_predicate(self, account_mapper, seeded_store, node, predicate):
        """Store evaluation of the translation matches the predicate on the raw rows."""
        expected = sorted(r["name"] for r in ROWS if predicate(r))
        actual = sorted(await _names(seeded_store, account_mapper, filter=node))

        assert actual == expected

    async def test_empty_filter_returns_everything(self, account_mapper, seeded_store):
        """No filter means unrestricted criteria."""
        assert len(await _names(seeded_store, account_mapper)) == len(ROWS)


# ── Shape Preservation ─────────────────────────────────────────────────────


class TestReconstruction:
    """reconstruct_filter recovers the translated tree's shape."""

    def test_mixed_nesting_round_trips(self, account_mapper):
        """Leaves-first AND/OR trees come back identical."""
        tree = _and(
            _cmp("name", "eq", "Acme"),
            _or(
                _cmp("employees", "gt", 10),
                _cmp("phone", "eq"),
                _and(_cmp("employees", "lt", 3), _cmp("name", "ne", "Contoso")),
            ),
        )
        native = _build(account_mapper, filter=tree)

        assert reconstruct_filter(native.criteria, account_mapper) == tree

    def test_nested_groups_are_not_flattened(self, account_mapper):
        """An AND directly inside an AND stays a separate group."""
        tree = _and(_cmp("name", "eq", "A"), _and(_cmp("name", "eq", "B"), _cmp("name", "eq", "C")))
        native = _build(account_mapper, filter=tree)

        assert len(native.criteria.conditions) == 1
        assert len(native.criteria.filters) == 1
        assert reconstruct_filter(native.criteria, account_mapper) == tree

    def test_single_leaf_unwrapped(self, account_mapper):
        """A lone condition reconstructs to the bare leaf."""
        leaf = FunctionCall(function=StringFunction.STARTSWITH, field="name", value="a_b")
        native = _build(account_mapper, filter=leaf)

        assert reconstruct_filter(native.criteria, account_mapper) == leaf

    def test_negated_operators_come_back_as_not(self, account_mapper):
        """not-like reconstructs as not(contains(...))."""
        leaf = FunctionCall(function=StringFunction.CONTAINS, field="name", value="x")
        native = _build(account_mapper, filter=Not(operand=leaf))

        assert reconstruct_filter(native.criteria, account_mapper) == Not(operand=leaf)

    def test_empty_criteria(self, account_mapper):
        """Unrestricted criteria reconstruct to None."""
        assert reconstruct_filter(_build(account_mapper).criteria, account_mapper) is None


class TestLikeEscaping:
    """LIKE escaping helpers."""

    @pytest.mark.parametrize("literal", ["plain", "50%", "a_b", "[x]", "%_[]"])
    def test_unescape_inverts_escape(self, literal):
        """unescape_like(escape_like(s)) == s."""
        assert unescape_like(escape_like(literal)) == literal
