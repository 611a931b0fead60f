"""Unit tests for InMemoryStoreClient, the reference query evaluator."""

from __future__ import annotations

import uuid

import pytest

from src.crm_bridge.core.errors import ConcurrencyConflictError, RecordNotFoundError, StoreError
from src.crm_bridge.mapping.schemas import Entity, EntityReference
from src.crm_bridge.query.native import (
    ColumnSet,
    ConditionExpression,
    ConditionOperator,
    FilterExpression,
    FilterOperator,
    NativeQuery,
    OrderExpression,
    PagingInfo,
)
from src.crm_bridge.store.memory import InMemoryStoreClient, like_to_regex


def _where(*conditions: ConditionExpression, operator: FilterOperator = FilterOperator.AND) -> NativeQuery:
    return NativeQuery(
        entity_name="account",
        criteria=FilterExpression(filter_operator=operator, conditions=list(conditions)),
    )


@pytest.fixture
async def store():
    client = InMemoryStoreClient()
    for name, employees in [("Acme", 5), ("contoso", None), ("Fabrikam", 20), ("A_B Ltd", 1)]:
        await client.create(Entity(logical_name="account", attributes={"name": name, "numberofemployees": employees}))
    return client


async def _names(store: InMemoryStoreClient, query: NativeQuery) -> list[str]:
    return [e["name"] for e in await store.retrieve_multiple(query)]


# ── LIKE ───────────────────────────────────────────────────────────────────


class TestLikePatterns:
    """% and _ wildcards with [x] escapes."""

    @pytest.mark.parametrize(
        ("pattern", "text", "matches"),
        [
            ("%co%", "Contoso", True),
            ("%co%", "Acme", False),
            ("A_me", "Acme", True),
            ("A_me", "Ame", False),
            ("100[%]", "100%", True),
            ("100[%]", "1000", False),
            ("A[_]B%", "A_B Ltd", True),
            ("A[_]B%", "AxB Ltd", False),
            ("[[]x", "[x", True),
        ],
    )
    def test_like_to_regex(self, pattern, text, matches):
        """Wildcards match, escaped characters are literal."""
        assert bool(like_to_regex(pattern).match(text)) is matches


# ── Conditions ─────────────────────────────────────────────────────────────


class TestConditions:
    """Condition semantics over stored rows."""

    async def test_comparisons_against_null_are_false(self, store):
        """A null attribute fails every comparison except null checks."""
        gt = await _names(store, _where(ConditionExpression("numberofemployees", ConditionOperator.GREATER_THAN, [0])))
        ne = await _names(store, _where(ConditionExpression("numberofemployees", ConditionOperator.NOT_EQUAL, [5])))

        assert "contoso" not in gt
        assert "contoso" not in ne

    async def test_null_and_not_null(self, store):
        """null / not-null test attribute presence."""
        nulls = await _names(store, _where(ConditionExpression("numberofemployees", ConditionOperator.NULL)))
        not_nulls = await _names(store, _where(ConditionExpression("numberofemployees", ConditionOperator.NOT_NULL)))

        assert nulls == ["contoso"]
        assert not_nulls == ["Acme", "Fabrikam", "A_B Ltd"]

    async def test_string_comparison_is_case_sensitive(self, store):
        """eq on strings is an exact, case-sensitive match."""
        assert await _names(store, _where(ConditionExpression("name", ConditionOperator.EQUAL, ["Contoso"]))) == []

    async def test_begins_and_ends_with(self, store):
        """begins-with / ends-with wrap the value in wildcards."""
        begins = await _names(store, _where(ConditionExpression("name", ConditionOperator.BEGINS_WITH, ["A"])))
        ends = await _names(store, _where(ConditionExpression("name", ConditionOperator.NOT_END_WITH, ["Ltd"])))

        assert begins == ["Acme", "A_B Ltd"]
        assert ends == ["Acme", "contoso", "Fabrikam"]

    async def test_in_and_or(self, store):
        """in matches any value; or-filters combine conditions."""
        names = await _names(
            store,
            _where(
                ConditionExpression("numberofemployees", ConditionOperator.IN, [1, 20]),
                ConditionExpression("name", ConditionOperator.EQUAL, ["Acme"]),
                operator=FilterOperator.OR,
            ),
        )

        assert names == ["Acme", "Fabrikam", "A_B Ltd"]

    async def test_lookup_compared_by_id(self):
        """Lookup conditions compare the referenced record id."""
        client = InMemoryStoreClient()
        contact_id = uuid.uuid4()
        await client.create(
            Entity(
                logical_name="account",
                attributes={"name": "Acme", "primarycontactid": EntityReference("contact", contact_id)},
            )
        )

        names = await _names(client, _where(ConditionExpression("primarycontactid", ConditionOperator.EQUAL, [contact_id])))

        assert names == ["Acme"]


# ── Ordering / Paging / Projection ─────────────────────────────────────────


class TestOrderingAndPaging:
    """Sorting, paging and column projection."""

    async def test_nulls_first_ascending_last_descending(self, store):
        """Null sort position flips with direction."""
        query = NativeQuery(entity_name="account", orders=[OrderExpression("numberofemployees")])
        ascending = await _names(store, query)
        query.orders[0].descending = True
        descending = await _names(store, query)

        assert ascending == ["contoso", "A_B Ltd", "Acme", "Fabrikam"]
        assert descending == ["Fabrikam", "Acme", "A_B Ltd", "contoso"]

    async def test_secondary_order_breaks_ties(self):
        """Later orders apply within equal primary keys."""
        client = InMemoryStoreClient()
        for name, city in [("B", "Oslo"), ("A", "Oslo"), ("C", "Bergen")]:
            await client.create(Entity(logical_name="account", attributes={"name": name, "city": city}))
        query = NativeQuery(entity_name="account", orders=[OrderExpression("city"), OrderExpression("name")])

        assert await _names(client, query) == ["C", "A", "B"]

    async def test_page_number_paging(self, store):
        """Page n holds records (n-1)*count .. n*count."""
        query = NativeQuery(entity_name="account", page_info=PagingInfo(count=3, page_number=2))

        assert await _names(store, query) == ["A_B Ltd"]

    async def test_column_projection(self, store):
        """Only requested columns come back."""
        query = NativeQuery(entity_name="account", column_set=ColumnSet(columns=["name"]))

        entity = (await store.retrieve_multiple(query))[0]

        assert entity.attributes == {"name": "Acme"}
        assert entity.id is not None


# ── Writes ─────────────────────────────────────────────────────────────────


class TestWrites:
    """Create, update and delete bookkeeping."""

    async def test_create_stamps_system_attributes(self):
        """Created rows carry id, version and timestamps."""
        client = InMemoryStoreClient()

        record_id = await client.create(Entity(logical_name="account", attributes={"name": "Acme"}))
        entity = await client.retrieve("account", record_id, ColumnSet.all())

        assert entity["accountid"] == record_id
        assert entity.version is not None
        assert entity["createdon"] == entity["modifiedon"]

    async def test_duplicate_id_rejected(self):
        """Creating an existing id fails with a store error."""
        client = InMemoryStoreClient()
        record_id = uuid.uuid4()
        await client.create(Entity(logical_name="account", id=record_id))

        with pytest.raises(StoreError) as exc_info:
            await client.create(Entity(logical_name="account", id=record_id))

        assert exc_info.value.status_code == 412

    async def test_update_bumps_version_and_keeps_protected(self):
        """Updates change the version but never the id or createdon."""
        client = InMemoryStoreClient()
        record_id = await client.create(Entity(logical_name="account", attributes={"name": "Acme"}))
        before = await client.retrieve("account", record_id, ColumnSet.all())

        await client.update(
            Entity(
                logical_name="account",
                id=record_id,
                attributes={"name": "Acme 2", "accountid": uuid.uuid4(), "createdon": None, "versionnumber": 1},
            )
        )
        after = await client.retrieve("account", record_id, ColumnSet.all())

        assert after["name"] == "Acme 2"
        assert after["accountid"] == record_id
        assert after["createdon"] == before["createdon"]
        assert int(after.version) > int(before.version)

    async def test_conditional_update_checks_version(self):
        """An update carrying a stale version is refused and changes nothing."""
        client = InMemoryStoreClient()
        record_id = await client.create(Entity(logical_name="account", attributes={"name": "Acme"}))
        original = (await client.retrieve("account", record_id, ColumnSet.all())).version
        await client.update(Entity(logical_name="account", id=record_id, attributes={"name": "Theirs"}))
        current = (await client.retrieve("account", record_id, ColumnSet.all())).version

        with pytest.raises(ConcurrencyConflictError) as exc_info:
            await client.update(
                Entity(logical_name="account", id=record_id, attributes={"name": "Mine"}),
                expected_version=original,
            )

        assert exc_info.value.actual_version == current
        entity = await client.retrieve("account", record_id, ColumnSet.all())
        assert entity["name"] == "Theirs"
        await client.update(
            Entity(logical_name="account", id=record_id, attributes={"name": "Mine"}),
            expected_version=current,
        )
        assert (await client.retrieve("account", record_id, ColumnSet.all()))["name"] == "Mine"

    async def test_primary_id_override(self):
        """Entities may use a non-conventional primary id attribute."""
        client = InMemoryStoreClient(primary_id_attributes={"task": "activityid"})

        record_id = await client.create(Entity(logical_name="task", attributes={"subject": "Call"}))
        entity = await client.retrieve("task", record_id, ColumnSet.all())

        assert entity["activityid"] == record_id

    async def test_missing_records_raise_not_found(self):
        """retrieve/update/delete of a missing id raise RecordNotFoundError."""
        client = InMemoryStoreClient()
        missing = uuid.uuid4()

        with pytest.raises(RecordNotFoundError):
            await client.retrieve("account", missing, ColumnSet.all())
        with pytest.raises(RecordNotFoundError):
            await client.update(Entity(logical_name="account", id=missing))
        with pytest.raises(RecordNotFoundError):
            await client.delete("account", missing)

    async def test_unknown_message(self):
        """execute() of an unregistered message fails."""
        with pytest.raises(StoreError, match="WhoAmI"):
            await InMemoryStoreClient().execute("WhoAmI", {})
