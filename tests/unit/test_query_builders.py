"""
Unit tests for the document and wide-column query builders.

Tests cover:
- MongoDB filter, sort and projection documents with sorted object keys
- DynamoDB key conditions, filters, index selection and guards
- DynamoDB AttributeValue marshalling
- DynamoDB cursor encoding
"""

import re

import pytest

from estore.entity_storage.conditions import (
    Comparator,
    ComparisonOperator,
    ConditionGroup,
    SortProperty,
    and_,
    equals,
    or_,
)
from estore.entity_storage.errors import GuardError, SortNotIndexedError, UnsupportedComparisonError
from estore.entity_storage.query import (
    DynamoExpressionBuilder,
    MongoFilterBuilder,
    canonical_document,
    from_attribute_value,
    from_item,
    to_attribute_value,
    to_item,
)
from estore.entity_storage.schema import EntitySchema, SortDirection, prop

SCHEMA = EntitySchema(
    name="Item",
    properties=(
        prop("id", "string", is_primary=True),
        prop("value1", "string", is_secondary=True),
        prop("value2", "integer", optional=True, sort_direction="desc"),
        prop("valueObject", "object", optional=True),
        prop("valueArray", "array", optional=True),
    ),
)


def cmp(property, comparison, value):
    return Comparator(property, ComparisonOperator.from_str(comparison), value)


class TestMongoFilterBuilder:
    """Tests for MongoFilterBuilder."""

    @pytest.fixture
    def builder(self):
        return MongoFilterBuilder(SCHEMA)

    def test_equals(self, builder):
        assert builder.build(equals("valueObject.name.value", "bob")) == {
            "valueObject.name.value": "bob"
        }

    def test_groups(self, builder):
        assert builder.build(and_(equals("value1", "a"), cmp("value2", "greaterThan", 3))) == {
            "$and": [{"value1": "a"}, {"value2": {"$gt": 3}}]
        }
        assert builder.build(or_(equals("value1", "a"), equals("value1", "b"))) == {
            "$or": [{"value1": "a"}, {"value1": "b"}]
        }

    def test_object_values_use_sorted_keys(self, builder):
        """Embedded documents compare field by field in order, as stored."""
        value = builder.build(equals("valueObject", {"b": 1, "a": {"d": [{"z": 1, "y": 2}], "c": 2}}))
        document = value["valueObject"]
        assert list(document) == ["a", "b"]
        assert list(document["a"]) == ["c", "d"]
        assert list(document["a"]["d"][0]) == ["y", "z"]
        members = builder.build(cmp("valueObject.name", "in", [{"v": 1, "u": 2}]))
        assert list(members["valueObject.name"]["$in"][0]) == ["u", "v"]

    def test_canonical_document(self):
        document = canonical_document({"b": [{"d": 1, "c": 2}], "a": None})
        assert list(document) == ["a", "b"]
        assert list(document["b"][0]) == ["c", "d"]
        assert canonical_document("x") == "x"

    def test_single_child_group_unwrapped(self, builder):
        assert builder.build(and_(equals("value1", "a"))) == {"value1": "a"}

    def test_empty_conditions_match_everything(self, builder):
        assert builder.build(None) == {}
        assert builder.build(ConditionGroup()) == {}

    def test_null_comparisons(self, builder):
        assert builder.build(cmp("value1", "notEquals", None)) == {"value1": {"$ne": None}}
        assert builder.build(cmp("value2", "lessThan", None)) == {"$expr": False}

    def test_in(self, builder):
        assert builder.build(cmp("value2", "in", [1, 2])) == {"value2": {"$in": [1, 2]}}

    def test_string_includes_is_escaped_regex(self, builder):
        assert builder.build(cmp("value1", "includes", "a.b")) == {
            "value1": {"$regex": re.escape("a.b")}
        }

    def test_array_includes(self, builder):
        assert builder.build(cmp("valueArray", "includes", "x")) == {
            "valueArray": {"$elemMatch": {"$eq": "x"}}
        }

    def test_object_includes_flattens_fields(self, builder):
        condition = cmp("valueArray", "includes", {"field": "a", "sub": {"n": 1}})
        assert builder.build(condition) == {
            "valueArray": {"$elemMatch": {"field": "a", "sub.n": 1}}
        }

    def test_untyped_includes_checks_both_forms(self, builder):
        assert builder.build(cmp("valueObject.tags", "includes", "x")) == {
            "$or": [
                {"valueObject.tags": {"$elemMatch": {"$eq": "x"}}},
                {"valueObject.tags": {"$regex": "x"}},
            ]
        }

    def test_not_includes_uses_nor(self, builder):
        assert builder.build(cmp("valueArray", "notIncludes", "x")) == {
            "$nor": [{"valueArray": {"$elemMatch": {"$eq": "x"}}}]
        }

    def test_operator_injection_rejected(self, builder):
        with pytest.raises(GuardError):
            builder.build(equals("$where", "1"))
        with pytest.raises(GuardError):
            builder.build(equals("valueObject.$gt", 1))

    def test_sort_appends_primary_key(self, builder):
        assert builder.build_sort([SortProperty("value2", SortDirection.DESCENDING)]) == [
            ("value2", -1),
            ("id", 1),
        ]
        assert builder.build_sort([SortProperty("id", SortDirection.DESCENDING)]) == [("id", -1)]

    def test_projection_excludes_internal_id(self, builder):
        assert builder.build_projection(["id", "value1"]) == {"_id": 0, "id": 1, "value1": 1}
        assert builder.build_projection(None) == {"_id": 0}


class TestDynamoExpressionBuilder:
    """Tests for DynamoExpressionBuilder."""

    @pytest.fixture
    def builder(self):
        return DynamoExpressionBuilder(SCHEMA)

    def test_filter_only(self, builder):
        expression = builder.build(equals("value1", "a"))
        assert expression.key_condition == "#pk = :pk"
        assert expression.filter_expression == "#n1 = :v1"
        assert expression.names == {"#pk": "partitionId", "#n1": "value1"}
        assert expression.values == {":pk": {"S": "root"}, ":v1": {"S": "a"}}
        assert expression.index_name is None

    def test_primary_key_equality_becomes_key_condition(self, builder):
        expression = builder.build(and_(equals("id", "1"), cmp("value2", "greaterThan", 3)))
        assert expression.key_condition == "#pk = :pk AND #n1 = :v1"
        assert expression.filter_expression == "(#n2 > :v2)"
        assert expression.values[":v2"] == {"N": "3"}

    def test_primary_key_under_or_stays_in_filter(self, builder):
        expression = builder.build(or_(equals("id", "1"), equals("id", "2")))
        assert expression.key_condition == "#pk = :pk"
        assert expression.filter_expression == "(#n1 = :v1 OR #n1 = :v2)"

    def test_sort_selects_index(self, builder):
        expression = builder.build(None, [SortProperty("value2", SortDirection.DESCENDING)])
        assert expression.index_name == "value2Index"
        assert expression.scan_forward is False
        request = expression.to_request()
        assert request["IndexName"] == "value2Index"
        assert "FilterExpression" not in request

    def test_secondary_index_lookup(self, builder):
        expression = builder.build(equals("value1", "a"), secondary_index="value1")
        assert expression.index_name == "value1Index"
        assert expression.key_condition == "#pk = :pk AND #n1 = :v1"
        assert expression.filter_expression is None

    def test_unsupported_sorts(self, builder):
        with pytest.raises(SortNotIndexedError):
            builder.build(None, [SortProperty("value2"), SortProperty("id")])
        with pytest.raises(SortNotIndexedError):
            builder.build(None, [SortProperty("valueObject")])
        with pytest.raises(SortNotIndexedError):
            builder.build(None, [SortProperty("undeclared")])

    def test_includes(self, builder):
        assert builder.build(cmp("value1", "includes", "x")).filter_expression == "contains(#n1, :v1)"
        assert (
            builder.build(cmp("value1", "notIncludes", "x")).filter_expression
            == "(NOT contains(#n1, :v1))"
        )

    def test_object_includes_unsupported(self, builder):
        with pytest.raises(UnsupportedComparisonError):
            builder.build(cmp("valueArray", "includes", {"field": "a"}))

    def test_nested_names_reuse_placeholders(self, builder):
        expression = builder.build(
            and_(equals("valueObject.name.value", "a"), equals("valueObject.name.other", "b"))
        )
        assert expression.filter_expression == "(#n1.#n2.#n3 = :v1 AND #n1.#n2.#n4 = :v2)"

    def test_numeric_strings_coerced(self, builder):
        expression = builder.build(cmp("value2", "lessThan", "7"))
        assert expression.values[":v1"] == {"N": "7"}

    def test_write_guard(self, builder):
        names, values = {}, {}
        guard = builder.build_write_guard([equals("value1", "a")], names, values)
        assert guard == "(attribute_exists(#n0) AND #n1 = :v0) OR attribute_not_exists(#n0)"
        assert builder.build_write_guard([], {}, {}) is None

    def test_remove_guard(self, builder):
        names, values = {}, {}
        guard = builder.build_remove_guard([equals("value1", "a")], names, values)
        assert guard == "#n0 = :v0"
        assert names == {"#n0": "value1"}


class TestDynamoMarshalling:
    """Tests for AttributeValue marshalling."""

    def test_nested_values(self):
        value = {"a": [1, True, None, "x"], "b": {"c": 1.5}}
        attribute = to_attribute_value(value)
        assert attribute == {
            "M": {
                "a": {"L": [{"N": "1"}, {"BOOL": True}, {"NULL": True}, {"S": "x"}]},
                "b": {"M": {"c": {"N": "1.5"}}},
            }
        }
        assert from_attribute_value(attribute) == value

    def test_numbers_restore_their_kind(self):
        assert from_attribute_value({"N": "-2"}) == -2
        assert from_attribute_value({"N": "2.25"}) == 2.25

    def test_string_sets(self):
        assert from_attribute_value({"SS": ["a", "b"]}) == ["a", "b"]

    def test_unsupported_value(self):
        with pytest.raises(GuardError):
            to_attribute_value({1, 2})

    def test_items_carry_partition(self):
        item = to_item({"id": "1"})
        assert item == {"id": {"S": "1"}, "partitionId": {"S": "root"}}
        assert from_item(item) == {"id": "1"}


class TestDynamoCursor:
    """Tests for LastEvaluatedKey cursors."""

    @pytest.fixture(autouse=True)
    def _require_driver(self):
        pytest.importorskip("aiobotocore")

    def test_cursor_round_trip(self):
        from estore.entity_storage.connectors.dynamodb import decode_cursor, encode_cursor

        key = {"partitionId": {"S": "root"}, "id": {"S": "9"}}
        cursor = encode_cursor(key)
        assert decode_cursor(cursor) == key
        assert encode_cursor(None) is None
        assert decode_cursor(None) is None

    def test_invalid_cursor(self):
        from estore.entity_storage.connectors.dynamodb import decode_cursor

        with pytest.raises(GuardError, match="Invalid cursor"):
            decode_cursor("not-a-cursor!")
