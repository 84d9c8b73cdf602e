"""
Unit tests for the SQL query compiler.

Tests cover:
- WHERE compilation for SQLite, PostgreSQL and MySQL dialects
- Canonical JSON text for objects and arrays compared as text
- Nested paths and undeclared properties through the extras column
- Null handling for equality and ordered comparisons
- ORDER BY with the primary key tiebreaker
- Projections and row encoding/decoding
"""

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
from estore.entity_storage.errors import GuardError, SortNotIndexedError
from estore.entity_storage.query import (
    MYSQL_DIALECT,
    POSTGRES_DIALECT,
    SQLITE_DIALECT,
    QueryCompiler,
    flatten_object,
)
from estore.entity_storage.schema import EntitySchema, SortDirection, prop

SCHEMA = EntitySchema(
    name="Item",
    properties=(
        prop("id", "string", is_primary=True),
        prop("value1", "string", is_secondary=True),
        prop("value2", "integer", optional=True, sort_direction="desc"),
        prop("flag", "boolean", optional=True),
        prop("valueObject", "object", optional=True),
        prop("valueArray", "array", optional=True),
    ),
)


def cmp(property, comparison, value):
    return Comparator(property, ComparisonOperator.from_str(comparison), value)


@pytest.fixture
def sqlite():
    return QueryCompiler(SCHEMA, SQLITE_DIALECT)


@pytest.fixture
def postgres():
    return QueryCompiler(SCHEMA, POSTGRES_DIALECT)


@pytest.fixture
def mysql():
    return QueryCompiler(SCHEMA, MYSQL_DIALECT)


class TestSqliteWhere:
    """Tests for WHERE compilation with the SQLite dialect."""

    def test_equals(self, sqlite):
        params = []
        assert sqlite.compile_where(equals("value1", "aaa"), params) == 'WHERE "value1" = ?'
        assert params == ["aaa"]

    def test_values_coerced_to_column_type(self, sqlite):
        params = []
        assert sqlite.compile_condition(cmp("value2", "greaterThan", "5"), params) == '"value2" > ?'
        assert params == [5]

    def test_boolean_stored_as_integer(self, sqlite):
        params = []
        sqlite.compile_condition(equals("flag", True), params)
        assert params == [1]

    def test_nested_path_is_bound(self, sqlite):
        """JSON path segments are parameters, never SQL text."""
        params = []
        clause = sqlite.compile_condition(equals("valueObject.name.value", "bob"), params)
        assert clause == 'json_extract("valueObject", ?) = ?'
        assert params == ['$."name"."value"', "bob"]

    def test_hostile_path_segment_stays_in_params(self, sqlite):
        params = []
        clause = sqlite.compile_condition(equals('valueObject.x"); DROP TABLE t; --', 1), params)
        assert "DROP" not in clause
        assert any("DROP" in str(p) for p in params)

    def test_undeclared_property_reads_extras(self, sqlite):
        params = []
        clause = sqlite.compile_condition(equals("userIdentity", "u"), params)
        assert clause == 'json_extract("_extra", ?) = ?'
        assert params == ['$."userIdentity"', "u"]

    def test_undeclared_property_without_extras_rejected(self):
        compiler = QueryCompiler(SCHEMA, SQLITE_DIALECT, extra_column=None)
        with pytest.raises(GuardError, match="not defined"):
            compiler.compile_condition(equals("userIdentity", "u"), [])

    def test_null_equality(self, sqlite):
        assert sqlite.compile_condition(equals("value1", None), []) == '"value1" IS NULL'
        assert (
            sqlite.compile_condition(cmp("value1", "notEquals", None), []) == '"value1" IS NOT NULL'
        )

    def test_not_equals_matches_null(self, sqlite):
        assert sqlite.compile_condition(cmp("value1", "notEquals", "a"), []) == '"value1" IS NOT ?'

    def test_ordered_comparison_with_null_is_false(self, sqlite):
        assert sqlite.compile_condition(cmp("value2", "lessThan", None), []) == "0"

    def test_in(self, sqlite):
        params = []
        assert sqlite.compile_condition(cmp("value1", "in", ["a", "b"]), params) == '"value1" IN (?, ?)'
        assert params == ["a", "b"]
        assert sqlite.compile_condition(cmp("value1", "in", []), []) == "0"

    def test_string_includes(self, sqlite):
        params = []
        assert sqlite.compile_condition(cmp("value1", "includes", "x"), params) == 'instr("value1", ?) > 0'
        assert params == ["x"]

    def test_not_includes_matches_missing(self, sqlite):
        clause = sqlite.compile_condition(cmp("value1", "notIncludes", "x"), [])
        assert clause == 'NOT COALESCE((instr("value1", ?) > 0), 0)'

    def test_array_includes(self, sqlite):
        params = []
        clause = sqlite.compile_condition(cmp("valueArray", "includes", {"field": "a"}), params)
        assert clause.startswith('EXISTS (SELECT 1 FROM json_each("valueArray") AS elem')
        assert params == ['$."field"', "a"]

    def test_object_includes_with_list_leaf(self, sqlite):
        params = []
        clause = sqlite.compile_condition(cmp("valueArray", "includes", {"tags": ["y", "x"]}), params)
        assert clause == (
            'EXISTS (SELECT 1 FROM json_each("valueArray") AS elem '
            "WHERE json_extract(elem.value, ?) = json(?))"
        )
        assert params == ['$."tags"', '["y","x"]']

    def test_nested_object_bound_as_canonical_json(self, sqlite):
        """Stored and compared JSON text must agree on key order and spacing."""
        params = []
        clause = sqlite.compile_condition(
            equals("valueObject.name", {"z": 1, "a": [1, {"y": 2, "b": 3}]}), params
        )
        assert clause == 'json_extract("valueObject", ?) = json(?)'
        assert params == ['$."name"', '{"a":[1,{"b":3,"y":2}],"z":1}']

    def test_whole_object_equality_matches_stored_text(self, sqlite):
        params = []
        clause = sqlite.compile_condition(equals("valueObject", {"b": 1, "a": {"d": 2, "c": 3}}), params)
        stored = sqlite.encode_row({"id": "1", "valueObject": {"a": {"c": 3, "d": 2}, "b": 1}})
        assert clause == '"valueObject" = ?'
        assert params == [stored["valueObject"]]
        assert params == ['{"a":{"c":3,"d":2},"b":1}']

    def test_untyped_includes_binds_path_once(self, sqlite):
        params = []
        clause = sqlite.compile_condition(cmp("valueObject.tags", "includes", "x"), params)
        assert clause == (
            '(SELECT CASE json_type("valueObject", _p._path) '
            "WHEN 'array' THEN EXISTS (SELECT 1 FROM json_each(\"valueObject\", _p._path) "
            "AS elem WHERE elem.value = ?) "
            "WHEN 'text' THEN instr(json_extract(\"valueObject\", _p._path), ?) > 0 ELSE 0 END "
            "FROM (SELECT ? AS _path) AS _p)"
        )
        assert clause.count("json_type") == 1
        assert params == ["x", "x", '$."tags"']

    def test_untyped_object_includes_has_no_text_branch(self, sqlite):
        params = []
        clause = sqlite.compile_condition(cmp("userIdentity", "includes", {"a": 1}), params)
        assert "'text'" not in clause
        assert params == ['$."a"', 1, '$."userIdentity"']

    def test_includes_on_scalar_column_is_false(self, sqlite):
        assert sqlite.compile_condition(cmp("value2", "includes", 1), []) == "0"

    def test_groups(self, sqlite):
        params = []
        clause = sqlite.compile_condition(
            or_(equals("value1", "a"), and_(cmp("value2", "lessThan", 3), equals("flag", False))),
            params,
        )
        assert clause == '("value1" = ? OR ("value2" < ? AND "flag" = ?))'
        assert params == ["a", 3, 0]

    def test_empty_group_compiles_to_nothing(self, sqlite):
        assert sqlite.compile_where(ConditionGroup(), []) == ""
        assert sqlite.compile_where(and_(ConditionGroup(), equals("id", "1")), []) == 'WHERE ("id" = ?)'
        assert sqlite.compile_where(None, []) == ""

    def test_qualified_columns(self):
        compiler = QueryCompiler(SCHEMA, SQLITE_DIALECT, qualifier="t")
        assert compiler.compile_condition(equals("value1", "a"), []) == '"t"."value1" = ?'

    def test_invalid_path_rejected(self, sqlite):
        with pytest.raises(GuardError, match="Invalid property path"):
            sqlite.compile_condition(equals("valueObject..name", 1), [])

    def test_uncoercible_value_rejected(self, sqlite):
        with pytest.raises(GuardError):
            sqlite.compile_condition(equals("value2", "abc"), [])
        with pytest.raises(GuardError):
            sqlite.compile_condition(equals("value2", True), [])


class TestPostgresWhere:
    """Tests for WHERE compilation with the PostgreSQL dialect."""

    def test_numbered_placeholders(self, postgres):
        params = []
        where = postgres.compile_where(
            and_(equals("value1", "a"), cmp("value2", "greaterThan", 3)), params
        )
        assert where == 'WHERE ("value1" = $1 AND "value2" > $2)'
        assert params == ["a", 3]

    def test_nested_path(self, postgres):
        params = []
        clause = postgres.compile_condition(equals("valueObject.name.value", "bob"), params)
        assert clause == '("valueObject" #> $1::text[]) = $2::jsonb'
        assert params == [["name", "value"], "bob"]

    def test_not_equals_is_distinct(self, postgres):
        clause = postgres.compile_condition(cmp("value1", "notEquals", "a"), [])
        assert clause == '"value1" IS DISTINCT FROM $1'

    def test_empty_in_is_false(self, postgres):
        assert postgres.compile_condition(cmp("value1", "in", []), []) == "FALSE"

    def test_array_containment(self, postgres):
        params = []
        clause = postgres.compile_condition(cmp("valueArray", "includes", "x"), params)
        assert clause == '"valueArray" @> $1::jsonb'
        assert params == [["x"]]

    def test_substring(self, postgres):
        assert postgres.compile_condition(cmp("value1", "includes", "x"), []) == 'strpos("value1", $1) > 0'

    def test_object_equality_casts_to_jsonb(self, postgres):
        params = []
        clause = postgres.compile_condition(equals("valueObject", {"a": 1}), params)
        assert clause == '"valueObject" = $1::jsonb'
        assert params == [{"a": 1}]

    def test_object_includes_compares_leaves(self, postgres):
        """Nested arrays in the value must equal the element's, not be a subset."""
        params = []
        clause = postgres.compile_condition(cmp("valueArray", "includes", {"tags": ["x", "y"]}), params)
        assert clause == (
            'EXISTS (SELECT 1 FROM jsonb_array_elements("valueArray") AS elem '
            "WHERE (elem #> $1::text[]) = $2::jsonb)"
        )
        assert params == [["tags"], ["x", "y"]]


class TestMySqlWhere:
    """Tests for WHERE, ORDER BY and DDL with the MySQL dialect."""

    def test_placeholders_and_quoting(self, mysql):
        params = []
        where = mysql.compile_where(and_(equals("value1", "a"), cmp("value2", "greaterThan", 3)), params)
        assert where == "WHERE (`value1` = %s AND `value2` > %s)"
        assert params == ["a", 3]

    def test_nested_path(self, mysql):
        params = []
        clause = mysql.compile_condition(equals("valueObject.name.value", "bob"), params)
        assert clause == "JSON_EXTRACT(`valueObject`, %s) = %s"
        assert params == ['$."name"."value"', "bob"]

    def test_objects_and_booleans_cast_to_json(self, mysql):
        params = []
        nested = mysql.compile_condition(equals("valueObject.name", {"b": 1, "a": 2}), params)
        whole = mysql.compile_condition(equals("valueObject", {"a": 1}), params)
        flag = mysql.compile_condition(equals("valueObject.flag", True), params)
        assert nested == "JSON_EXTRACT(`valueObject`, %s) = CAST(%s AS JSON)"
        assert whole == "`valueObject` = CAST(%s AS JSON)"
        assert flag == "JSON_EXTRACT(`valueObject`, %s) = CAST(%s AS JSON)"
        assert params == ['$."name"', '{"a":2,"b":1}', '{"a":1}', '$."flag"', "true"]

    def test_boolean_column_stored_as_integer(self, mysql):
        params = []
        assert mysql.compile_condition(equals("flag", True), params) == "`flag` = %s"
        assert params == [1]

    def test_not_equals_is_null_safe(self, mysql):
        clause = mysql.compile_condition(cmp("value1", "notEquals", "a"), [])
        assert clause == "NOT (`value1` <=> %s)"

    def test_in(self, mysql):
        params = []
        assert mysql.compile_condition(cmp("value1", "in", ["a", "b"]), params) == "`value1` IN (%s, %s)"
        assert params == ["a", "b"]

    def test_nested_in_uses_member_of(self, mysql):
        params = []
        clause = mysql.compile_condition(cmp("valueObject.count", "in", [1, 2]), params)
        assert clause == "JSON_EXTRACT(`valueObject`, %s) MEMBER OF (CAST(%s AS JSON))"
        assert params == ['$."count"', "[1,2]"]

    def test_array_includes(self, mysql):
        params = []
        clause = mysql.compile_condition(cmp("valueArray", "includes", "x"), params)
        assert clause == "JSON_CONTAINS(`valueArray`, CAST(%s AS JSON))"
        assert params == ['["x"]']

    def test_object_includes_compares_leaves(self, mysql):
        params = []
        clause = mysql.compile_condition(cmp("valueArray", "includes", {"tags": ["x", "y"]}), params)
        assert clause == (
            "EXISTS (SELECT 1 FROM JSON_TABLE(`valueArray`, '$[*]' COLUMNS (v JSON PATH '$')) "
            "AS elem WHERE JSON_EXTRACT(elem.v, %s) = CAST(%s AS JSON))"
        )
        assert params == ['$."tags"', '["x","y"]']

    def test_substring_is_binary(self, mysql):
        clause = mysql.compile_condition(cmp("value1", "includes", "x"), [])
        assert clause == "LOCATE(CAST(%s AS BINARY), CAST(`value1` AS BINARY)) > 0"

    def test_untyped_includes_params_in_text_order(self, mysql):
        params = []
        clause = mysql.compile_condition(cmp("userIdentity", "includes", "x"), params)
        node = "JSON_EXTRACT(`_extra`, _p._path)"
        assert clause == (
            f"(SELECT CASE JSON_TYPE({node}) "
            f"WHEN 'ARRAY' THEN JSON_CONTAINS({node}, CAST(%s AS JSON)) "
            f"WHEN 'STRING' THEN LOCATE(CAST(%s AS BINARY), CAST(JSON_UNQUOTE({node}) AS BINARY)) > 0 "
            "ELSE FALSE END FROM (SELECT %s AS _path) AS _p)"
        )
        assert params == ['["x"]', "x", '$."userIdentity"']

    def test_sort_puts_nulls_last(self, mysql):
        params = []
        order = mysql.compile_sort(
            [
                SortProperty("value2", SortDirection.DESCENDING),
                SortProperty("valueObject.count", SortDirection.ASCENDING),
            ],
            params,
        )
        assert order == (
            "ORDER BY `value2` IS NULL, `value2` DESC, "
            "JSON_EXTRACT(`valueObject`, %s) IS NULL, JSON_EXTRACT(`valueObject`, %s) ASC, "
            "`id` ASC"
        )
        assert params == ['$."count"', '$."count"']

    def test_column_types(self):
        collation = "CHARACTER SET utf8mb4 COLLATE utf8mb4_0900_bin"
        assert MYSQL_DIALECT.column_type(SCHEMA.get_property("id")) == f"VARCHAR(255) {collation}"
        assert MYSQL_DIALECT.column_type(SCHEMA.get_property("value1")) == f"VARCHAR(255) {collation}"
        assert MYSQL_DIALECT.column_type(prop("note", "string", optional=True)) == f"LONGTEXT {collation}"
        assert MYSQL_DIALECT.column_type(SCHEMA.get_property("value2")) == "BIGINT"
        assert MYSQL_DIALECT.column_type(SCHEMA.get_property("valueObject")) == "JSON"

    def test_row_codec(self, mysql):
        entity = {"id": "1", "flag": True, "valueObject": {"b": 1, "a": 2}, "userIdentity": "u"}
        row = mysql.encode_row(entity)
        assert row == {
            "id": "1",
            "flag": 1,
            "valueObject": '{"a":2,"b":1}',
            "_extra": '{"userIdentity":"u"}',
        }
        assert mysql.decode_row(row) == entity


class TestSortAndProjection:
    """Tests for ORDER BY and column lists."""

    def test_primary_key_tiebreaker(self, sqlite):
        order = sqlite.compile_sort([SortProperty("value2", SortDirection.DESCENDING)], [])
        assert order == 'ORDER BY "value2" DESC NULLS LAST, "id" ASC'

    def test_no_duplicate_tiebreaker(self, sqlite):
        order = sqlite.compile_sort([SortProperty("id", SortDirection.DESCENDING)], [])
        assert order == 'ORDER BY "id" DESC NULLS LAST'

    def test_default_order(self, sqlite):
        assert sqlite.compile_sort(None, []) == 'ORDER BY "id" ASC'

    def test_indexed_sort_only(self, sqlite):
        sqlite.compile_sort([SortProperty("value2")], [], indexed_sort_only=True)
        with pytest.raises(SortNotIndexedError):
            sqlite.compile_sort([SortProperty("valueObject")], [], indexed_sort_only=True)
        with pytest.raises(SortNotIndexedError):
            sqlite.compile_sort([SortProperty("userIdentity")], [], indexed_sort_only=True)

    def test_projection(self, sqlite):
        assert sqlite.compile_projection(["id", "valueObject.name"]) == '"id", "valueObject"'
        assert sqlite.compile_projection(["userIdentity"]) == '"_extra"'
        assert sqlite.compile_projection(None) == (
            '"id", "value1", "value2", "flag", "valueObject", "valueArray", "_extra"'
        )


class TestRowCodec:
    """Tests for encode_row/decode_row."""

    def test_encode_folds_extras(self, sqlite):
        row = sqlite.encode_row(
            {"id": "1", "valueObject": {"a": 1}, "flag": True, "userIdentity": "u"}
        )
        assert row == {
            "id": "1",
            "valueObject": '{"a":1}',
            "flag": 1,
            "_extra": '{"userIdentity":"u"}',
        }

    def test_decode_restores_entity(self, sqlite):
        entity = {"id": "1", "valueArray": [1, 2], "flag": False, "nodeIdentity": "n"}
        assert sqlite.decode_row(sqlite.encode_row(entity)) == entity

    def test_null_columns_stay_absent(self, sqlite):
        assert sqlite.decode_row({"id": "1", "value2": None, "_extra": None}) == {"id": "1"}

    def test_flatten_object(self):
        assert flatten_object({"a": {"b": 1, "c": {}}, "d": 2}) == [
            (("a", "b"), 1),
            (("a", "c"), {}),
            (("d",), 2),
        ]
