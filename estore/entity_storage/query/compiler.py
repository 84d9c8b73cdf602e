"""
Query compiler for SQL backends.

Converts a Condition tree into a parameterised WHERE clause, an ORDER BY
clause and a projection list. A SqlDialect describes how one engine spells
placeholders, JSON paths and containment; the QueryCompiler walks the tree.

Invariants:
    - No caller-supplied value is concatenated into SQL; values and JSON
      path segments always flow through the params list
    - Only schema-declared property names become quoted identifiers;
      undeclared names resolve into the extras column through bound paths
    - Empty groups compile to "" and are dropped by their parent
    - Results match the reference evaluator in conditions.evaluator
      (missing values compare as NULL, NotEquals/NotIncludes match them)
    - Dialects that compare JSON as text store and bind canonical_json
    - With positional placeholders, params are appended in text order

How to change safely:
    - New comparisons need a branch in _compile_comparator for every dialect
    - Keep the ORDER BY tiebreaker on the primary key; offset cursors
      depend on a total order
"""

from __future__ import annotations

import json
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

from ..conditions.model import (
    Comparator,
    ComparisonOperator,
    Condition,
    LogicalOperator,
    SortProperty,
)
from ..errors import GuardError, SortNotIndexedError
from ..schema.types import EntitySchema, EntitySchemaProperty, PropertyType, SortDirection

EXTRA_COLUMN = "_extra"

_ORDERED_OPERATORS = {
    ComparisonOperator.GREATER_THAN: ">",
    ComparisonOperator.LESS_THAN: "<",
    ComparisonOperator.GREATER_THAN_OR_EQUAL: ">=",
    ComparisonOperator.LESS_THAN_OR_EQUAL: "<=",
}


def canonical_json(value: Any) -> str:
    """Compact JSON with sorted keys, the one text form of stored objects and arrays.

    Engines that compare JSON as text (SQLite, CQL) only agree with the
    reference evaluator when both sides of a comparison use this form.
    """
    return json.dumps(value, separators=(",", ":"), sort_keys=True)


@dataclass(frozen=True)
class _Target:
    """A resolved property reference."""

    column: str
    path: tuple[str, ...]
    prop: EntitySchemaProperty | None

    @property
    def is_nested(self) -> bool:
        return bool(self.path)


class SqlDialect:
    """How one SQL engine spells the pieces the compiler emits.

    Subclasses override the hooks below; the compiler never emits
    engine-specific syntax itself.
    """

    name = "sql"
    false_literal = "FALSE"
    supports_nulls_last = True

    column_types: dict[PropertyType, str] = {}
    extra_column_type = "TEXT"

    def column_type(self, prop: EntitySchemaProperty) -> str:
        """DDL type of the column storing a property."""
        return self.column_types.get(prop.type, "TEXT")

    def placeholder(self, params: list[Any], value: Any) -> str:
        """Append a value to params and return its placeholder."""
        raise NotImplementedError

    def quote(self, identifier: str) -> str:
        return '"' + identifier.replace('"', '""') + '"'

    def json_path(self, column_sql: str, path: tuple[str, ...], params: list[Any]) -> str:
        """Expression reading a nested JSON value from a column."""
        raise NotImplementedError

    def json_value(self, params: list[Any], value: Any) -> str:
        """Placeholder for a value compared against a json_path expression."""
        raise NotImplementedError

    def scalar_value(self, params: list[Any], value: Any, prop: EntitySchemaProperty) -> str:
        """Placeholder for a value compared against a typed column."""
        return self.placeholder(params, value)

    def array_includes(self, target_sql: str, params: list[Any], value: Any) -> str:
        """Element containment on a JSON array expression."""
        raise NotImplementedError

    def string_includes(self, target_sql: str, params: list[Any], value: str) -> str:
        """Substring containment on a text expression."""
        raise NotImplementedError

    def untyped_includes(
        self, column_sql: str, path: tuple[str, ...], params: list[Any], value: Any
    ) -> str:
        """Containment on a nested value whose type is only known at runtime."""
        raise NotImplementedError

    def json_in(self, operand_sql: str, params: list[Any], values: list[Any]) -> str | None:
        """Membership test for a JSON expression, None to use a plain IN list."""
        return None

    def not_equal(self, left: str, right: str) -> str:
        """Inequality that is true when the left side is NULL."""
        return f"{left} IS DISTINCT FROM {right}"

    def encode(self, value: Any, prop: EntitySchemaProperty | None) -> Any:
        """Convert an entity value into its column representation."""
        return value

    def decode(self, value: Any, prop: EntitySchemaProperty | None) -> Any:
        """Convert a column value back into its entity representation."""
        return value


class PostgresDialect(SqlDialect):
    """PostgreSQL dialect: ``$n`` placeholders, JSONB for objects and arrays.

    Relies on the connection registering a json codec for jsonb, so
    objects and arrays are bound as plain Python values.
    """

    name = "postgres"
    extra_column_type = "JSONB"
    column_types = {
        PropertyType.STRING: "TEXT",
        PropertyType.NUMBER: "DOUBLE PRECISION",
        PropertyType.INTEGER: "BIGINT",
        PropertyType.BOOLEAN: "BOOLEAN",
        PropertyType.OBJECT: "JSONB",
        PropertyType.ARRAY: "JSONB",
    }

    def placeholder(self, params: list[Any], value: Any) -> str:
        params.append(value)
        return f"${len(params)}"

    def json_path(self, column_sql: str, path: tuple[str, ...], params: list[Any]) -> str:
        return f"({column_sql} #> {self.placeholder(params, list(path))}::text[])"

    def json_value(self, params: list[Any], value: Any) -> str:
        return f"{self.placeholder(params, value)}::jsonb"

    def scalar_value(self, params: list[Any], value: Any, prop: EntitySchemaProperty) -> str:
        if prop.type in (PropertyType.OBJECT, PropertyType.ARRAY):
            return f"{self.placeholder(params, value)}::jsonb"
        return self.placeholder(params, value)

    def array_includes(self, target_sql: str, params: list[Any], value: Any) -> str:
        if isinstance(value, dict):
            # @> treats nested arrays as unordered subsets; leaves must be equal
            match = " AND ".join(
                f"(elem #> {self.placeholder(params, list(path))}::text[]) = "
                f"{self.placeholder(params, leaf)}::jsonb"
                for path, leaf in flatten_object(value)
            )
            return f"EXISTS (SELECT 1 FROM jsonb_array_elements({target_sql}) AS elem WHERE {match or 'TRUE'})"
        return f"{target_sql} @> {self.placeholder(params, [value])}::jsonb"

    def string_includes(self, target_sql: str, params: list[Any], value: str) -> str:
        return f"strpos({target_sql}, {self.placeholder(params, value)}) > 0"

    def untyped_includes(
        self, column_sql: str, path: tuple[str, ...], params: list[Any], value: Any
    ) -> str:
        node = self.json_path(column_sql, path, params)
        element = (
            f"(CASE WHEN jsonb_typeof({node}) = 'array' "
            f"THEN {self.array_includes(node, params, value)} ELSE FALSE END)"
        )
        if not isinstance(value, str):
            return element
        text = f"({node} #>> '{{}}')"
        substring = f"(jsonb_typeof({node}) = 'string' AND {self.string_includes(text, params, value)})"
        return f"({element} OR {substring})"


class SqliteDialect(SqlDialect):
    """SQLite dialect: ``?`` placeholders, JSON text for objects and arrays.

    SQLite compares JSON as text, so objects and arrays are stored and bound
    in canonical_json form; json_extract and json_each return the same
    compact text for nested containers.
    """

    name = "sqlite"
    false_literal = "0"
    column_types = {
        PropertyType.STRING: "TEXT",
        PropertyType.NUMBER: "REAL",
        PropertyType.INTEGER: "INTEGER",
        PropertyType.BOOLEAN: "INTEGER",
        PropertyType.OBJECT: "TEXT",
        PropertyType.ARRAY: "TEXT",
    }

    def placeholder(self, params: list[Any], value: Any) -> str:
        params.append(value)
        return "?"

    def _path(self, path: tuple[str, ...]) -> str:
        return "$." + ".".join(json.dumps(segment) for segment in path)

    def json_path(self, column_sql: str, path: tuple[str, ...], params: list[Any]) -> str:
        return f"json_extract({column_sql}, {self.placeholder(params, self._path(path))})"

    def json_value(self, params: list[Any], value: Any) -> str:
        if isinstance(value, bool):
            return self.placeholder(params, int(value))
        if isinstance(value, (dict, list)):
            return f"json({self.placeholder(params, canonical_json(value))})"
        return self.placeholder(params, value)

    def scalar_value(self, params: list[Any], value: Any, prop: EntitySchemaProperty) -> str:
        return self.placeholder(params, self.encode(value, prop))

    def _element_match(self, params: list[Any], value: Any) -> str:
        if isinstance(value, dict):
            clauses = [
                f"json_extract(elem.value, {self.placeholder(params, self._path(path))}) = "
                f"{self.json_value(params, leaf)}"
                for path, leaf in flatten_object(value)
            ]
            return " AND ".join(clauses) or "1"
        return f"elem.value = {self.json_value(params, value)}"

    def array_includes(self, target_sql: str, params: list[Any], value: Any) -> str:
        match = self._element_match(params, value)
        return f"EXISTS (SELECT 1 FROM json_each({target_sql}) AS elem WHERE {match})"

    def string_includes(self, target_sql: str, params: list[Any], value: str) -> str:
        return f"instr({target_sql}, {self.placeholder(params, value)}) > 0"

    def untyped_includes(
        self, column_sql: str, path: tuple[str, ...], params: list[Any], value: Any
    ) -> str:
        # The path is bound once in a one-row subquery; params follow text order
        match = self._element_match(params, value)
        branches = (
            f"WHEN 'array' THEN EXISTS (SELECT 1 FROM json_each({column_sql}, _p._path) "
            f"AS elem WHERE {match})"
        )
        if isinstance(value, str):
            substring = self.string_includes(f"json_extract({column_sql}, _p._path)", params, value)
            branches += f" WHEN 'text' THEN {substring}"
        source = self.placeholder(params, self._path(path))
        return (
            f"(SELECT CASE json_type({column_sql}, _p._path) {branches} ELSE 0 END "
            f"FROM (SELECT {source} AS _path) AS _p)"
        )

    def not_equal(self, left: str, right: str) -> str:
        return f"{left} IS NOT {right}"

    def encode(self, value: Any, prop: EntitySchemaProperty | None) -> Any:
        if value is None:
            return None
        if isinstance(value, bool):
            return int(value)
        if prop is None or prop.type in (PropertyType.OBJECT, PropertyType.ARRAY):
            return canonical_json(value)
        return value

    def decode(self, value: Any, prop: EntitySchemaProperty | None) -> Any:
        if value is None:
            return None
        if prop is None:
            return json.loads(value)
        if prop.type == PropertyType.BOOLEAN:
            return bool(value)
        if prop.type in (PropertyType.OBJECT, PropertyType.ARRAY):
            return json.loads(value)
        return value


class MySqlDialect(SqlDialect):
    """MySQL dialect: ``%s`` placeholders, native JSON for objects and arrays.

    Strings use a binary, no-pad collation so equality, ordering and
    containment are case and trailing-space sensitive like the reference
    evaluator. Only indexable strings (primary, secondary, sortable) are
    VARCHAR; the rest are LONGTEXT. MySQL has no NULLS LAST, so the
    compiler sorts on an IS NULL term first.
    """

    name = "mysql"
    supports_nulls_last = False
    collation = "utf8mb4_0900_bin"
    extra_column_type = "JSON"
    column_types = {
        PropertyType.STRING: "LONGTEXT",
        PropertyType.NUMBER: "DOUBLE",
        PropertyType.INTEGER: "BIGINT",
        PropertyType.BOOLEAN: "BOOLEAN",
        PropertyType.OBJECT: "JSON",
        PropertyType.ARRAY: "JSON",
    }

    def column_type(self, prop: EntitySchemaProperty) -> str:
        if prop.type == PropertyType.STRING:
            indexed = prop.is_primary or prop.is_secondary or prop.sort_direction is not None
            base = "VARCHAR(255)" if indexed else "LONGTEXT"
            return f"{base} CHARACTER SET utf8mb4 COLLATE {self.collation}"
        return super().column_type(prop)

    def placeholder(self, params: list[Any], value: Any) -> str:
        params.append(value)
        return "%s"

    def quote(self, identifier: str) -> str:
        return "`" + identifier.replace("`", "``") + "`"

    def _path(self, path: tuple[str, ...]) -> str:
        return "$." + ".".join(json.dumps(segment) for segment in path)

    def _json(self, params: list[Any], value: Any) -> str:
        return f"CAST({self.placeholder(params, canonical_json(value))} AS JSON)"

    def json_path(self, column_sql: str, path: tuple[str, ...], params: list[Any]) -> str:
        return f"JSON_EXTRACT({column_sql}, {self.placeholder(params, self._path(path))})"

    def json_value(self, params: list[Any], value: Any) -> str:
        if isinstance(value, (bool, dict, list)):
            return self._json(params, value)
        return self.placeholder(params, value)

    def scalar_value(self, params: list[Any], value: Any, prop: EntitySchemaProperty) -> str:
        if prop.type in (PropertyType.OBJECT, PropertyType.ARRAY):
            return self._json(params, value)
        return self.placeholder(params, self.encode(value, prop))

    def array_includes(self, target_sql: str, params: list[Any], value: Any) -> str:
        if isinstance(value, dict):
            # JSON_CONTAINS treats nested arrays as unordered subsets; leaves must be equal
            match = " AND ".join(
                f"JSON_EXTRACT(elem.v, {self.placeholder(params, self._path(path))}) = "
                f"{self._json(params, leaf)}"
                for path, leaf in flatten_object(value)
            )
            return (
                f"EXISTS (SELECT 1 FROM JSON_TABLE({target_sql}, '$[*]' COLUMNS (v JSON PATH '$')) "
                f"AS elem WHERE {match or 'TRUE'})"
            )
        return f"JSON_CONTAINS({target_sql}, {self._json(params, [value])})"

    def string_includes(self, target_sql: str, params: list[Any], value: str) -> str:
        return (
            f"LOCATE(CAST({self.placeholder(params, value)} AS BINARY), "
            f"CAST({target_sql} AS BINARY)) > 0"
        )

    def untyped_includes(
        self, column_sql: str, path: tuple[str, ...], params: list[Any], value: Any
    ) -> str:
        node = f"JSON_EXTRACT({column_sql}, _p._path)"
        branches = f"WHEN 'ARRAY' THEN {self.array_includes(node, params, value)}"
        if isinstance(value, str):
            text = f"JSON_UNQUOTE({node})"
            branches += f" WHEN 'STRING' THEN {self.string_includes(text, params, value)}"
        source = self.placeholder(params, self._path(path))
        return (
            f"(SELECT CASE JSON_TYPE({node}) {branches} ELSE FALSE END "
            f"FROM (SELECT {source} AS _path) AS _p)"
        )

    def json_in(self, operand_sql: str, params: list[Any], values: list[Any]) -> str | None:
        # IN () does not compare JSON values
        return f"{operand_sql} MEMBER OF ({self._json(params, values)})"

    def not_equal(self, left: str, right: str) -> str:
        return f"NOT ({left} <=> {right})"

    def encode(self, value: Any, prop: EntitySchemaProperty | None) -> Any:
        if value is None:
            return None
        if isinstance(value, bool):
            return int(value)
        if prop is None or prop.type in (PropertyType.OBJECT, PropertyType.ARRAY):
            return canonical_json(value)
        return value

    def decode(self, value: Any, prop: EntitySchemaProperty | None) -> Any:
        if value is None:
            return None
        if prop is None or prop.type in (PropertyType.OBJECT, PropertyType.ARRAY):
            return json.loads(value) if isinstance(value, (str, bytes)) else value
        if prop.type == PropertyType.BOOLEAN:
            return bool(value)
        return value


POSTGRES_DIALECT = PostgresDialect()
SQLITE_DIALECT = SqliteDialect()
MYSQL_DIALECT = MySqlDialect()


def flatten_object(
    value: dict[str, Any], prefix: tuple[str, ...] = ()
) -> list[tuple[tuple[str, ...], Any]]:
    """Flatten a nested dict into (path, leaf) pairs."""
    pairs: list[tuple[tuple[str, ...], Any]] = []
    for key, item in value.items():
        if isinstance(item, dict) and item:
            pairs.extend(flatten_object(item, prefix + (key,)))
        else:
            pairs.append((prefix + (key,), item))
    return pairs


class QueryCompiler:
    """Compiles conditions, sorts and projections for one schema and dialect.

    Example:
        >>> compiler = QueryCompiler(schema, SQLITE_DIALECT)
        >>> params: list = []
        >>> compiler.compile_where(equals("value1", "aaa"), params)
        'WHERE "value1" = ?'
        >>> params
        ['aaa']
    """

    def __init__(
        self,
        schema: EntitySchema,
        dialect: SqlDialect,
        extra_column: str | None = EXTRA_COLUMN,
        qualifier: str | None = None,
    ) -> None:
        self.schema = schema
        self.dialect = dialect
        self.extra_column = extra_column
        self.qualifier = qualifier

    def _column(self, column: str) -> str:
        quoted = self.dialect.quote(column)
        if self.qualifier:
            return f"{self.dialect.quote(self.qualifier)}.{quoted}"
        return quoted

    def _resolve(self, property_path: str) -> _Target:
        segments = tuple(property_path.split("."))
        if any(not segment for segment in segments):
            raise GuardError("QueryCompiler", "property", f"Invalid property path '{property_path}'")

        prop = self.schema.get_property(segments[0])
        if prop is not None:
            return _Target(column=prop.property, path=segments[1:], prop=prop)
        if self.extra_column is None:
            raise GuardError(
                "QueryCompiler",
                "property",
                f"Property '{segments[0]}' is not defined in schema '{self.schema.name}'",
            )
        return _Target(column=self.extra_column, path=segments, prop=None)

    def coerce_value(self, value: Any, prop: EntitySchemaProperty | None) -> Any:
        """Coerce a comparison value to the storage type of a property.

        Args:
            value: The caller value
            prop: The property compared against, None for untyped values

        Returns:
            The coerced value

        Raises:
            GuardError: If the value cannot represent the property type
        """
        if value is None or prop is None:
            return value
        try:
            if prop.type == PropertyType.STRING:
                return value if isinstance(value, str) else str(value)
            if prop.type == PropertyType.INTEGER:
                if isinstance(value, bool):
                    raise ValueError("boolean is not an integer")
                if isinstance(value, float) and not value.is_integer():
                    return value
                return int(value)
            if prop.type == PropertyType.NUMBER:
                if isinstance(value, bool):
                    raise ValueError("boolean is not a number")
                return float(value) if not isinstance(value, int) else value
            if prop.type == PropertyType.BOOLEAN:
                if isinstance(value, str):
                    return value.lower() == "true"
                return bool(value)
        except (TypeError, ValueError) as err:
            raise GuardError(
                "QueryCompiler",
                "value",
                f"Value {value!r} cannot be compared with {prop.type.value} property "
                f"'{prop.property}'",
            ) from err
        return value

    def _operand(self, target: _Target, params: list[Any]) -> str:
        column_sql = self._column(target.column)
        if target.is_nested:
            return self.dialect.json_path(column_sql, target.path, params)
        return column_sql

    def _value(self, target: _Target, params: list[Any], value: Any) -> str:
        if target.is_nested or target.prop is None:
            return self.dialect.json_value(params, value)
        return self.dialect.scalar_value(params, self.coerce_value(value, target.prop), target.prop)

    def _includes(self, target: _Target, params: list[Any], value: Any) -> str:
        column_sql = self._column(target.column)
        if target.is_nested or target.prop is None:
            return self.dialect.untyped_includes(column_sql, target.path or (), params, value)
        if target.prop.type == PropertyType.ARRAY:
            return self.dialect.array_includes(column_sql, params, value)
        if target.prop.type == PropertyType.STRING and isinstance(value, str):
            return self.dialect.string_includes(column_sql, params, value)
        return self.dialect.false_literal

    def _compile_comparator(self, comparator: Comparator, params: list[Any]) -> str:
        target = self._resolve(comparator.property)
        op = comparator.comparison
        value = comparator.value

        if op in (ComparisonOperator.INCLUDES, ComparisonOperator.NOT_INCLUDES):
            clause = self._includes(target, params, value)
            if op == ComparisonOperator.NOT_INCLUDES:
                return f"NOT COALESCE(({clause}), {self.dialect.false_literal})"
            return clause

        operand = self._operand(target, params)

        if op == ComparisonOperator.IN:
            values = list(value)
            if not values:
                return self.dialect.false_literal
            if target.is_nested or target.prop is None:
                membership = self.dialect.json_in(operand, params, values)
                if membership:
                    return membership
            placeholders = ", ".join(self._value(target, params, v) for v in values)
            return f"{operand} IN ({placeholders})"

        if op == ComparisonOperator.EQUALS:
            if value is None:
                return f"{operand} IS NULL"
            return f"{operand} = {self._value(target, params, value)}"

        if op == ComparisonOperator.NOT_EQUALS:
            if value is None:
                return f"{operand} IS NOT NULL"
            return self.dialect.not_equal(operand, self._value(target, params, value))

        if value is None:
            return self.dialect.false_literal
        return f"{operand} {_ORDERED_OPERATORS[op]} {self._value(target, params, value)}"

    def compile_condition(self, condition: Condition | None, params: list[Any]) -> str:
        """Compile a condition tree to a boolean SQL expression.

        Args:
            condition: Comparator or group
            params: Accumulator for bound values, appended in order

        Returns:
            The expression, or "" when the condition is empty
        """
        if condition is None:
            return ""
        if isinstance(condition, Comparator):
            return self._compile_comparator(condition, params)

        parts = [self.compile_condition(child, params) for child in condition.conditions]
        parts = [p for p in parts if p]
        if not parts:
            return ""
        joiner = " OR " if condition.logical_operator == LogicalOperator.OR else " AND "
        return "(" + joiner.join(parts) + ")"

    def compile_where(self, condition: Condition | None, params: list[Any]) -> str:
        """Compile a WHERE clause ("" when there is nothing to filter)."""
        clause = self.compile_condition(condition, params)
        return f"WHERE {clause}" if clause else ""

    def compile_sort(
        self,
        sort_properties: Sequence[SortProperty] | None,
        params: list[Any],
        indexed_sort_only: bool = False,
    ) -> str:
        """Compile an ORDER BY clause.

        The primary key is always appended as a final tiebreaker so that
        offset pagination walks a total order.

        Raises:
            SortNotIndexedError: If indexed_sort_only and a property is not
                sortable by declaration
        """
        pk = self.schema.primary_key.property
        terms: list[str] = []
        seen_pk = False
        for directive in sort_properties or []:
            target = self._resolve(directive.property)
            if indexed_sort_only and (
                target.is_nested
                or target.prop is None
                or target.prop not in self.schema.sortable_properties
            ):
                raise SortNotIndexedError(self.dialect.name, directive.property)
            direction = "DESC" if directive.sort_direction == SortDirection.DESCENDING else "ASC"
            operand = self._operand(target, params)
            if self.dialect.supports_nulls_last:
                terms.append(f"{operand} {direction} NULLS LAST")
            else:
                terms.append(f"{operand} IS NULL, {self._operand(target, params)} {direction}")
            seen_pk = seen_pk or (target.column == pk and not target.is_nested)
        if not seen_pk:
            terms.append(f"{self._column(pk)} ASC")
        return "ORDER BY " + ", ".join(terms)

    def compile_projection(self, properties: Sequence[str] | None) -> str:
        """Compile the column list for a SELECT.

        Undeclared (or dotted) names select their root column or the extras
        column; the connector picks the requested properties after decoding.
        """
        columns: list[str] = []
        names = properties or self.schema.property_names
        for name in names:
            target = self._resolve(name)
            if target.column not in columns:
                columns.append(target.column)
        if properties is None and self.extra_column is not None:
            columns.append(self.extra_column)
        return ", ".join(self.dialect.quote(c) for c in columns)

    def encode_row(self, entity: dict[str, Any]) -> dict[str, Any]:
        """Split an entity into column values, folding undeclared properties into extras."""
        row: dict[str, Any] = {}
        extras: dict[str, Any] = {}
        for key, value in entity.items():
            prop = self.schema.get_property(key)
            if prop is not None and prop.property == key:
                row[key] = self.dialect.encode(value, prop)
            else:
                extras[key] = value
        if self.extra_column is not None:
            row[self.extra_column] = self.dialect.encode(extras, None) if extras else None
        return row

    def decode_row(self, row: dict[str, Any]) -> dict[str, Any]:
        """Rebuild an entity from column values; NULL columns stay absent."""
        entity: dict[str, Any] = {}
        for key, value in row.items():
            if value is None:
                continue
            if key == self.extra_column:
                extras = self.dialect.decode(value, None)
                if isinstance(extras, dict):
                    entity.update(extras)
                continue
            entity[key] = self.dialect.decode(value, self.schema.get_property(key))
        return entity
