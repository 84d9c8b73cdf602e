"""
Statement builder for wide-column stores (ScyllaDB, Cassandra).

CQL cannot express most of the condition model: no OR, no IN on regular
columns, no JSON paths, no containment. Tables therefore keep every row in
one constant partition (``partitionId = 'root'``) clustered by the primary
key, and a condition is split into server-side restrictions plus a residual
that the connector evaluates with the reference evaluator.

Invariants:
    - Only top-level AND comparisons (=, >, <, >=, <=) on declared scalar,
      non-primary columns with a value of the column's exact type are pushed
      down; everything else stays in the residual
    - Pushed-down restrictions are a subset of the condition, so
      restrictions plus residual select exactly what check_condition does
    - Objects, arrays and undeclared properties are stored as canonical_json
      text
    - Params are appended in the order their ``?`` appears in the statement

How to change safely:
    - Widening what split() pushes down must keep CQL and Python comparison
      semantics identical (type, null and collation behaviour)
    - The partition column name is part of the stored table layout
"""

from __future__ import annotations

import json
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

from ..conditions.model import (
    Comparator,
    ComparisonOperator,
    Condition,
    ConditionGroup,
    LogicalOperator,
)
from ..schema.types import EntitySchema, EntitySchemaProperty, PropertyType
from .compiler import EXTRA_COLUMN, QueryCompiler, SqlDialect, canonical_json

PARTITION_COLUMN = "partitionId"
PARTITION_VALUE = "root"

# Columns the driver returns that are not entity properties
_INTERNAL_COLUMNS = (PARTITION_COLUMN, "[applied]")

_OPERATORS = {
    ComparisonOperator.EQUALS: "=",
    ComparisonOperator.GREATER_THAN: ">",
    ComparisonOperator.LESS_THAN: "<",
    ComparisonOperator.GREATER_THAN_OR_EQUAL: ">=",
    ComparisonOperator.LESS_THAN_OR_EQUAL: "<=",
}


class CqlDialect(SqlDialect):
    """CQL column types and value codec.

    Only the DDL and codec hooks apply; conditions go through
    CqlQueryBuilder.split rather than the SQL compiler.
    """

    name = "cql"
    column_types = {
        PropertyType.STRING: "TEXT",
        PropertyType.NUMBER: "DOUBLE",
        PropertyType.INTEGER: "BIGINT",
        PropertyType.BOOLEAN: "BOOLEAN",
        PropertyType.OBJECT: "TEXT",
        PropertyType.ARRAY: "TEXT",
    }
    extra_column_type = "TEXT"

    def placeholder(self, params: list[Any], value: Any) -> str:
        params.append(value)
        return "?"

    def encode(self, value: Any, prop: EntitySchemaProperty | None) -> Any:
        if value is None:
            return None
        if prop is None or prop.type in (PropertyType.OBJECT, PropertyType.ARRAY):
            return canonical_json(value)
        if prop.type == PropertyType.INTEGER and isinstance(value, float) and value.is_integer():
            return int(value)
        if prop.type == PropertyType.NUMBER and isinstance(value, int) and not isinstance(value, bool):
            return float(value)
        return value

    def decode(self, value: Any, prop: EntitySchemaProperty | None) -> Any:
        if value is None:
            return None
        if prop is None or prop.type in (PropertyType.OBJECT, PropertyType.ARRAY):
            return json.loads(value)
        return value


CQL_DIALECT = CqlDialect()


@dataclass
class CqlFilter:
    """A condition split into CQL restrictions and a Python residual.

    Attributes:
        restrictions: ``"col" op ?`` fragments joined with AND
        params: Values for the restriction placeholders, in order
        residual: What the connector must still check per row, or None
    """

    restrictions: list[str] = field(default_factory=list)
    params: list[Any] = field(default_factory=list)
    residual: Condition | None = None

    @property
    def needs_filtering(self) -> bool:
        return bool(self.restrictions)


def _exact_value(value: Any, prop: EntitySchemaProperty) -> tuple[bool, Any]:
    """Return (ok, stored value) when a comparison value has the column's type."""
    if value is None or isinstance(value, (dict, list)):
        return False, None
    if prop.type == PropertyType.STRING:
        return isinstance(value, str), value
    if prop.type == PropertyType.BOOLEAN:
        return isinstance(value, bool), value
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False, None
    if prop.type == PropertyType.INTEGER:
        if isinstance(value, float):
            return value.is_integer(), int(value) if value.is_integer() else None
        return True, value
    if prop.type == PropertyType.NUMBER:
        return True, float(value)
    return False, None


class CqlQueryBuilder:
    """Builds CQL statements for one schema and table.

    Example:
        >>> builder = CqlQueryBuilder(schema, "items", keyspace="estore")
        >>> f = builder.split(equals("value1", "aaa"))
        >>> builder.build_scan(f, limit=10)[0]
        'SELECT * FROM "estore"."items" WHERE "partitionId" = ? AND "value1" = ? LIMIT ? ALLOW FILTERING'
    """

    backend = "scylladb"

    def __init__(self, schema: EntitySchema, table: str, keyspace: str | None = None) -> None:
        self.schema = schema
        self.table = table
        self.keyspace = keyspace
        self._codec = QueryCompiler(schema, CQL_DIALECT)
        quote = CQL_DIALECT.quote
        self.table_sql = f"{quote(keyspace)}.{quote(table)}" if keyspace else quote(table)

    @property
    def _pk(self) -> str:
        return self.schema.primary_key.property

    def _restriction(self, comparator: Comparator, params: list[Any]) -> str | None:
        op = _OPERATORS.get(comparator.comparison)
        prop = self.schema.get_property(comparator.property)
        if op is None or prop is None or "." in comparator.property or prop.is_primary:
            return None
        ok, value = _exact_value(comparator.value, prop)
        if not ok:
            return None
        return f"{CQL_DIALECT.quote(prop.property)} {op} {CQL_DIALECT.placeholder(params, value)}"

    def split(self, condition: Condition | None) -> CqlFilter:
        """Split a condition into pushed-down restrictions and a residual."""
        if condition is None:
            return CqlFilter()
        if isinstance(condition, Comparator):
            children: Sequence[Condition] = (condition,)
        elif condition.logical_operator == LogicalOperator.AND:
            children = condition.conditions
        else:
            return CqlFilter(residual=None if condition.is_empty else condition)

        result = CqlFilter()
        residual: list[Condition] = []
        for child in children:
            if isinstance(child, ConditionGroup):
                if not child.is_empty:
                    residual.append(child)
                continue
            clause = self._restriction(child, result.params)
            if clause is None:
                residual.append(child)
            else:
                result.restrictions.append(clause)
        if residual:
            result.residual = residual[0] if len(residual) == 1 else ConditionGroup(tuple(residual))
        return result

    def key_value(self, id: Any) -> Any:
        """Coerce a caller id to the primary key column type.

        Raises:
            GuardError: If the id cannot represent the key type
        """
        return self._codec.coerce_value(id, self.schema.primary_key)

    def build_scan(
        self,
        cql_filter: CqlFilter,
        after: Any = None,
        limit: int | None = None,
    ) -> tuple[str, list[Any]]:
        """Scan the partition in primary key order, optionally after a key.

        Returns:
            (statement, params)
        """
        quote = CQL_DIALECT.quote
        params: list[Any] = [PARTITION_VALUE]
        clauses = [f"{quote(PARTITION_COLUMN)} = ?"]
        if after is not None:
            clauses.append(f"{quote(self._pk)} > ?")
            params.append(after)
        clauses.extend(cql_filter.restrictions)
        params.extend(cql_filter.params)
        statement = f"SELECT * FROM {self.table_sql} WHERE {' AND '.join(clauses)}"
        if limit is not None:
            statement += " LIMIT ?"
            params.append(limit)
        if cql_filter.needs_filtering:
            statement += " ALLOW FILTERING"
        return statement, params

    def build_get(self, id: Any) -> tuple[str, list[Any]]:
        quote = CQL_DIALECT.quote
        statement = (
            f"SELECT * FROM {self.table_sql} "
            f"WHERE {quote(PARTITION_COLUMN)} = ? AND {quote(self._pk)} = ?"
        )
        return statement, [PARTITION_VALUE, id]

    def build_insert(self, row: dict[str, Any], if_not_exists: bool = False) -> tuple[str, list[Any]]:
        """INSERT a full row; with if_not_exists it becomes a lightweight transaction."""
        quote = CQL_DIALECT.quote
        columns = [PARTITION_COLUMN, *row]
        statement = (
            f"INSERT INTO {self.table_sql} ({', '.join(quote(c) for c in columns)}) "
            f"VALUES ({', '.join('?' for _ in columns)})"
        )
        if if_not_exists:
            statement += " IF NOT EXISTS"
        return statement, [PARTITION_VALUE, *row.values()]

    def _guard(self, guard: dict[str, Any], params: list[Any]) -> str:
        if not guard:
            return ""
        clauses = [f"{CQL_DIALECT.quote(c)} = {CQL_DIALECT.placeholder(params, v)}" for c, v in guard.items()]
        return " IF " + " AND ".join(clauses)

    def build_update(self, row: dict[str, Any], guard: dict[str, Any]) -> tuple[str, list[Any]]:
        """UPDATE every non-key column, conditional on the guard columns' stored values.

        Args:
            row: Encoded row including the primary key
            guard: Column name to the raw value read before the update
        """
        quote = CQL_DIALECT.quote
        params: list[Any] = []
        assignments = [
            f"{quote(c)} = {CQL_DIALECT.placeholder(params, v)}" for c, v in row.items() if c != self._pk
        ]
        params.extend([PARTITION_VALUE, row[self._pk]])
        statement = (
            f"UPDATE {self.table_sql} SET {', '.join(assignments)} "
            f"WHERE {quote(PARTITION_COLUMN)} = ? AND {quote(self._pk)} = ?"
        )
        return statement + self._guard(guard, params), params

    def build_delete(self, id: Any, guard: dict[str, Any] | None = None) -> tuple[str, list[Any]]:
        quote = CQL_DIALECT.quote
        params: list[Any] = [PARTITION_VALUE, id]
        statement = (
            f"DELETE FROM {self.table_sql} "
            f"WHERE {quote(PARTITION_COLUMN)} = ? AND {quote(self._pk)} = ?"
        )
        return statement + self._guard(guard or {}, params), params

    def build_table(self) -> str:
        quote = CQL_DIALECT.quote
        columns = [f"{quote(PARTITION_COLUMN)} TEXT"]
        columns.extend(f"{quote(p.property)} {CQL_DIALECT.column_type(p)}" for p in self.schema.properties)
        columns.append(f"{quote(EXTRA_COLUMN)} {CQL_DIALECT.extra_column_type}")
        columns.append(f"PRIMARY KEY (({quote(PARTITION_COLUMN)}), {quote(self._pk)})")
        return f"CREATE TABLE IF NOT EXISTS {self.table_sql} ({', '.join(columns)})"

    def build_indexes(self) -> list[str]:
        """One secondary index per declared secondary property."""
        quote = CQL_DIALECT.quote
        return [
            f"CREATE INDEX IF NOT EXISTS {quote(f'{self.table}_{p.property}_idx')} "
            f"ON {self.table_sql} ({quote(p.property)})"
            for p in self.schema.secondary_indexes
            if not p.is_primary
        ]

    def guard_columns(self, comparators: Sequence[Comparator]) -> list[str]:
        """Columns whose stored values a guarded write must find unchanged."""
        columns: list[str] = []
        for comparator in comparators:
            root = comparator.property.split(".")[0]
            prop = self.schema.get_property(root)
            if prop is not None and prop.is_primary:
                # Key columns cannot carry IF conditions
                continue
            column = prop.property if prop is not None else EXTRA_COLUMN
            if column not in columns:
                columns.append(column)
        return columns

    def encode_row(self, entity: dict[str, Any]) -> dict[str, Any]:
        return self._codec.encode_row(entity)

    def decode_row(self, row: dict[str, Any]) -> dict[str, Any]:
        """Rebuild an entity from a driver row, dropping internal columns."""
        return self._codec.decode_row({k: v for k, v in row.items() if k not in _INTERNAL_COLUMNS})
