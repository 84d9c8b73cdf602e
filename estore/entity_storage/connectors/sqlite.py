"""
SQLite entity storage connector.

Stores one schema per table using typed columns:
- string TEXT, number REAL, integer INTEGER, boolean INTEGER (0/1)
- object and array as JSON TEXT, queried with json_extract/json_each
- undeclared properties (service identities) in the ``_extra`` JSON column

Invariants:
    - One table per schema; the primary key column is the table PRIMARY KEY
    - Secondary indexes are created at bootstrap with IF NOT EXISTS
    - Writes are single-statement upserts (INSERT ... ON CONFLICT DO UPDATE);
      a write guard becomes the DO UPDATE WHERE clause
    - Every value is bound through the QueryCompiler params list

How to change safely:
    - Adding a property to a schema needs an ALTER TABLE migration; bootstrap
      only creates missing tables and indexes
    - Test compiled SQL in tests/unit before changing the dialect
"""

from __future__ import annotations

import logging
import re
import sqlite3
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Any

from ..conditions.evaluator import pick
from ..conditions.model import (
    Comparator,
    Condition,
    ConditionGroup,
    SortProperty,
    condition_from_dict,
    equals,
    normalize_comparators,
    sort_from_dict,
)
from ..errors import (
    BackendUnavailableError,
    ConfigurationError,
    LookupFailedError,
    QueryFailedError,
    RemoveFailedError,
    WriteFailedError,
)
from ..query.compiler import EXTRA_COLUMN, SQLITE_DIALECT, QueryCompiler
from ..schema.types import EntitySchema
from .base import (
    QueryResult,
    UndefinedPropertyMode,
    bootstrap_logger,
    check_secondary_index,
    parse_offset_cursor,
    prepare_entity,
    primary_key_of,
    resolve_page_size,
)

if TYPE_CHECKING:
    from ..config import SqliteConnectorConfig

logger = logging.getLogger(__name__)

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def _guard(comparators: list[Comparator]) -> Condition | None:
    return ConditionGroup(tuple(comparators)) if comparators else None


class SqliteEntityStorageConnector:
    """SQLite implementation of EntityStorageConnector.

    Thread safety:
        Each operation opens its own connection. SQLite handles concurrent
        access via WAL mode.

    Example:
        >>> config = SqliteConnectorConfig(database_path="/var/lib/estore/items.db")
        >>> connector = SqliteEntityStorageConnector(schema, config)
        >>> await connector.bootstrap()
    """

    def __init__(
        self,
        schema: EntitySchema,
        config: SqliteConnectorConfig,
        undefined_mode: UndefinedPropertyMode = UndefinedPropertyMode.REMOVE,
    ) -> None:
        """Initialize the connector.

        Args:
            schema: Schema of the stored entities
            config: Database path and table settings
            undefined_mode: Treatment of undefined values on write

        Raises:
            ConfigurationError: If the path is missing or the table name is invalid
        """
        if not config.database_path:
            raise ConfigurationError(
                "SQLite connector requires database_path", details={"schema": schema.name}
            )
        table = config.table_name or schema.name
        if not _IDENTIFIER.match(table):
            raise ConfigurationError(f"Invalid table name '{table}'", details={"table": table})
        for name in schema.property_names:
            if not _IDENTIFIER.match(name):
                raise ConfigurationError(
                    f"Property '{name}' cannot be used as a column name",
                    details={"schema": schema.name},
                )

        self._schema = schema
        self._config = config
        self._undefined_mode = undefined_mode
        self._table = table
        self._compiler = QueryCompiler(schema, SQLITE_DIALECT)
        self._columns = list(schema.property_names) + [EXTRA_COLUMN]

    def get_schema(self) -> EntitySchema:
        return self._schema

    @contextmanager
    def _get_connection(self, create: bool = False) -> Iterator[sqlite3.Connection]:
        """Open a connection to the database file.

        Raises:
            BackendUnavailableError: If the file does not exist and create=False
        """
        db_path = Path(self._config.database_path)
        if not create and not db_path.exists():
            raise BackendUnavailableError(
                f"Database not found: {db_path}", container=self._table
            )
        db_path.parent.mkdir(parents=True, exist_ok=True)

        conn = sqlite3.connect(
            str(db_path),
            timeout=self._config.busy_timeout_ms / 1000.0,
            isolation_level=None,
        )
        conn.row_factory = sqlite3.Row
        try:
            conn.execute(f"PRAGMA busy_timeout = {int(self._config.busy_timeout_ms)}")
            if self._config.wal_mode:
                conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA synchronous = NORMAL")
            yield conn
        finally:
            conn.close()

    def _wrap(self, err: sqlite3.Error, operation: type, id: Any = None) -> Exception:
        if isinstance(err, sqlite3.OperationalError) and "no such table" in str(err):
            return BackendUnavailableError(
                f"Table '{self._table}' does not exist",
                operation=operation.operation,
                container=self._table,
                inner=err,
            )
        return operation(id=None if id is None else str(id), container=self._table, inner=err)

    def _decode(self, row: sqlite3.Row) -> dict[str, Any]:
        return self._compiler.decode_row(dict(row))

    async def bootstrap(self, logger_name: str | None = None) -> bool:
        """Create the table and secondary indexes if they do not exist."""
        log = bootstrap_logger(logger_name, logger)
        quote = SQLITE_DIALECT.quote
        pk = self._schema.primary_key
        columns = [
            f"{quote(p.property)} {SQLITE_DIALECT.column_type(p)}"
            + (" PRIMARY KEY" if p.is_primary else "")
            for p in self._schema.properties
        ]
        columns.append(f"{quote(EXTRA_COLUMN)} {SQLITE_DIALECT.extra_column_type}")
        try:
            with self._get_connection(create=True) as conn:
                exists = conn.execute(
                    "SELECT 1 FROM sqlite_master WHERE type = 'table' AND name = ?",
                    (self._table,),
                ).fetchone()
                if exists:
                    log.info("tableExists", extra={"table": self._table})
                else:
                    log.info("tableCreating", extra={"table": self._table})
                conn.execute(
                    f"CREATE TABLE IF NOT EXISTS {quote(self._table)} ({', '.join(columns)})"
                )
                for prop in self._schema.properties:
                    if prop.is_primary or not (prop.is_secondary or prop.sort_direction):
                        continue
                    index = f"idx_{self._table}_{prop.property}"
                    conn.execute(
                        f"CREATE INDEX IF NOT EXISTS {quote(index)} "
                        f"ON {quote(self._table)} ({quote(prop.property)})"
                    )
            logger.debug("SQLite table ready", extra={"table": self._table, "pk": pk.property})
            return True
        except (sqlite3.Error, OSError) as err:
            log.error("tableCreateFailed", extra={"table": self._table, "error": str(err)})
            return False

    async def get(
        self,
        id: Any,
        secondary_index: str | None = None,
        conditions: Any = None,
    ) -> dict[str, Any] | None:
        check_secondary_index(self._schema, secondary_index)
        comparators = normalize_comparators(conditions)
        key = secondary_index or self._schema.primary_key.property
        lookup = [equals(key, id)] + comparators
        params: list[Any] = []
        where = self._compiler.compile_where(ConditionGroup(tuple(lookup)), params)
        sql = (
            f"SELECT {self._compiler.compile_projection(None)} "
            f"FROM {SQLITE_DIALECT.quote(self._table)} {where} LIMIT 1"
        )
        try:
            with self._get_connection() as conn:
                row = conn.execute(sql, params).fetchone()
        except sqlite3.Error as err:
            raise self._wrap(err, LookupFailedError, id) from err
        return self._decode(row) if row else None

    async def set(self, entity: dict[str, Any], conditions: Any = None) -> None:
        prepared = prepare_entity(self._schema, entity, self._undefined_mode)
        comparators = normalize_comparators(conditions)
        id = primary_key_of(self._schema, prepared)
        row = self._compiler.encode_row(prepared)

        quote = SQLITE_DIALECT.quote
        params: list[Any] = [row.get(c) for c in self._columns]
        pk = quote(self._schema.primary_key.property)
        updates = ", ".join(
            f"{quote(c)} = excluded.{quote(c)}"
            for c in self._columns
            if c != self._schema.primary_key.property
        )
        sql = (
            f"INSERT INTO {quote(self._table)} ({', '.join(quote(c) for c in self._columns)}) "
            f"VALUES ({', '.join('?' for _ in self._columns)}) "
            f"ON CONFLICT({pk}) DO UPDATE SET {updates}"
        )
        guard = self._compiler.compile_condition(_guard(comparators), params)
        if guard:
            sql += f" WHERE {guard}"

        try:
            with self._get_connection() as conn:
                conn.execute("BEGIN IMMEDIATE")
                try:
                    cursor = conn.execute(sql, params)
                    conn.execute("COMMIT")
                except Exception:
                    conn.execute("ROLLBACK")
                    raise
        except sqlite3.Error as err:
            raise self._wrap(err, WriteFailedError, id) from err
        if cursor.rowcount == 0:
            logger.debug("Conditional set skipped", extra={"table": self._table, "id": id})

    async def remove(self, id: Any, conditions: Any = None) -> None:
        comparators = normalize_comparators(conditions)
        lookup = [equals(self._schema.primary_key.property, id)] + comparators
        params: list[Any] = []
        where = self._compiler.compile_where(ConditionGroup(tuple(lookup)), params)
        try:
            with self._get_connection() as conn:
                conn.execute(f"DELETE FROM {SQLITE_DIALECT.quote(self._table)} {where}", params)
        except sqlite3.Error as err:
            raise self._wrap(err, RemoveFailedError, id) from err

    async def query(
        self,
        conditions: Condition | None = None,
        sort_properties: Sequence[SortProperty] | None = None,
        properties: Sequence[str] | None = None,
        cursor: str | None = None,
        page_size: int | None = None,
    ) -> QueryResult:
        size = resolve_page_size(page_size)
        offset = parse_offset_cursor(cursor)
        params: list[Any] = []
        where = self._compiler.compile_where(condition_from_dict(conditions), params)
        order = self._compiler.compile_sort(sort_from_dict(sort_properties), params)
        projection = self._compiler.compile_projection(properties)
        sql = (
            f"SELECT {projection} FROM {SQLITE_DIALECT.quote(self._table)} "
            f"{where} {order} LIMIT ? OFFSET ?"
        )
        # One extra row tells whether another page exists
        params.extend([size + 1, offset])
        try:
            with self._get_connection() as conn:
                rows = conn.execute(sql, params).fetchall()
        except sqlite3.Error as err:
            raise self._wrap(err, QueryFailedError) from err

        entities = [self._decode(r) for r in rows[:size]]
        if properties:
            entities = [pick(e, properties) for e in entities]
        return QueryResult(
            entities=entities,
            cursor=str(offset + size) if len(rows) > size else None,
        )

    async def close(self) -> None:
        """Nothing to release; every operation opens its own connection."""

