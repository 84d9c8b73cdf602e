"""
MySQL entity storage connector.

Uses an aiomysql connection pool. One schema maps to one table:
- string VARCHAR(255) when indexed, LONGTEXT otherwise, both with a binary
  utf8mb4 collation; number DOUBLE, integer BIGINT, boolean BOOLEAN
- object and array JSON
- undeclared properties in the ``_extra`` JSON column

Invariants:
    - bootstrap() creates the database, table and indexes when missing and
      reports which artefacts already existed
    - An unguarded write is INSERT ... ON DUPLICATE KEY UPDATE; a guarded
      write locks the row (SELECT ... FOR UPDATE) and updates it only when
      the guard matches, inside one transaction
    - All values are bound parameters (%s) produced by the QueryCompiler
    - A missing table (error 1146) surfaces as BackendUnavailableError

How to change safely:
    - MySQL has no CREATE INDEX IF NOT EXISTS; indexes are looked up in
      information_schema first
    - Pool size and connect timeout come from MySqlConnectorConfig
"""

from __future__ import annotations

import logging
import re
from collections.abc import Sequence
from typing import TYPE_CHECKING, Any

import aiomysql
import pymysql

from ..conditions.evaluator import pick
from ..conditions.model import (
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
from ..query.compiler import EXTRA_COLUMN, MYSQL_DIALECT, QueryCompiler
from ..schema.types import EntitySchema, PropertyType
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
    from ..config import MySqlConnectorConfig

logger = logging.getLogger(__name__)

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

_NO_SUCH_TABLE = 1146
# Can't connect, server gone away, lost connection
_CONNECTION_ERRORS = (2003, 2006, 2013)

_ERRORS = (OSError, pymysql.err.MySQLError)


class MySqlEntityStorageConnector:
    """MySQL implementation of EntityStorageConnector.

    Thread safety:
        The aiomysql pool hands each operation its own connection; the
        connector can be shared by any number of coroutines.

    Example:
        >>> config = MySqlConnectorConfig(host="localhost", user="estore",
        ...                               password="...", database="estore")
        >>> connector = MySqlEntityStorageConnector(schema, config)
        >>> await connector.bootstrap()
    """

    def __init__(
        self,
        schema: EntitySchema,
        config: MySqlConnectorConfig,
        undefined_mode: UndefinedPropertyMode = UndefinedPropertyMode.REMOVE,
    ) -> None:
        """Initialize the connector (no connection is made until first use).

        Raises:
            ConfigurationError: If host, user, database or names are invalid
        """
        missing = [name for name in ("host", "user", "database") if not getattr(config, name)]
        if missing:
            raise ConfigurationError(
                f"MySQL connector is missing required settings: {missing}",
                details={"schema": schema.name, "missing": missing},
            )
        table = config.table_name or schema.name
        for identifier in (table, config.database, *schema.property_names):
            if not _IDENTIFIER.match(identifier):
                raise ConfigurationError(
                    f"'{identifier}' is not a valid MySQL identifier",
                    details={"schema": schema.name},
                )

        self._schema = schema
        self._config = config
        self._undefined_mode = undefined_mode
        self._table = table
        self._compiler = QueryCompiler(schema, MYSQL_DIALECT)
        self._columns = list(schema.property_names) + [EXTRA_COLUMN]
        self._pool: aiomysql.Pool | None = None

    def get_schema(self) -> EntitySchema:
        return self._schema

    def _connect_kwargs(self) -> dict[str, Any]:
        return {
            "host": self._config.host,
            "port": self._config.port,
            "user": self._config.user,
            "password": self._config.password,
            "charset": "utf8mb4",
            "autocommit": True,
            "connect_timeout": self._config.connect_timeout_seconds,
        }

    async def _get_pool(self) -> aiomysql.Pool:
        if self._pool is None:
            try:
                self._pool = await aiomysql.create_pool(
                    minsize=self._config.min_pool_size,
                    maxsize=self._config.max_pool_size,
                    db=self._config.database,
                    **self._connect_kwargs(),
                )
            except _ERRORS as err:
                raise BackendUnavailableError(
                    f"Cannot connect to MySQL database '{self._config.database}'",
                    container=self._table,
                    inner=err,
                ) from err
        return self._pool

    def _wrap(self, err: Exception, operation: type, id: Any = None) -> Exception:
        code = err.args[0] if isinstance(err, pymysql.err.MySQLError) and err.args else None
        if code == _NO_SUCH_TABLE:
            return BackendUnavailableError(
                f"Table '{self._table}' does not exist",
                operation=operation.operation,
                container=self._table,
                inner=err,
            )
        if isinstance(err, OSError) or code in _CONNECTION_ERRORS:
            return BackendUnavailableError(
                "MySQL connection failed",
                operation=operation.operation,
                container=self._table,
                inner=err,
            )
        return operation(id=None if id is None else str(id), container=self._table, inner=err)

    async def _fetch(self, sql: str, params: Sequence[Any]) -> list[dict[str, Any]]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.cursor(aiomysql.DictCursor) as cur:
                await cur.execute(sql, params)
                return list(await cur.fetchall())

    async def _execute(self, sql: str, params: Sequence[Any]) -> int:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.cursor() as cur:
                return await cur.execute(sql, params)

    async def _ensure_database(self, log: logging.Logger) -> None:
        conn = await aiomysql.connect(**self._connect_kwargs())
        try:
            async with conn.cursor() as cur:
                await cur.execute(
                    "SELECT 1 FROM information_schema.SCHEMATA WHERE SCHEMA_NAME = %s",
                    (self._config.database,),
                )
                if await cur.fetchone():
                    log.info("databaseExists", extra={"database": self._config.database})
                    return
                log.info("databaseCreating", extra={"database": self._config.database})
                # IF NOT EXISTS covers another node creating it concurrently
                await cur.execute(
                    f"CREATE DATABASE IF NOT EXISTS {MYSQL_DIALECT.quote(self._config.database)} "
                    "CHARACTER SET utf8mb4"
                )
        finally:
            conn.close()

    def _indexed_properties(self) -> list[str]:
        return [
            p.property
            for p in self._schema.properties
            if not p.is_primary
            and (p.is_secondary or p.sort_direction)
            and p.type not in (PropertyType.OBJECT, PropertyType.ARRAY)
        ]

    async def bootstrap(self, logger_name: str | None = None) -> bool:
        """Create the database, table and indexes if they do not exist."""
        log = bootstrap_logger(logger_name, logger)
        quote = MYSQL_DIALECT.quote
        columns = [
            f"{quote(p.property)} {MYSQL_DIALECT.column_type(p)}"
            + (" PRIMARY KEY" if p.is_primary else "")
            for p in self._schema.properties
        ]
        columns.append(f"{quote(EXTRA_COLUMN)} {MYSQL_DIALECT.extra_column_type}")

        try:
            await self._ensure_database(log)
        except _ERRORS as err:
            log.error(
                "databaseCreateFailed",
                extra={"database": self._config.database, "error": str(err)},
            )
            return False

        try:
            exists = await self._fetch(
                "SELECT 1 FROM information_schema.TABLES WHERE TABLE_SCHEMA = %s AND TABLE_NAME = %s",
                (self._config.database, self._table),
            )
            log.info("tableExists" if exists else "tableCreating", extra={"table": self._table})
            await self._execute(
                f"CREATE TABLE IF NOT EXISTS {quote(self._table)} ({', '.join(columns)})", ()
            )
            for name in self._indexed_properties():
                index = f"idx_{self._table}_{name}"
                found = await self._fetch(
                    "SELECT 1 FROM information_schema.STATISTICS "
                    "WHERE TABLE_SCHEMA = %s AND TABLE_NAME = %s AND INDEX_NAME = %s",
                    (self._config.database, self._table, index),
                )
                if not found:
                    await self._execute(
                        f"CREATE INDEX {quote(index)} ON {quote(self._table)} ({quote(name)})", ()
                    )
            return True
        except (BackendUnavailableError, *_ERRORS) as err:
            log.error("tableCreateFailed", extra={"table": self._table, "error": str(err)})
            return False

    async def get(
        self,
        id: Any,
        secondary_index: str | None = None,
        conditions: Any = None,
    ) -> dict[str, Any] | None:
        check_secondary_index(self._schema, secondary_index)
        key = secondary_index or self._schema.primary_key.property
        lookup = [equals(key, id)] + normalize_comparators(conditions)
        params: list[Any] = []
        where = self._compiler.compile_where(ConditionGroup(tuple(lookup)), params)
        sql = (
            f"SELECT {self._compiler.compile_projection(None)} "
            f"FROM {MYSQL_DIALECT.quote(self._table)} {where} LIMIT 1"
        )
        try:
            rows = await self._fetch(sql, params)
        except _ERRORS as err:
            raise self._wrap(err, LookupFailedError, id) from err
        return self._compiler.decode_row(rows[0]) if rows else None

    async def _guarded_set(
        self, id: Any, row: dict[str, Any], comparators: Sequence[Any]
    ) -> bool:
        quote = MYSQL_DIALECT.quote
        table = quote(self._table)
        pk = self._schema.primary_key.property
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            await conn.begin()
            try:
                async with conn.cursor() as cur:
                    await cur.execute(
                        f"SELECT 1 FROM {table} WHERE {quote(pk)} = %s FOR UPDATE", (row[pk],)
                    )
                    if not await cur.fetchone():
                        columns = ", ".join(quote(c) for c in self._columns)
                        values = ", ".join("%s" for _ in self._columns)
                        await cur.execute(
                            f"INSERT INTO {table} ({columns}) VALUES ({values})",
                            [row.get(c) for c in self._columns],
                        )
                        applied = True
                    else:
                        params: list[Any] = []
                        assignments = ", ".join(
                            f"{quote(c)} = {MYSQL_DIALECT.placeholder(params, row.get(c))}"
                            for c in self._columns
                            if c != pk
                        )
                        params.append(row[pk])
                        guard = self._compiler.compile_condition(
                            ConditionGroup(tuple(comparators)), params
                        )
                        applied = bool(
                            await cur.execute(
                                f"UPDATE {table} SET {assignments} "
                                f"WHERE {quote(pk)} = %s AND {guard}",
                                params,
                            )
                        )
                await conn.commit()
            except BaseException:
                await conn.rollback()
                raise
        return applied

    async def set(self, entity: dict[str, Any], conditions: Any = None) -> None:
        prepared = prepare_entity(self._schema, entity, self._undefined_mode)
        comparators = normalize_comparators(conditions)
        id = primary_key_of(self._schema, prepared)
        row = self._compiler.encode_row(prepared)

        try:
            if comparators:
                applied = await self._guarded_set(id, row, comparators)
                if not applied:
                    logger.debug("Conditional set skipped", extra={"table": self._table, "id": id})
                return
            quote = MYSQL_DIALECT.quote
            pk = self._schema.primary_key.property
            updates = ", ".join(
                f"{quote(c)} = VALUES({quote(c)})" for c in self._columns if c != pk
            )
            await self._execute(
                f"INSERT INTO {quote(self._table)} ({', '.join(quote(c) for c in self._columns)}) "
                f"VALUES ({', '.join('%s' for _ in self._columns)}) "
                f"ON DUPLICATE KEY UPDATE {updates}",
                [row.get(c) for c in self._columns],
            )
        except _ERRORS as err:
            raise self._wrap(err, WriteFailedError, id) from err

    async def remove(self, id: Any, conditions: Any = None) -> None:
        lookup = [equals(self._schema.primary_key.property, id)] + normalize_comparators(conditions)
        params: list[Any] = []
        where = self._compiler.compile_where(ConditionGroup(tuple(lookup)), params)
        try:
            await self._execute(f"DELETE FROM {MYSQL_DIALECT.quote(self._table)} {where}", params)
        except _ERRORS as err:
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
        projection = self._compiler.compile_projection(properties)
        where = self._compiler.compile_where(condition_from_dict(conditions), params)
        order = self._compiler.compile_sort(sort_from_dict(sort_properties), params)
        params.extend([size + 1, offset])
        sql = (
            f"SELECT {projection} FROM {MYSQL_DIALECT.quote(self._table)} "
            f"{where} {order} LIMIT %s OFFSET %s"
        )
        try:
            rows = await self._fetch(sql, params)
        except _ERRORS as err:
            raise self._wrap(err, QueryFailedError) from err

        entities = [self._compiler.decode_row(r) for r in rows[:size]]
        if properties:
            entities = [pick(e, properties) for e in entities]
        return QueryResult(
            entities=entities,
            cursor=str(offset + size) if len(rows) > size else None,
        )

    async def close(self) -> None:
        """Close the connection pool."""
        if self._pool is not None:
            self._pool.close()
            await self._pool.wait_closed()
            self._pool = None
