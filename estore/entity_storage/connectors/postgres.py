"""
PostgreSQL entity storage connector.

Uses an asyncpg connection pool. One schema maps to one table:
- string TEXT, number DOUBLE PRECISION, integer BIGINT, boolean BOOLEAN
- object and array JSONB (a json codec is registered on every connection)
- undeclared properties in the ``_extra`` JSONB column

Invariants:
    - bootstrap() creates the database, table and secondary indexes when
      missing and reports which artefacts already existed
    - Writes are INSERT ... ON CONFLICT (pk) DO UPDATE; a write guard is the
      DO UPDATE WHERE clause, qualified by the table name
    - All values are bound parameters ($n) produced by the QueryCompiler
    - UndefinedTableError surfaces as BackendUnavailableError

How to change safely:
    - Keep the jsonb codec in _init_connection; the dialect binds objects
      and arrays as plain Python values
    - Pool size and command timeout come from PostgresConnectorConfig
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Sequence
from typing import TYPE_CHECKING, Any

import asyncpg

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
from ..query.compiler import EXTRA_COLUMN, POSTGRES_DIALECT, QueryCompiler
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
    from ..config import PostgresConnectorConfig

logger = logging.getLogger(__name__)

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


async def _init_connection(conn: asyncpg.Connection) -> None:
    await conn.set_type_codec(
        "jsonb", encoder=json.dumps, decoder=json.loads, schema="pg_catalog"
    )


class PostgresEntityStorageConnector:
    """PostgreSQL implementation of EntityStorageConnector.

    Thread safety:
        The asyncpg pool hands each operation its own connection; the
        connector can be shared by any number of coroutines.

    Example:
        >>> config = PostgresConnectorConfig(host="localhost", user="estore",
        ...                                  password="...", database="estore")
        >>> connector = PostgresEntityStorageConnector(schema, config)
        >>> await connector.bootstrap()
    """

    def __init__(
        self,
        schema: EntitySchema,
        config: PostgresConnectorConfig,
        undefined_mode: UndefinedPropertyMode = UndefinedPropertyMode.REMOVE,
    ) -> None:
        """Initialize the connector (no connection is made until first use).

        Raises:
            ConfigurationError: If host, user, database or names are invalid
        """
        missing = [name for name in ("host", "user", "database") if not getattr(config, name)]
        if missing:
            raise ConfigurationError(
                f"PostgreSQL connector is missing required settings: {missing}",
                details={"schema": schema.name, "missing": missing},
            )
        table = config.table_name or schema.name
        for identifier in (table, config.database, *schema.property_names):
            if not _IDENTIFIER.match(identifier):
                raise ConfigurationError(
                    f"'{identifier}' is not a valid PostgreSQL identifier",
                    details={"schema": schema.name},
                )

        self._schema = schema
        self._config = config
        self._undefined_mode = undefined_mode
        self._table = table
        self._compiler = QueryCompiler(schema, POSTGRES_DIALECT)
        self._guard_compiler = QueryCompiler(schema, POSTGRES_DIALECT, qualifier=table)
        self._columns = list(schema.property_names) + [EXTRA_COLUMN]
        self._pool: asyncpg.Pool | None = None

    def get_schema(self) -> EntitySchema:
        return self._schema

    def _connect_kwargs(self, database: str) -> dict[str, Any]:
        return {
            "host": self._config.host,
            "port": self._config.port,
            "user": self._config.user,
            "password": self._config.password or None,
            "database": database,
            "ssl": "require" if self._config.ssl else None,
        }

    async def _get_pool(self) -> asyncpg.Pool:
        if self._pool is None:
            try:
                self._pool = await asyncpg.create_pool(
                    **self._connect_kwargs(self._config.database),
                    min_size=self._config.min_pool_size,
                    max_size=self._config.max_pool_size,
                    command_timeout=self._config.command_timeout_seconds,
                    init=_init_connection,
                )
            except (OSError, asyncpg.PostgresError) as err:
                raise BackendUnavailableError(
                    f"Cannot connect to PostgreSQL database '{self._config.database}'",
                    container=self._table,
                    inner=err,
                ) from err
        return self._pool

    def _wrap(self, err: Exception, operation: type, id: Any = None) -> Exception:
        if isinstance(err, asyncpg.exceptions.UndefinedTableError):
            return BackendUnavailableError(
                f"Table '{self._table}' does not exist",
                operation=operation.operation,
                container=self._table,
                inner=err,
            )
        if isinstance(err, (OSError, asyncpg.exceptions.ConnectionDoesNotExistError)):
            return BackendUnavailableError(
                "PostgreSQL connection failed",
                operation=operation.operation,
                container=self._table,
                inner=err,
            )
        return operation(id=None if id is None else str(id), container=self._table, inner=err)

    async def _ensure_database(self, log: logging.Logger) -> None:
        conn = await asyncpg.connect(**self._connect_kwargs(self._config.admin_database))
        try:
            exists = await conn.fetchval(
                "SELECT 1 FROM pg_database WHERE datname = $1", self._config.database
            )
            if exists:
                log.info("databaseExists", extra={"database": self._config.database})
                return
            log.info("databaseCreating", extra={"database": self._config.database})
            try:
                await conn.execute(f"CREATE DATABASE {POSTGRES_DIALECT.quote(self._config.database)}")
            except asyncpg.exceptions.DuplicateDatabaseError:
                # Created concurrently by another node
                log.info("databaseExists", extra={"database": self._config.database})
        finally:
            await conn.close()

    async def bootstrap(self, logger_name: str | None = None) -> bool:
        """Create the database, table and secondary indexes if they do not exist."""
        log = bootstrap_logger(logger_name, logger)
        quote = POSTGRES_DIALECT.quote
        columns = [
            f"{quote(p.property)} {POSTGRES_DIALECT.column_type(p)}"
            + (" PRIMARY KEY" if p.is_primary else "")
            for p in self._schema.properties
        ]
        columns.append(f"{quote(EXTRA_COLUMN)} {POSTGRES_DIALECT.extra_column_type}")

        try:
            await self._ensure_database(log)
        except (OSError, asyncpg.PostgresError) as err:
            log.error(
                "databaseCreateFailed",
                extra={"database": self._config.database, "error": str(err)},
            )
            return False

        try:
            pool = await self._get_pool()
            async with pool.acquire() as conn:
                exists = await conn.fetchval("SELECT to_regclass($1)", self._table)
                log.info(
                    "tableExists" if exists else "tableCreating",
                    extra={"table": self._table},
                )
                await conn.execute(
                    f"CREATE TABLE IF NOT EXISTS {quote(self._table)} ({', '.join(columns)})"
                )
                for prop in self._schema.properties:
                    if prop.is_primary or not (prop.is_secondary or prop.sort_direction):
                        continue
                    index = f"idx_{self._table}_{prop.property}"
                    await conn.execute(
                        f"CREATE INDEX IF NOT EXISTS {quote(index)} "
                        f"ON {quote(self._table)} ({quote(prop.property)})"
                    )
            return True
        except (BackendUnavailableError, OSError, asyncpg.PostgresError) as err:
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
            f"FROM {POSTGRES_DIALECT.quote(self._table)} {where} LIMIT 1"
        )
        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                row = await conn.fetchrow(sql, *params)
        except (OSError, asyncpg.PostgresError, asyncpg.InterfaceError) as err:
            raise self._wrap(err, LookupFailedError, id) from err
        return self._compiler.decode_row(dict(row)) if row else None

    async def set(self, entity: dict[str, Any], conditions: Any = None) -> None:
        prepared = prepare_entity(self._schema, entity, self._undefined_mode)
        comparators = normalize_comparators(conditions)
        id = primary_key_of(self._schema, prepared)
        row = self._compiler.encode_row(prepared)

        quote = POSTGRES_DIALECT.quote
        params: list[Any] = [row.get(c) for c in self._columns]
        pk = self._schema.primary_key.property
        updates = ", ".join(
            f"{quote(c)} = EXCLUDED.{quote(c)}" for c in self._columns if c != pk
        )
        sql = (
            f"INSERT INTO {quote(self._table)} ({', '.join(quote(c) for c in self._columns)}) "
            f"VALUES ({', '.join(f'${i + 1}' for i in range(len(self._columns)))}) "
            f"ON CONFLICT ({quote(pk)}) DO UPDATE SET {updates}"
        )
        if comparators:
            guard = self._guard_compiler.compile_condition(ConditionGroup(tuple(comparators)), params)
            sql += f" WHERE {guard}"

        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                status = await conn.execute(sql, *params)
        except (OSError, asyncpg.PostgresError, asyncpg.InterfaceError) as err:
            raise self._wrap(err, WriteFailedError, id) from err
        if status.endswith(" 0"):
            logger.debug("Conditional set skipped", extra={"table": self._table, "id": id})

    async def remove(self, id: Any, conditions: Any = None) -> None:
        lookup = [equals(self._schema.primary_key.property, id)] + normalize_comparators(conditions)
        params: list[Any] = []
        where = self._compiler.compile_where(ConditionGroup(tuple(lookup)), params)
        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                await conn.execute(f"DELETE FROM {POSTGRES_DIALECT.quote(self._table)} {where}", *params)
        except (OSError, asyncpg.PostgresError, asyncpg.InterfaceError) as err:
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
        limit = POSTGRES_DIALECT.placeholder(params, size + 1)
        skip = POSTGRES_DIALECT.placeholder(params, offset)
        sql = (
            f"SELECT {projection} FROM {POSTGRES_DIALECT.quote(self._table)} "
            f"{where} {order} LIMIT {limit} OFFSET {skip}"
        )
        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                rows = await conn.fetch(sql, *params)
        except (OSError, asyncpg.PostgresError, asyncpg.InterfaceError) as err:
            raise self._wrap(err, QueryFailedError) from err

        entities = [self._compiler.decode_row(dict(r)) for r in rows[:size]]
        if properties:
            entities = [pick(e, properties) for e in entities]
        return QueryResult(
            entities=entities,
            cursor=str(offset + size) if len(rows) > size else None,
        )

    async def close(self) -> None:
        """Close the connection pool."""
        if self._pool is not None:
            await self._pool.close()
            self._pool = None
