"""
ScyllaDB (and Cassandra) entity storage connector.

Uses the cassandra-driver. Every row lives in one constant partition,
clustered by the primary key:
- table key: PRIMARY KEY (("partitionId"), <primary key>)
- one secondary index per secondary property
- objects, arrays and undeclared properties as canonical JSON text

Invariants:
    - bootstrap() creates the keyspace (SimpleStrategy), table and indexes
      when missing and reports which artefacts already existed
    - Conditions are split by CqlQueryBuilder; the residual is checked with
      the reference evaluator, so results match every other connector
    - Queries in primary key order page with a keyset cursor ({"after": pk});
      any other sort reads every match, sorts in memory and pages with an
      offset cursor ({"offset": n})
    - Guarded writes check the guard on the stored row, then apply with a
      lightweight transaction conditional on the guard columns being
      unchanged; a failed check is the silent no-op of the connector contract
    - Driver calls are blocking and run in the default executor

How to change safely:
    - Statements are prepared once per text and cached; keep statement text
      free of values
    - Changing PARTITION_COLUMN or the clustering order breaks existing tables
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import functools
import json
import logging
import re
from collections.abc import Callable, Sequence
from typing import TYPE_CHECKING, Any

from cassandra import DriverException, InvalidRequest, OperationTimedOut
from cassandra.auth import PlainTextAuthProvider
from cassandra.cluster import EXEC_PROFILE_DEFAULT, Cluster, ExecutionProfile, NoHostAvailable
from cassandra.policies import DCAwareRoundRobinPolicy
from cassandra.query import dict_factory

from ..conditions.evaluator import check_condition, pick, sort_entities
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
    GuardError,
    LookupFailedError,
    QueryFailedError,
    RemoveFailedError,
    WriteFailedError,
)
from ..query.cql import CQL_DIALECT, CqlQueryBuilder
from ..schema.types import EntitySchema, SortDirection
from .base import (
    QueryResult,
    UndefinedPropertyMode,
    bootstrap_logger,
    check_secondary_index,
    comparators_match,
    prepare_entity,
    primary_key_of,
    resolve_page_size,
)

if TYPE_CHECKING:
    from ..config import ScyllaDbConnectorConfig

logger = logging.getLogger(__name__)

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

# Rows read per scan request while filtering the residual
_SCAN_BATCH = 500

_ERRORS = (DriverException, NoHostAvailable)


def encode_cursor(position: dict[str, Any] | None) -> str | None:
    if not position:
        return None
    raw = json.dumps(position, sort_keys=True, separators=(",", ":"))
    return base64.urlsafe_b64encode(raw.encode("utf-8")).decode("ascii")


def decode_cursor(cursor: str | None) -> dict[str, Any]:
    """Decode a cursor produced by encode_cursor.

    Raises:
        GuardError: If the cursor is not valid base64 JSON
    """
    if not cursor:
        return {}
    try:
        position = json.loads(base64.urlsafe_b64decode(cursor.encode("ascii")))
    except (binascii.Error, UnicodeError, ValueError) as err:
        raise GuardError("ScyllaDbEntityStorageConnector", "cursor", "Invalid cursor") from err
    if not isinstance(position, dict):
        raise GuardError("ScyllaDbEntityStorageConnector", "cursor", "Invalid cursor")
    return position


class ScyllaDbEntityStorageConnector:
    """ScyllaDB implementation of EntityStorageConnector.

    Example:
        >>> config = ScyllaDbConnectorConfig(hosts=("scylla",), keyspace="estore")
        >>> connector = ScyllaDbEntityStorageConnector(schema, config)
        >>> await connector.bootstrap()
    """

    def __init__(
        self,
        schema: EntitySchema,
        config: ScyllaDbConnectorConfig,
        undefined_mode: UndefinedPropertyMode = UndefinedPropertyMode.REMOVE,
    ) -> None:
        """Initialize the connector (no connection is made until first use).

        Raises:
            ConfigurationError: If hosts, keyspace or names are invalid
        """
        if not config.hosts or not config.keyspace:
            raise ConfigurationError(
                "ScyllaDB connector requires hosts and a keyspace",
                details={"schema": schema.name},
            )
        table = config.table_name or schema.name
        for identifier in (table, config.keyspace, *schema.property_names):
            if not _IDENTIFIER.match(identifier):
                raise ConfigurationError(
                    f"'{identifier}' is not a valid CQL identifier",
                    details={"schema": schema.name},
                )

        self._schema = schema
        self._config = config
        self._undefined_mode = undefined_mode
        self._table = table
        self._builder = CqlQueryBuilder(schema, table, keyspace=config.keyspace)
        self._cluster: Cluster | None = None
        self._session: Any = None
        self._prepared: dict[str, Any] = {}

    def get_schema(self) -> EntitySchema:
        return self._schema

    async def _run(self, fn: Callable[..., Any], *args: Any) -> Any:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, functools.partial(fn, *args))

    def _connect(self) -> Any:
        profile = ExecutionProfile(
            load_balancing_policy=DCAwareRoundRobinPolicy(local_dc=self._config.local_data_center),
            request_timeout=self._config.request_timeout_seconds,
            row_factory=dict_factory,
        )
        auth = (
            PlainTextAuthProvider(username=self._config.username, password=self._config.password)
            if self._config.username
            else None
        )
        self._cluster = Cluster(
            contact_points=list(self._config.hosts),
            port=self._config.port,
            auth_provider=auth,
            execution_profiles={EXEC_PROFILE_DEFAULT: profile},
        )
        return self._cluster.connect()

    async def _get_session(self) -> Any:
        if self._session is None:
            try:
                self._session = await self._run(self._connect)
            except _ERRORS as err:
                raise BackendUnavailableError(
                    f"Cannot connect to ScyllaDB keyspace '{self._config.keyspace}'",
                    container=self._table,
                    inner=err,
                ) from err
        return self._session

    async def _execute(self, statement: str, params: Sequence[Any] = ()) -> list[dict[str, Any]]:
        session = await self._get_session()

        def run() -> list[dict[str, Any]]:
            prepared = self._prepared.get(statement)
            if prepared is None:
                prepared = self._prepared[statement] = session.prepare(statement)
            return list(session.execute(prepared, list(params)))

        return await self._run(run)

    async def _execute_ddl(self, statement: str) -> None:
        session = await self._get_session()
        await self._run(session.execute, statement)

    def _wrap(self, err: Exception, operation: type, id: Any = None) -> Exception:
        message = str(err).lower()
        if isinstance(err, InvalidRequest) and (
            "unconfigured table" in message or "does not exist" in message
        ):
            return BackendUnavailableError(
                f"Table '{self._table}' does not exist",
                operation=operation.operation,
                container=self._table,
                inner=err,
            )
        if isinstance(err, (NoHostAvailable, OperationTimedOut)):
            return BackendUnavailableError(
                "ScyllaDB is unavailable",
                operation=operation.operation,
                container=self._table,
                inner=err,
            )
        return operation(id=None if id is None else str(id), container=self._table, inner=err)

    async def bootstrap(self, logger_name: str | None = None) -> bool:
        """Create the keyspace, table and secondary indexes if they do not exist."""
        log = bootstrap_logger(logger_name, logger)
        keyspace = self._config.keyspace
        try:
            found = await self._execute(
                "SELECT keyspace_name FROM system_schema.keyspaces WHERE keyspace_name = ?",
                [keyspace],
            )
            log.info("keyspaceExists" if found else "keyspaceCreating", extra={"keyspace": keyspace})
            await self._execute_ddl(
                f"CREATE KEYSPACE IF NOT EXISTS {CQL_DIALECT.quote(keyspace)} WITH replication = "
                f"{{'class': 'SimpleStrategy', 'replication_factor': {int(self._config.replication_factor)}}}"
            )
        except (BackendUnavailableError, *_ERRORS) as err:
            log.error("keyspaceCreateFailed", extra={"keyspace": keyspace, "error": str(err)})
            return False

        try:
            found = await self._execute(
                "SELECT table_name FROM system_schema.tables WHERE keyspace_name = ? AND table_name = ?",
                [keyspace, self._table],
            )
            log.info("tableExists" if found else "tableCreating", extra={"table": self._table})
            await self._execute_ddl(self._builder.build_table())
            for statement in self._builder.build_indexes():
                await self._execute_ddl(statement)
            return True
        except (BackendUnavailableError, *_ERRORS) as err:
            log.error("tableCreateFailed", extra={"table": self._table, "error": str(err)})
            return False

    async def _read_raw(self, key: Any) -> dict[str, Any] | None:
        statement, params = self._builder.build_get(key)
        rows = await self._execute(statement, params)
        return rows[0] if rows else None

    async def _scan(
        self,
        condition: Condition | None,
        after: Any = None,
        wanted: int | None = None,
    ) -> list[dict[str, Any]]:
        """Matching entities in primary key order, stopping once ``wanted`` are found."""
        cql_filter = self._builder.split(condition)
        pk = self._schema.primary_key.property
        matches: list[dict[str, Any]] = []
        while True:
            statement, params = self._builder.build_scan(cql_filter, after=after, limit=_SCAN_BATCH)
            rows = await self._execute(statement, params)
            for row in rows:
                after = row[pk]
                entity = self._builder.decode_row(row)
                if check_condition(entity, cql_filter.residual):
                    matches.append(entity)
                    if wanted is not None and len(matches) >= wanted:
                        return matches
            if len(rows) < _SCAN_BATCH:
                return matches

    async def get(
        self,
        id: Any,
        secondary_index: str | None = None,
        conditions: Any = None,
    ) -> dict[str, Any] | None:
        check_secondary_index(self._schema, secondary_index)
        comparators = normalize_comparators(conditions)
        try:
            if secondary_index is not None:
                lookup = ConditionGroup(tuple([equals(secondary_index, id)] + comparators))
                matches = await self._scan(lookup, wanted=1)
                return matches[0] if matches else None
            raw = await self._read_raw(self._builder.key_value(id))
        except _ERRORS as err:
            raise self._wrap(err, LookupFailedError, id) from err
        if raw is None:
            return None
        entity = self._builder.decode_row(raw)
        return entity if comparators_match(entity, comparators) else None

    def _guard(self, raw: dict[str, Any], comparators: Sequence[Any]) -> dict[str, Any]:
        return {column: raw.get(column) for column in self._builder.guard_columns(comparators)}

    async def set(self, entity: dict[str, Any], conditions: Any = None) -> None:
        prepared = prepare_entity(self._schema, entity, self._undefined_mode)
        comparators = normalize_comparators(conditions)
        id = primary_key_of(self._schema, prepared)
        row = self._builder.encode_row(prepared)

        try:
            if not comparators:
                await self._execute(*self._builder.build_insert(row))
                return
            inserted = await self._execute(*self._builder.build_insert(row, if_not_exists=True))
            if inserted and inserted[0].get("[applied]"):
                return
            raw = await self._read_raw(row[self._schema.primary_key.property])
            if raw is None or not comparators_match(self._builder.decode_row(raw), comparators):
                logger.debug("Conditional set skipped", extra={"table": self._table, "id": id})
                return
            updated = await self._execute(
                *self._builder.build_update(row, self._guard(raw, comparators))
            )
        except _ERRORS as err:
            raise self._wrap(err, WriteFailedError, id) from err
        if updated and updated[0].get("[applied]") is False:
            logger.debug(
                "Conditional set skipped, row changed concurrently",
                extra={"table": self._table, "id": id},
            )

    async def remove(self, id: Any, conditions: Any = None) -> None:
        comparators = normalize_comparators(conditions)
        key = self._builder.key_value(id)
        try:
            if not comparators:
                await self._execute(*self._builder.build_delete(key))
                return
            raw = await self._read_raw(key)
            if raw is None or not comparators_match(self._builder.decode_row(raw), comparators):
                return
            await self._execute(*self._builder.build_delete(key, self._guard(raw, comparators)))
        except _ERRORS as err:
            raise self._wrap(err, RemoveFailedError, id) from err

    def _keyset_order(self, sort_properties: Sequence[SortProperty]) -> bool:
        if not sort_properties:
            return True
        first = sort_properties[0]
        return (
            first.property == self._schema.primary_key.property
            and first.sort_direction == SortDirection.ASCENDING
        )

    async def query(
        self,
        conditions: Condition | None = None,
        sort_properties: Sequence[SortProperty] | None = None,
        properties: Sequence[str] | None = None,
        cursor: str | None = None,
        page_size: int | None = None,
    ) -> QueryResult:
        size = resolve_page_size(page_size)
        position = decode_cursor(cursor)
        condition = condition_from_dict(conditions)
        sorts = sort_from_dict(sort_properties)
        pk = self._schema.primary_key.property

        try:
            if self._keyset_order(sorts):
                if "offset" in position:
                    raise GuardError("ScyllaDbEntityStorageConnector", "cursor", "Invalid cursor")
                after = position.get("after")
                if after is not None:
                    after = self._builder.key_value(after)
                matches = await self._scan(condition, after=after, wanted=size + 1)
                page = matches[:size]
                next_position = {"after": page[-1][pk]} if len(matches) > size else None
            else:
                offset = position.get("offset", 0)
                if "after" in position or not isinstance(offset, int) or offset < 0:
                    raise GuardError("ScyllaDbEntityStorageConnector", "cursor", "Invalid cursor")
                ordered = sort_entities(await self._scan(condition), sorts)
                page = ordered[offset:offset + size]
                next_position = {"offset": offset + size} if len(ordered) > offset + size else None
        except _ERRORS as err:
            raise self._wrap(err, QueryFailedError) from err

        if properties:
            page = [pick(e, properties) for e in page]
        return QueryResult(entities=page, cursor=encode_cursor(next_position))

    async def close(self) -> None:
        """Shut down the cluster connection."""
        if self._cluster is not None:
            await self._run(self._cluster.shutdown)
            self._cluster = None
            self._session = None
            self._prepared.clear()
