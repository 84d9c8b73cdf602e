"""
DynamoDB entity storage connector.

Uses an aiobotocore client. Every item lives under one constant partition
value so that reads can be Query requests:
- table key: (partitionId HASH, <primary key> RANGE)
- one global secondary index (partitionId, <property>) per secondary or
  sortable property of type string/number/integer

Invariants:
    - bootstrap() creates the table on demand (PAY_PER_REQUEST) and waits
      until it is ACTIVE; an existing table is reported as "tableExists"
    - Guarded writes use a ConditionExpression; ConditionalCheckFailed is the
      silent no-op of the connector contract
    - The cursor is the base64 encoded JSON of LastEvaluatedKey
    - Sorting is limited to one indexed property (SortNotIndexedError)
    - ResourceNotFoundException surfaces as BackendUnavailableError

How to change safely:
    - A new GSI on an existing table needs an UpdateTable migration;
      bootstrap only creates missing tables
    - Expression text must come from DynamoExpressionBuilder
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
from collections.abc import Sequence
from typing import TYPE_CHECKING, Any

from aiobotocore.session import get_session
from botocore.exceptions import BotoCoreError, ClientError

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
from ..query.dynamo import (
    PARTITION_KEY,
    PARTITION_VALUE,
    DynamoExpressionBuilder,
    from_item,
    index_name,
    to_attribute_value,
    to_item,
)
from ..schema.types import EntitySchema, PropertyType
from .base import (
    QueryResult,
    UndefinedPropertyMode,
    bootstrap_logger,
    check_secondary_index,
    prepare_entity,
    primary_key_of,
    resolve_page_size,
)

if TYPE_CHECKING:
    from ..config import DynamoDbConnectorConfig

logger = logging.getLogger(__name__)

_KEY_TYPES = {
    PropertyType.STRING: "S",
    PropertyType.NUMBER: "N",
    PropertyType.INTEGER: "N",
}


def _error_code(err: Exception) -> str | None:
    if isinstance(err, ClientError):
        return err.response.get("Error", {}).get("Code")
    return None


def encode_cursor(last_evaluated_key: dict[str, Any] | None) -> str | None:
    if not last_evaluated_key:
        return None
    raw = json.dumps(last_evaluated_key, sort_keys=True, separators=(",", ":"))
    return base64.urlsafe_b64encode(raw.encode("utf-8")).decode("ascii")


def decode_cursor(cursor: str | None) -> dict[str, Any] | None:
    """Decode a cursor produced by encode_cursor.

    Raises:
        GuardError: If the cursor is not valid base64 JSON
    """
    if not cursor:
        return None
    try:
        key = json.loads(base64.urlsafe_b64decode(cursor.encode("ascii")))
    except (binascii.Error, UnicodeError, ValueError) as err:
        raise GuardError("DynamoDbEntityStorageConnector", "cursor", "Invalid cursor") from err
    if not isinstance(key, dict):
        raise GuardError("DynamoDbEntityStorageConnector", "cursor", "Invalid cursor")
    return key


class DynamoDbEntityStorageConnector:
    """DynamoDB implementation of EntityStorageConnector.

    Example:
        >>> config = DynamoDbConnectorConfig(region="eu-west-1", table_name="items")
        >>> connector = DynamoDbEntityStorageConnector(schema, config)
        >>> await connector.bootstrap()
    """

    def __init__(
        self,
        schema: EntitySchema,
        config: DynamoDbConnectorConfig,
        undefined_mode: UndefinedPropertyMode = UndefinedPropertyMode.REMOVE,
    ) -> None:
        if not config.region:
            raise ConfigurationError(
                "DynamoDB connector requires a region", details={"schema": schema.name}
            )
        if schema.primary_key.type not in _KEY_TYPES:
            raise ConfigurationError(
                "DynamoDB primary key must be a string or number property",
                details={"schema": schema.name, "property": schema.primary_key.property},
            )
        self._schema = schema
        self._config = config
        self._undefined_mode = undefined_mode
        self._table = config.table_name or schema.name
        self._expressions = DynamoExpressionBuilder(schema)
        self._client_ctx: Any = None
        self._client: Any = None

    def get_schema(self) -> EntitySchema:
        return self._schema

    async def _get_client(self) -> Any:
        if self._client is None:
            client_kwargs: dict[str, Any] = {"region_name": self._config.region}
            if self._config.endpoint_url:
                client_kwargs["endpoint_url"] = self._config.endpoint_url
            if self._config.access_key_id:
                client_kwargs["aws_access_key_id"] = self._config.access_key_id
                client_kwargs["aws_secret_access_key"] = self._config.secret_access_key
            self._client_ctx = get_session().create_client("dynamodb", **client_kwargs)
            self._client = await self._client_ctx.__aenter__()
        return self._client

    def _wrap(self, err: Exception, operation: type, id: Any = None) -> Exception:
        if _error_code(err) == "ResourceNotFoundException":
            return BackendUnavailableError(
                f"Table '{self._table}' does not exist",
                operation=operation.operation,
                container=self._table,
                inner=err,
            )
        return operation(id=None if id is None else str(id), container=self._table, inner=err)

    def _indexed_properties(self) -> list:
        return [
            p
            for p in self._schema.properties
            if not p.is_primary
            and (p.is_secondary or p.sort_direction)
            and p.type in _KEY_TYPES
        ]

    def _table_definition(self) -> dict[str, Any]:
        pk = self._schema.primary_key
        definitions = [
            {"AttributeName": PARTITION_KEY, "AttributeType": "S"},
            {"AttributeName": pk.property, "AttributeType": _KEY_TYPES[pk.type]},
        ]
        indexes = []
        for prop in self._indexed_properties():
            definitions.append(
                {"AttributeName": prop.property, "AttributeType": _KEY_TYPES[prop.type]}
            )
            indexes.append({
                "IndexName": index_name(prop.property),
                "KeySchema": [
                    {"AttributeName": PARTITION_KEY, "KeyType": "HASH"},
                    {"AttributeName": prop.property, "KeyType": "RANGE"},
                ],
                "Projection": {"ProjectionType": "ALL"},
            })
        definition: dict[str, Any] = {
            "TableName": self._table,
            "AttributeDefinitions": definitions,
            "KeySchema": [
                {"AttributeName": PARTITION_KEY, "KeyType": "HASH"},
                {"AttributeName": pk.property, "KeyType": "RANGE"},
            ],
            "BillingMode": "PAY_PER_REQUEST",
        }
        if indexes:
            definition["GlobalSecondaryIndexes"] = indexes
        return definition

    async def bootstrap(self, logger_name: str | None = None) -> bool:
        """Create the table and its indexes if they do not exist."""
        log = bootstrap_logger(logger_name, logger)
        try:
            client = await self._get_client()
            try:
                await client.describe_table(TableName=self._table)
                log.info("tableExists", extra={"table": self._table})
            except ClientError as err:
                if _error_code(err) != "ResourceNotFoundException":
                    raise
                log.info("tableCreating", extra={"table": self._table})
                try:
                    await client.create_table(**self._table_definition())
                except ClientError as create_err:
                    # Created concurrently by another node
                    if _error_code(create_err) != "ResourceInUseException":
                        raise
            waiter = client.get_waiter("table_exists")
            await waiter.wait(
                TableName=self._table,
                WaiterConfig={"Delay": self._config.wait_delay_seconds, "MaxAttempts": 60},
            )
            return True
        except (ClientError, BotoCoreError) as err:
            log.error("tableCreateFailed", extra={"table": self._table, "error": str(err)})
            return False

    async def _query_pages(
        self,
        request: dict[str, Any],
        limit: int | None,
        start_key: dict[str, Any] | None,
    ) -> tuple[list[dict[str, Any]], dict[str, Any] | None]:
        """Run Query requests until limit items are collected or the partition ends."""
        client = await self._get_client()
        items: list[dict[str, Any]] = []
        while True:
            page_request = dict(request)
            if start_key:
                page_request["ExclusiveStartKey"] = start_key
            if limit is not None:
                page_request["Limit"] = limit - len(items)
            response = await client.query(**page_request)
            items.extend(response.get("Items", []))
            start_key = response.get("LastEvaluatedKey")
            if not start_key or (limit is not None and len(items) >= limit):
                return items, start_key

    async def get(
        self,
        id: Any,
        secondary_index: str | None = None,
        conditions: Any = None,
    ) -> dict[str, Any] | None:
        check_secondary_index(self._schema, secondary_index)
        key = secondary_index or self._schema.primary_key.property
        lookup = ConditionGroup(tuple([equals(key, id)] + normalize_comparators(conditions)))
        expression = self._expressions.build(lookup, secondary_index=secondary_index)
        request = {"TableName": self._table, **expression.to_request()}
        try:
            items, _ = await self._query_pages(request, 1, None)
        except (ClientError, BotoCoreError) as err:
            raise self._wrap(err, LookupFailedError, id) from err
        return from_item(items[0]) if items else None

    async def set(self, entity: dict[str, Any], conditions: Any = None) -> None:
        prepared = prepare_entity(self._schema, entity, self._undefined_mode)
        comparators = normalize_comparators(conditions)
        id = primary_key_of(self._schema, prepared)
        request: dict[str, Any] = {"TableName": self._table, "Item": to_item(prepared)}
        names: dict[str, str] = {}
        values: dict[str, dict[str, Any]] = {}
        guard = self._expressions.build_write_guard(comparators, names, values)
        if guard:
            request["ConditionExpression"] = guard
            request["ExpressionAttributeNames"] = names
            if values:
                request["ExpressionAttributeValues"] = values
        try:
            client = await self._get_client()
            await client.put_item(**request)
        except ClientError as err:
            if _error_code(err) == "ConditionalCheckFailedException":
                logger.debug("Conditional set skipped", extra={"table": self._table, "id": id})
                return
            raise self._wrap(err, WriteFailedError, id) from err
        except BotoCoreError as err:
            raise self._wrap(err, WriteFailedError, id) from err

    async def remove(self, id: Any, conditions: Any = None) -> None:
        pk = self._schema.primary_key
        key_value = str(id) if pk.type == PropertyType.STRING else id
        request: dict[str, Any] = {
            "TableName": self._table,
            "Key": {
                PARTITION_KEY: {"S": PARTITION_VALUE},
                pk.property: to_attribute_value(key_value),
            },
        }
        names: dict[str, str] = {}
        values: dict[str, dict[str, Any]] = {}
        guard = self._expressions.build_remove_guard(normalize_comparators(conditions), names, values)
        if guard:
            request["ConditionExpression"] = guard
            request["ExpressionAttributeNames"] = names
            if values:
                request["ExpressionAttributeValues"] = values
        try:
            client = await self._get_client()
            await client.delete_item(**request)
        except ClientError as err:
            # A guard mismatch, or no item at all, is not an error
            if _error_code(err) == "ConditionalCheckFailedException":
                return
            raise self._wrap(err, RemoveFailedError, id) from err
        except BotoCoreError as err:
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
        start_key = decode_cursor(cursor)
        expression = self._expressions.build(
            condition_from_dict(conditions), sort_from_dict(sort_properties)
        )
        request: dict[str, Any] = {"TableName": self._table, **expression.to_request()}
        projection = self._expressions.build_projection(properties, expression.names)
        if projection:
            request["ProjectionExpression"] = projection
        try:
            items, last_key = await self._query_pages(request, size, start_key)
        except (ClientError, BotoCoreError) as err:
            raise self._wrap(err, QueryFailedError) from err
        return QueryResult(
            entities=[from_item(item) for item in items],
            cursor=encode_cursor(last_key),
        )

    async def close(self) -> None:
        """Close the DynamoDB client."""
        if self._client is not None:
            await self._client_ctx.__aexit__(None, None, None)
            self._client = None
            self._client_ctx = None
