"""
MongoDB entity storage connector.

One schema maps to one collection accessed through motor. Entities are
stored as documents with object keys sorted (canonical_document, the form
filters compare against); the primary key gets a unique index and the
internal ``_id`` field is never returned.

Invariants:
    - bootstrap() creates the collection, the unique primary key index and
      one index per secondary/sortable property
    - A guarded set replaces only a document that matches the guard; when
      no document exists it inserts, and a duplicate key on insert means
      the guard failed against a concurrent writer (silent no-op)
    - Query filters come from MongoFilterBuilder; values are never
      interpolated into operators

How to change safely:
    - Keep the "_id" projection; callers must never see backend fields
    - New comparison semantics belong in MongoFilterBuilder, not here
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import TYPE_CHECKING, Any

from motor.motor_asyncio import AsyncIOMotorClient
from pymongo import ASCENDING, DESCENDING
from pymongo.errors import ConnectionFailure, DuplicateKeyError, PyMongoError

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
from ..query.mongo import MongoFilterBuilder, canonical_document
from ..schema.types import EntitySchema, SortDirection
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
    from ..config import MongoConnectorConfig

logger = logging.getLogger(__name__)


class MongoEntityStorageConnector:
    """MongoDB implementation of EntityStorageConnector.

    Example:
        >>> config = MongoConnectorConfig(url="mongodb://localhost:27017", database="estore")
        >>> connector = MongoEntityStorageConnector(schema, config)
        >>> await connector.bootstrap()
    """

    def __init__(
        self,
        schema: EntitySchema,
        config: MongoConnectorConfig,
        undefined_mode: UndefinedPropertyMode = UndefinedPropertyMode.REMOVE,
    ) -> None:
        if not config.url or not config.database:
            raise ConfigurationError(
                "MongoDB connector requires url and database",
                details={"schema": schema.name},
            )
        self._schema = schema
        self._config = config
        self._undefined_mode = undefined_mode
        self._collection_name = config.collection_name or schema.name
        self._filters = MongoFilterBuilder(schema)
        self._client: AsyncIOMotorClient | None = None

    def get_schema(self) -> EntitySchema:
        return self._schema

    def _collection(self) -> Any:
        if self._client is None:
            self._client = AsyncIOMotorClient(
                self._config.url,
                serverSelectionTimeoutMS=self._config.server_selection_timeout_ms,
            )
        return self._client[self._config.database][self._collection_name]

    def _wrap(self, err: PyMongoError, operation: type, id: Any = None) -> Exception:
        if isinstance(err, ConnectionFailure):
            return BackendUnavailableError(
                "MongoDB is not reachable",
                operation=operation.operation,
                container=self._collection_name,
                inner=err,
            )
        return operation(
            id=None if id is None else str(id), container=self._collection_name, inner=err
        )

    def _filter_for(self, key: str, id: Any, conditions: Any) -> dict[str, Any]:
        lookup = [equals(key, id)] + normalize_comparators(conditions)
        return self._filters.build(ConditionGroup(tuple(lookup)))

    async def bootstrap(self, logger_name: str | None = None) -> bool:
        """Create the collection and its indexes if they do not exist."""
        log = bootstrap_logger(logger_name, logger)
        collection = self._collection()
        database = collection.database
        try:
            existing = await database.list_collection_names()
            if self._collection_name in existing:
                log.info("collectionExists", extra={"collection": self._collection_name})
            else:
                log.info("collectionCreating", extra={"collection": self._collection_name})
                await database.create_collection(self._collection_name)

            pk = self._schema.primary_key.property
            await collection.create_index([(pk, ASCENDING)], unique=True, name=f"{pk}_pk")
            for prop in self._schema.properties:
                if prop.is_primary or not (prop.is_secondary or prop.sort_direction):
                    continue
                direction = DESCENDING if prop.sort_direction == SortDirection.DESCENDING else ASCENDING
                await collection.create_index([(prop.property, direction)], name=f"{prop.property}_idx")
            return True
        except PyMongoError as err:
            log.error(
                "collectionCreateFailed",
                extra={"collection": self._collection_name, "error": str(err)},
            )
            return False

    async def get(
        self,
        id: Any,
        secondary_index: str | None = None,
        conditions: Any = None,
    ) -> dict[str, Any] | None:
        check_secondary_index(self._schema, secondary_index)
        key = secondary_index or self._schema.primary_key.property
        document_filter = self._filter_for(key, id, conditions)
        try:
            return await self._collection().find_one(
                document_filter, self._filters.build_projection(None)
            )
        except PyMongoError as err:
            raise self._wrap(err, LookupFailedError, id) from err

    async def set(self, entity: dict[str, Any], conditions: Any = None) -> None:
        prepared = prepare_entity(self._schema, entity, self._undefined_mode)
        comparators = normalize_comparators(conditions)
        id = primary_key_of(self._schema, prepared)
        pk = self._schema.primary_key.property
        collection = self._collection()
        document = canonical_document(prepared)
        try:
            if not comparators:
                await collection.replace_one({pk: id}, document, upsert=True)
                return
            result = await collection.replace_one(
                self._filter_for(pk, id, comparators), document
            )
            if result.matched_count:
                return
            if await collection.count_documents({pk: id}, limit=1):
                logger.debug(
                    "Conditional set skipped",
                    extra={"collection": self._collection_name, "id": id},
                )
                return
            try:
                await collection.insert_one(document)
            except DuplicateKeyError:
                logger.debug(
                    "Conditional set skipped",
                    extra={"collection": self._collection_name, "id": id},
                )
        except PyMongoError as err:
            raise self._wrap(err, WriteFailedError, id) from err

    async def remove(self, id: Any, conditions: Any = None) -> None:
        document_filter = self._filter_for(self._schema.primary_key.property, id, conditions)
        try:
            await self._collection().delete_one(document_filter)
        except PyMongoError as err:
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
        document_filter = self._filters.build(condition_from_dict(conditions))
        sort = self._filters.build_sort(sort_from_dict(sort_properties))
        projection = self._filters.build_projection(properties)
        try:
            found = (
                self._collection()
                .find(document_filter, projection)
                .sort(sort)
                .skip(offset)
                .limit(size + 1)
            )
            documents = await found.to_list(length=size + 1)
        except PyMongoError as err:
            raise self._wrap(err, QueryFailedError) from err

        entities = documents[:size]
        if properties:
            entities = [pick(e, properties) for e in entities]
        return QueryResult(
            entities=entities,
            cursor=str(offset + size) if len(documents) > size else None,
        )

    async def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None
