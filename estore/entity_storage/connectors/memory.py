"""
In-memory entity storage connector.

This is the reference implementation of the connector contract:
- Unit and integration tests
- The behavioural oracle for every other connector
- Local development without external dependencies

Invariants:
    - All data is lost on process exit
    - Stored entities are deep copies; callers never share state with the store
    - Queries use the reference evaluator, so this connector defines the
      expected results for all others

How to change safely:
    - Keep interface compatible with the EntityStorageConnector protocol
    - Any behaviour change here is a contract change for every backend
"""

from __future__ import annotations

import asyncio
import copy
import logging
from collections.abc import Sequence
from typing import Any

from ..conditions.evaluator import check_condition, pick, sort_entities
from ..conditions.model import (
    Condition,
    SortProperty,
    condition_from_dict,
    normalize_comparators,
    sort_from_dict,
)
from ..schema.types import EntitySchema
from .base import (
    QueryResult,
    UndefinedPropertyMode,
    bootstrap_logger,
    check_secondary_index,
    comparators_match,
    parse_offset_cursor,
    prepare_entity,
    primary_key_of,
    resolve_page_size,
)

logger = logging.getLogger(__name__)


class MemoryEntityStorageConnector:
    """In-memory implementation of EntityStorageConnector.

    Entities are kept in insertion order, keyed by primary key.

    Thread safety:
        Uses an asyncio lock around every mutation and snapshot read. Safe
        to use from multiple coroutines.

    Example:
        >>> connector = MemoryEntityStorageConnector(schema)
        >>> await connector.set({"id": "1", "value1": "aaa"})
        >>> (await connector.query()).entities
        [{'id': '1', 'value1': 'aaa'}]
    """

    def __init__(
        self,
        schema: EntitySchema,
        undefined_mode: UndefinedPropertyMode = UndefinedPropertyMode.REMOVE,
    ) -> None:
        """Initialize the connector.

        Args:
            schema: Schema of the stored entities
            undefined_mode: Treatment of undefined values on write
        """
        self._schema = schema
        self._undefined_mode = undefined_mode
        self._store: dict[Any, dict[str, Any]] = {}
        self._lock = asyncio.Lock()

    async def bootstrap(self, logger_name: str | None = None) -> bool:
        """Nothing to create; always ready."""
        bootstrap_logger(logger_name, logger).debug(
            "Memory store ready", extra={"schema": self._schema.name}
        )
        return True

    def get_schema(self) -> EntitySchema:
        return self._schema

    def _find(self, id: Any, secondary_index: str | None) -> dict[str, Any] | None:
        if secondary_index is None:
            return self._store.get(id)
        return next(
            (e for e in self._store.values() if e.get(secondary_index) == id),
            None,
        )

    async def get(
        self,
        id: Any,
        secondary_index: str | None = None,
        conditions: Any = None,
    ) -> dict[str, Any] | None:
        check_secondary_index(self._schema, secondary_index)
        comparators = normalize_comparators(conditions)
        async with self._lock:
            entity = self._find(id, secondary_index)
            if entity is None or not comparators_match(entity, comparators):
                return None
            return copy.deepcopy(entity)

    async def set(self, entity: dict[str, Any], conditions: Any = None) -> None:
        prepared = prepare_entity(self._schema, entity, self._undefined_mode)
        comparators = normalize_comparators(conditions)
        id = primary_key_of(self._schema, prepared)
        async with self._lock:
            existing = self._store.get(id)
            if existing is not None and comparators and not comparators_match(existing, comparators):
                logger.debug(
                    "Conditional set skipped",
                    extra={"schema": self._schema.name, "id": id},
                )
                return
            self._store[id] = copy.deepcopy(prepared)

    async def remove(self, id: Any, conditions: Any = None) -> None:
        comparators = normalize_comparators(conditions)
        async with self._lock:
            existing = self._store.get(id)
            if existing is None:
                return
            if comparators and not comparators_match(existing, comparators):
                return
            del self._store[id]

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
        condition = condition_from_dict(conditions)
        async with self._lock:
            matched = [e for e in self._store.values() if check_condition(e, condition)]
        ordered = sort_entities(matched, sort_from_dict(sort_properties))
        page = ordered[offset:offset + size]
        next_offset = offset + size
        return QueryResult(
            entities=[copy.deepcopy(pick(e, properties)) for e in page],
            cursor=str(next_offset) if next_offset < len(ordered) else None,
        )

    async def close(self) -> None:
        """Nothing to release."""

    # Testing helpers

    def get_store(self) -> list[dict[str, Any]]:
        """All stored entities in insertion order (copies)."""
        return [copy.deepcopy(e) for e in self._store.values()]

    def clear(self) -> None:
        self._store.clear()
