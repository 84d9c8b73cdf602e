"""
Synchronised entity storage connector.

Wraps a backend connector so that every write made through it is captured
as a pending local change of the sync service. Reads pass straight through.

Invariants:
    - A write is captured only after the backend acknowledged it
    - A conditional write or remove whose guard did not match is not captured
    - Changes applied by the sync engine bypass this wrapper
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Any

from ..conditions.model import Condition, SortProperty
from ..connectors.base import EntityStorageConnector, QueryResult, primary_key_of
from ..errors import GuardError
from ..schema.types import EntitySchema
from .service import SynchronisedStorageService

logger = logging.getLogger(__name__)


class SynchronisedEntityStorageConnector:
    """EntityStorageConnector that feeds the sync service.

    Args:
        entity_connector: The wrapped backend connector
        sync_service: Service that prepares entities and captures changes

    Example:
        >>> connector = SynchronisedEntityStorageConnector(backend, sync_service)
        >>> await connector.set({"id": "1", "value1": "aaa"})  # stored and captured
    """

    def __init__(
        self,
        entity_connector: EntityStorageConnector,
        sync_service: SynchronisedStorageService,
    ) -> None:
        if entity_connector is None:
            raise GuardError("SynchronisedEntityStorageConnector", "entityConnector")
        self._connector = entity_connector
        self._sync = sync_service
        self._schema = entity_connector.get_schema()

    async def bootstrap(self, logger_name: str | None = None) -> bool:
        return await self._connector.bootstrap(logger_name)

    def get_schema(self) -> EntitySchema:
        return self._schema

    async def get(
        self,
        id: Any,
        secondary_index: str | None = None,
        conditions: Any = None,
    ) -> dict[str, Any] | None:
        return await self._connector.get(id, secondary_index, conditions)

    async def set(self, entity: dict[str, Any], conditions: Any = None) -> None:
        if not isinstance(entity, dict):
            raise GuardError(self._schema.name, "entity", "Entity must be an object")
        prepared = self._sync.prepare(dict(entity))
        await self._connector.set(prepared, conditions)
        if conditions:
            stored = await self._connector.get(primary_key_of(self._schema, prepared))
            if stored is None or stored.get("dateModified") != prepared["dateModified"]:
                logger.debug(
                    "Guarded set not applied, change not captured",
                    extra={"id": prepared.get(self._schema.primary_key.property)},
                )
                return
        await self._sync.sync_entity_set(prepared)

    async def remove(self, id: Any, conditions: Any = None) -> None:
        await self._connector.remove(id, conditions)
        if conditions and await self._connector.get(id) is not None:
            logger.debug("Guarded remove not applied, change not captured", extra={"id": id})
            return
        await self._sync.sync_entity_remove(id)

    async def query(
        self,
        conditions: Condition | None = None,
        sort_properties: Sequence[SortProperty] | None = None,
        properties: Sequence[str] | None = None,
        cursor: str | None = None,
        page_size: int | None = None,
    ) -> QueryResult:
        return await self._connector.query(conditions, sort_properties, properties, cursor, page_size)

    async def close(self) -> None:
        await self._connector.close()
