"""
Entity storage service.

A thin access layer over one connector that scopes every operation to the
caller's user identity and/or node identity:
- set() stamps the identities onto the stored entity
- get/remove/query add AND-conditions on the identities
- identities are stripped from every entity returned

Invariants:
    - The connector's schema is never mutated; identities are stored as
      extra (undeclared) properties
    - When both identities are disabled every operation passes through
    - Error kinds raised by the connector are never rewritten

How to change safely:
    - Identity property names are part of the stored data; renaming them
      orphans existing rows
"""

from __future__ import annotations

import copy
import logging
from collections.abc import Sequence
from typing import Any

from ..conditions.model import (
    Comparator,
    Condition,
    ConditionGroup,
    SortProperty,
    condition_from_dict,
    equals,
)
from ..connectors.base import EntityStorageConnector, QueryResult, check_secondary_index
from ..errors import GuardError, NotFoundError

logger = logging.getLogger(__name__)

USER_IDENTITY_PROPERTY = "userIdentity"
NODE_IDENTITY_PROPERTY = "nodeIdentity"


def _strip_identities(entity: dict[str, Any]) -> dict[str, Any]:
    # Identity properties are internal partition keys; results never carry them,
    # even when this service does not scope by them
    entity.pop(USER_IDENTITY_PROPERTY, None)
    entity.pop(NODE_IDENTITY_PROPERTY, None)
    return entity


class EntityStorageService:
    """Identity-scoped entity operations.

    Example:
        >>> service = EntityStorageService(connector, include_node_identity=False)
        >>> await service.set({"id": "1", "value1": "aaa"}, user_identity="did:user:alice")
        >>> await service.get("1", user_identity="did:user:alice")
        {'id': '1', 'value1': 'aaa'}
    """

    source = "EntityStorageService"

    def __init__(
        self,
        connector: EntityStorageConnector,
        include_user_identity: bool = True,
        include_node_identity: bool = True,
    ) -> None:
        self.connector = connector
        self.include_user_identity = include_user_identity
        self.include_node_identity = include_node_identity

    def _identity_conditions(
        self,
        user_identity: str | None,
        node_identity: str | None,
    ) -> list[Comparator]:
        """Equals conditions for the enabled identities.

        Raises:
            GuardError: If an enabled identity is missing
        """
        conditions: list[Comparator] = []
        if self.include_user_identity:
            if not user_identity:
                raise GuardError(self.source, "userIdentity")
            conditions.append(equals(USER_IDENTITY_PROPERTY, user_identity))
        if self.include_node_identity:
            if not node_identity:
                raise GuardError(self.source, "nodeIdentity")
            conditions.append(equals(NODE_IDENTITY_PROPERTY, node_identity))
        return conditions

    async def set(
        self,
        entity: dict[str, Any],
        user_identity: str | None = None,
        node_identity: str | None = None,
    ) -> None:
        """Store an entity stamped with the caller's identities.

        Raises:
            GuardError: If the entity is not an object or an identity is missing
        """
        if not isinstance(entity, dict):
            raise GuardError(self.source, "entity", "Entity must be an object")
        self._identity_conditions(user_identity, node_identity)

        stored = copy.deepcopy(entity)
        if self.include_user_identity:
            stored[USER_IDENTITY_PROPERTY] = user_identity
        if self.include_node_identity:
            stored[NODE_IDENTITY_PROPERTY] = node_identity
        await self.connector.set(stored)

    async def _find(
        self,
        id: Any,
        secondary_index: str | None,
        identity_conditions: list[Comparator],
    ) -> dict[str, Any] | None:
        if not identity_conditions:
            return await self.connector.get(id, secondary_index)
        key = secondary_index or self.connector.get_schema().primary_key.property
        result = await self.connector.query(
            ConditionGroup(tuple(identity_conditions) + (equals(key, id),)),
            page_size=1,
        )
        return result.entities[0] if result.entities else None

    async def get(
        self,
        id: Any,
        secondary_index: str | None = None,
        user_identity: str | None = None,
        node_identity: str | None = None,
    ) -> dict[str, Any]:
        """Get an entity by id, or by a secondary index value.

        Raises:
            GuardError: If id or an enabled identity is missing
            NotFoundError: If no entity matches within the caller's scope
        """
        if id is None or id == "":
            raise GuardError(self.source, "id")
        check_secondary_index(self.connector.get_schema(), secondary_index)
        conditions = self._identity_conditions(user_identity, node_identity)

        entity = await self._find(id, secondary_index, conditions)
        if entity is None:
            raise NotFoundError(self.source, str(id))
        return _strip_identities(entity)

    async def remove(
        self,
        id: Any,
        user_identity: str | None = None,
        node_identity: str | None = None,
    ) -> None:
        """Remove an entity owned by the caller.

        Raises:
            GuardError: If id or an enabled identity is missing
            NotFoundError: If no entity matches within the caller's scope
        """
        if id is None or id == "":
            raise GuardError(self.source, "id")
        conditions = self._identity_conditions(user_identity, node_identity)

        entity = await self._find(id, None, conditions)
        if entity is None:
            raise NotFoundError(self.source, str(id))
        pk = self.connector.get_schema().primary_key.property
        await self.connector.remove(entity[pk])
        logger.debug("Entity removed", extra={"id": entity[pk]})

    async def query(
        self,
        conditions: Condition | dict[str, Any] | list | None = None,
        sort_properties: Sequence[SortProperty] | None = None,
        properties: Sequence[str] | None = None,
        cursor: str | None = None,
        page_size: int | None = None,
        user_identity: str | None = None,
        node_identity: str | None = None,
    ) -> QueryResult:
        """Query entities within the caller's scope.

        The caller's conditions are nested inside an AND group together with
        the identity conditions.
        """
        scoped: list[Condition] = list(self._identity_conditions(user_identity, node_identity))
        caller = condition_from_dict(conditions)
        if caller is not None:
            scoped.append(caller)

        result = await self.connector.query(
            ConditionGroup(tuple(scoped)),
            sort_properties,
            properties,
            cursor,
            page_size,
        )
        result.entities = [_strip_identities(e) for e in result.entities]
        return result
