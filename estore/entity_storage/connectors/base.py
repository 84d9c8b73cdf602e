"""
Connector contract for Entity Storage backends.

This module defines the abstract interface every storage backend
implements. The contract is deliberately small:
- bootstrap(): idempotently create databases, tables and indexes
- get/set/remove: single-entity operations keyed by primary key
- query(): filtered, sorted, projected and paginated reads

Invariants:
    - set() is an upsert keyed by the primary key
    - A conditional set/remove whose guard does not match is a silent no-op
    - A set without an existing row ignores its conditions and inserts
    - remove() of a missing key succeeds
    - query() returns at most page_size entities; cursor is None when the
      last page has been returned
    - A cursor is only valid with the exact same conditions/sort/projection

How to change safely:
    - Add a connector by implementing the protocol and registering a
      factory under a new name; run the shared contract tests against it
    - Never widen the protocol without updating every connector
"""

from __future__ import annotations

import logging
from abc import abstractmethod
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from ..conditions.evaluator import check_conditions
from ..conditions.model import Comparator, Condition, SortProperty
from ..errors import ConfigurationError, GuardError, UndefinedPropertyError
from ..schema.types import EntitySchema

if TYPE_CHECKING:
    from ..config import ConnectorConfig

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 40


class _Undefined:
    """Sentinel for a property explicitly set to "no value"."""

    _instance: _Undefined | None = None

    def __new__(cls) -> _Undefined:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "UNDEFINED"

    def __bool__(self) -> bool:
        return False


UNDEFINED = _Undefined()


class UndefinedPropertyMode(Enum):
    """How a write treats UNDEFINED values (and None on optional properties).

    REMOVE drops the property, NULL stores an explicit null, REJECT raises
    UndefinedPropertyError.
    """

    REMOVE = "remove"
    NULL = "null"
    REJECT = "reject"

    @classmethod
    def from_str(cls, value: str) -> UndefinedPropertyMode:
        for mode in cls:
            if mode.value == value.lower():
                return mode
        raise ConfigurationError(f"Invalid undefined property mode '{value}'")


@dataclass
class QueryResult:
    """One page of query results.

    Attributes:
        entities: Matching entities, possibly projected
        cursor: Opaque continuation, None on the last page
    """

    entities: list[dict[str, Any]] = field(default_factory=list)
    cursor: str | None = None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"entities": self.entities}
        if self.cursor is not None:
            result["cursor"] = self.cursor
        return result


@runtime_checkable
class EntityStorageConnector(Protocol):
    """Protocol for entity storage backends.

    Durability contract:
        - set() and remove() return only after the backend acknowledged
        - set() followed by get() on the same instance observes the write

    Example:
        >>> connector = MemoryEntityStorageConnector(schema)
        >>> await connector.bootstrap()
        >>> await connector.set({"id": "1", "value1": "aaa", "value2": 35})
        >>> await connector.get("1")
        {'id': '1', 'value1': 'aaa', 'value2': 35}
    """

    @abstractmethod
    async def bootstrap(self, logger_name: str | None = None) -> bool:
        """Create backend artefacts if they do not exist.

        Args:
            logger_name: Logger that receives progress messages

        Returns:
            True when the backend is ready, False on unrecoverable error
        """
        ...

    @abstractmethod
    def get_schema(self) -> EntitySchema:
        """The schema of the entities this connector stores."""
        ...

    @abstractmethod
    async def get(
        self,
        id: Any,
        secondary_index: str | None = None,
        conditions: Any = None,
    ) -> dict[str, Any] | None:
        """Get an entity by primary key, or by a secondary index value.

        Args:
            id: Primary key value, or the secondary index value
            secondary_index: Name of a secondary index property
            conditions: Comparators the found entity must also match

        Returns:
            The entity, or None

        Raises:
            BackendUnavailableError: If the container is missing
            LookupFailedError: On other backend failures
        """
        ...

    @abstractmethod
    async def set(self, entity: dict[str, Any], conditions: Any = None) -> None:
        """Upsert an entity, optionally guarded by conditions.

        Raises:
            GuardError: If the entity is not valid for the schema
            WriteFailedError: On backend failures
        """
        ...

    @abstractmethod
    async def remove(self, id: Any, conditions: Any = None) -> None:
        """Remove an entity by primary key, optionally guarded by conditions.

        Raises:
            RemoveFailedError: On backend failures
        """
        ...

    @abstractmethod
    async def query(
        self,
        conditions: Condition | None = None,
        sort_properties: Sequence[SortProperty] | None = None,
        properties: Sequence[str] | None = None,
        cursor: str | None = None,
        page_size: int | None = None,
    ) -> QueryResult:
        """Query entities.

        Raises:
            UnsupportedComparisonError: If a comparison cannot be expressed
            SortNotIndexedError: If the backend cannot sort by a property
            QueryFailedError: On backend failures
        """
        ...

    @abstractmethod
    async def close(self) -> None:
        """Release the backend handle."""
        ...


def bootstrap_logger(logger_name: str | None, default: logging.Logger) -> logging.Logger:
    """Resolve the logger that receives bootstrap progress."""
    return logging.getLogger(logger_name) if logger_name else default


def resolve_page_size(page_size: int | None) -> int:
    if page_size is None:
        return DEFAULT_PAGE_SIZE
    if not isinstance(page_size, int) or isinstance(page_size, bool) or page_size <= 0:
        raise GuardError("EntityStorageConnector", "pageSize", "pageSize must be a positive integer")
    return page_size


def parse_offset_cursor(cursor: str | None) -> int:
    """Decode a decimal offset cursor.

    Raises:
        GuardError: If the cursor is not a non-negative integer
    """
    if not cursor:
        return 0
    try:
        offset = int(cursor)
    except (TypeError, ValueError) as err:
        raise GuardError("EntityStorageConnector", "cursor", f"Invalid cursor '{cursor}'") from err
    if offset < 0:
        raise GuardError("EntityStorageConnector", "cursor", f"Invalid cursor '{cursor}'")
    return offset


def primary_key_of(schema: EntitySchema, entity: dict[str, Any]) -> Any:
    """Extract the primary key value of an entity.

    Raises:
        GuardError: If the entity has no primary key value
    """
    if not isinstance(entity, dict):
        raise GuardError(schema.name, "entity", "Entity must be an object")
    value = entity.get(schema.primary_key.property)
    if value is None or value is UNDEFINED or value == "":
        raise GuardError(schema.name, schema.primary_key.property)
    return value


def prepare_entity(
    schema: EntitySchema,
    entity: dict[str, Any],
    mode: UndefinedPropertyMode = UndefinedPropertyMode.REMOVE,
) -> dict[str, Any]:
    """Validate an entity for writing and apply the undefined-property mode.

    Returns a copy; the caller's entity is never mutated.

    Raises:
        GuardError: If the primary key is missing or the entity is invalid
        UndefinedPropertyError: In REJECT mode, for an undefined value
    """
    primary_key_of(schema, entity)
    prepared: dict[str, Any] = {}
    for key, value in entity.items():
        prop = schema.get_property(key)
        undefined = value is UNDEFINED or (
            value is None and prop is not None and prop.optional and prop.property == key
        )
        if not undefined:
            prepared[key] = value
        elif mode == UndefinedPropertyMode.REJECT:
            raise UndefinedPropertyError(schema.name, key)
        elif mode == UndefinedPropertyMode.NULL:
            prepared[key] = None
    schema.validate_entity(prepared)
    return prepared


def check_secondary_index(schema: EntitySchema, secondary_index: str | None) -> None:
    """Guard that a lookup names a declared secondary index."""
    if secondary_index is None:
        return
    prop = schema.get_property(secondary_index)
    if prop is None or prop.property != secondary_index or not prop.is_secondary:
        raise GuardError(
            schema.name, "secondaryIndex", f"'{secondary_index}' is not a secondary index"
        )


ConnectorBuilder = Callable[..., EntityStorageConnector]


class ConnectorFactory:
    """Registry of connector builders keyed by name.

    Also carries named component instances (the trusted sync component) so
    that services can reference each other without import cycles.
    """

    def __init__(self) -> None:
        self._builders: dict[str, ConnectorBuilder] = {}
        self._components: dict[str, Any] = {}

    def register(self, name: str, builder: ConnectorBuilder) -> None:
        self._builders[name] = builder

    def unregister(self, name: str) -> None:
        self._builders.pop(name, None)

    def get(self, name: str) -> ConnectorBuilder:
        """Get a builder by name.

        Raises:
            ConfigurationError: If no builder is registered under the name
        """
        builder = self._builders.get(name)
        if builder is None:
            raise ConfigurationError(
                f"No connector registered as '{name}'",
                details={"name": name, "registered": sorted(self._builders)},
            )
        return builder

    def names(self) -> list[str]:
        return sorted(self._builders)

    def create(self, name: str, **kwargs: Any) -> EntityStorageConnector:
        connector = self.get(name)(**kwargs)
        logger.debug("Created connector", extra={"connector": name})
        return connector

    def register_component(self, name: str, component: Any) -> None:
        self._components[name] = component

    def get_component(self, name: str) -> Any:
        """Get a named component.

        Raises:
            ConfigurationError: If no component is registered under the name
        """
        if name not in self._components:
            raise ConfigurationError(
                f"No component registered as '{name}'", details={"name": name}
            )
        return self._components[name]

    def unregister_component(self, name: str) -> None:
        self._components.pop(name, None)


connector_factory = ConnectorFactory()


def create_connector(config: ConnectorConfig, schema: EntitySchema) -> EntityStorageConnector:
    """Factory function to create a connector from configuration.

    Args:
        config: Connector configuration (backend and its section)
        schema: Schema of the stored entities

    Returns:
        Appropriate EntityStorageConnector implementation

    Raises:
        ConfigurationError: If the backend is not supported or misconfigured
    """
    from ..config import ConnectorBackend

    mode = config.undefined_property_mode
    if config.backend == ConnectorBackend.MEMORY:
        from .memory import MemoryEntityStorageConnector

        return MemoryEntityStorageConnector(schema, undefined_mode=mode)
    if config.backend == ConnectorBackend.FILE:
        from .file import FileEntityStorageConnector

        return FileEntityStorageConnector(schema, config.file, undefined_mode=mode)
    if config.backend == ConnectorBackend.SQLITE:
        from .sqlite import SqliteEntityStorageConnector

        return SqliteEntityStorageConnector(schema, config.sqlite, undefined_mode=mode)
    if config.backend == ConnectorBackend.POSTGRES:
        from .postgres import PostgresEntityStorageConnector

        return PostgresEntityStorageConnector(schema, config.postgres, undefined_mode=mode)
    if config.backend == ConnectorBackend.MYSQL:
        from .mysql import MySqlEntityStorageConnector

        return MySqlEntityStorageConnector(schema, config.mysql, undefined_mode=mode)
    if config.backend == ConnectorBackend.MONGODB:
        from .mongodb import MongoEntityStorageConnector

        return MongoEntityStorageConnector(schema, config.mongodb, undefined_mode=mode)
    if config.backend == ConnectorBackend.DYNAMODB:
        from .dynamodb import DynamoDbEntityStorageConnector

        return DynamoDbEntityStorageConnector(schema, config.dynamodb, undefined_mode=mode)
    if config.backend == ConnectorBackend.SCYLLADB:
        from .scylladb import ScyllaDbEntityStorageConnector

        return ScyllaDbEntityStorageConnector(schema, config.scylladb, undefined_mode=mode)
    raise ConfigurationError(f"Unsupported connector backend: {config.backend}")


def comparators_match(entity: dict[str, Any] | None, comparators: Sequence[Comparator]) -> bool:
    """Whether an existing entity satisfies a write guard."""
    return check_conditions(entity, comparators)
