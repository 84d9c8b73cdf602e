"""
Entity schema registry.

The EntitySchemaRegistry is the process-wide authority for entity schemas.
It provides:
- Registration of entity schemas by name
- Lookup by name for connectors, services and the sync engine
- Registry fingerprinting for consistency checks between nodes
- Freeze mechanism to prevent runtime modifications

Invariants:
    - Registry is mutable during startup, frozen before serving
    - Schema names are unique
    - Re-registering an identical schema is a no-op (module re-import)
    - Fingerprint changes when any schema changes

How to change safely:
    - Register schemas at module init, before connectors are created
    - Never modify a registered schema after freeze

Example:
    >>> registry = EntitySchemaRegistry()
    >>> registry.register(Item)
    >>> registry.get("Item").primary_key.property
    'id'
"""

from __future__ import annotations

import hashlib
import json
import logging
import threading
from collections.abc import Iterator

from ..errors import ConfigurationError
from .types import EntitySchema

logger = logging.getLogger(__name__)

# Global registry instance
_global_registry: EntitySchemaRegistry | None = None
_registry_lock = threading.Lock()


class RegistryFrozenError(ConfigurationError):
    """Raised when attempting to modify a frozen registry."""


class DuplicateRegistrationError(ConfigurationError):
    """Raised when a different schema is registered under an existing name."""


class EntitySchemaRegistry:
    """Registry of entity schemas keyed by name.

    Thread-safety:
        - Registration is thread-safe (uses internal lock)
        - Lookups after freeze are lock-free
        - Freeze is atomic and irreversible

    Attributes:
        frozen: Whether the registry is frozen (immutable)
        fingerprint: SHA-256 hash of all schemas (computed on freeze)
    """

    def __init__(self) -> None:
        """Initialize an empty, mutable registry."""
        self._schemas: dict[str, EntitySchema] = {}
        self._frozen = False
        self._fingerprint: str | None = None
        self._lock = threading.Lock()

    @property
    def frozen(self) -> bool:
        return self._frozen

    @property
    def fingerprint(self) -> str | None:
        return self._fingerprint

    def register(self, schema: EntitySchema) -> EntitySchema:
        """Register an entity schema.

        Args:
            schema: The schema to register

        Returns:
            The registered schema (the existing one when identical)

        Raises:
            RegistryFrozenError: If registry is frozen
            DuplicateRegistrationError: If a different schema uses the name
        """
        with self._lock:
            existing = self._schemas.get(schema.name)
            if existing is not None:
                if existing == schema:
                    return existing
                raise DuplicateRegistrationError(
                    f"Entity schema '{schema.name}' is already registered with a different definition"
                )

            if self._frozen:
                raise RegistryFrozenError(
                    f"Cannot register entity schema '{schema.name}': registry is frozen"
                )

            self._schemas[schema.name] = schema
            logger.debug(
                "Registered entity schema",
                extra={"schema": schema.name, "properties": len(schema.properties)},
            )
            return schema

    def get(self, name: str) -> EntitySchema:
        """Get a schema by name.

        Raises:
            ConfigurationError: If no schema is registered under the name
        """
        schema = self._schemas.get(name)
        if schema is None:
            raise ConfigurationError(
                f"Entity schema '{name}' is not registered", details={"schema": name}
            )
        return schema

    def get_if_exists(self, name: str) -> EntitySchema | None:
        return self._schemas.get(name)

    def names(self) -> list[str]:
        return sorted(self._schemas)

    def schemas(self) -> Iterator[EntitySchema]:
        yield from self._schemas.values()

    def freeze(self) -> str:
        """Freeze the registry and compute fingerprint.

        Returns:
            Registry fingerprint string

        Raises:
            RegistryFrozenError: If already frozen
        """
        with self._lock:
            if self._frozen:
                raise RegistryFrozenError("Registry is already frozen")

            self._fingerprint = self._compute_fingerprint()
            self._frozen = True
            logger.info(
                "Entity schema registry frozen",
                extra={"schemas": len(self._schemas), "fingerprint": self._fingerprint},
            )
            return self._fingerprint

    def _compute_fingerprint(self) -> str:
        canonical = json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":"))
        return f"sha256:{hashlib.sha256(canonical.encode('utf-8')).hexdigest()}"

    def to_dict(self) -> dict:
        """Convert registry to dictionary representation, sorted by name."""
        return {"schemas": [self._schemas[name].to_dict() for name in sorted(self._schemas)]}

    @classmethod
    def from_dict(cls, data: dict) -> EntitySchemaRegistry:
        registry = cls()
        for schema_data in data.get("schemas", []):
            registry.register(EntitySchema.from_dict(schema_data))
        return registry


def get_registry() -> EntitySchemaRegistry:
    """Get the global schema registry, creating it if none exists."""
    global _global_registry
    with _registry_lock:
        if _global_registry is None:
            _global_registry = EntitySchemaRegistry()
        return _global_registry


def register_schema(schema: EntitySchema) -> EntitySchema:
    """Register a schema in the global registry.

    Example:
        >>> ITEM_SCHEMA = register_schema(EntitySchema(name="Item", properties=(...)))
    """
    return get_registry().register(schema)


def freeze_registry() -> str:
    """Freeze the global registry.

    Returns:
        Registry fingerprint
    """
    return get_registry().freeze()


def reset_registry() -> None:
    """Reset the global registry (for testing only)."""
    global _global_registry
    with _registry_lock:
        _global_registry = None
