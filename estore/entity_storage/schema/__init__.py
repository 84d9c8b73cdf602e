"""
Schema module for Entity Storage.

This module provides the entity metadata consumed everywhere:
- Type definitions (EntitySchema, EntitySchemaProperty, PropertyType)
- The process-wide schema registry

Invariants:
    - Exactly one primary key per schema
    - Schemas are values; the registry maps names to them
    - All schemas must be registered before connectors are created

How to change safely:
    - Add properties as optional
    - Never change a primary key once entities are stored
"""

from .registry import (
    DuplicateRegistrationError,
    EntitySchemaRegistry,
    RegistryFrozenError,
    freeze_registry,
    get_registry,
    register_schema,
    reset_registry,
)
from .types import (
    EntitySchema,
    EntitySchemaProperty,
    PropertyType,
    SortDirection,
    prop,
)

__all__ = [
    # Types
    "EntitySchema",
    "EntitySchemaProperty",
    "PropertyType",
    "SortDirection",
    "prop",
    # Registry
    "EntitySchemaRegistry",
    "DuplicateRegistrationError",
    "RegistryFrozenError",
    "get_registry",
    "register_schema",
    "freeze_registry",
    "reset_registry",
]
