"""
Core type definitions for the entity schema system.

This module defines the metadata every connector consumes:
- PropertyType: The storage type of a property
- EntitySchemaProperty: One property of an entity
- EntitySchema: The full definition of an entity

Invariants:
    - Every schema has exactly one primary key property
    - Property names are unique within a schema
    - Secondary indexes and sort hints are declared, never inferred
    - optional=False properties must be present on write

How to change safely:
    - Add new properties as optional so stored entities stay valid
    - Never change the type or primary key of an existing property
    - Wire names (to_dict/from_dict) are camelCase and append-only

Example:
    >>> from estore.entity_storage.schema.types import EntitySchema, prop
    >>> Item = EntitySchema(
    ...     name="Item",
    ...     properties=(
    ...         prop("id", "string", is_primary=True),
    ...         prop("value1", "string", is_secondary=True),
    ...         prop("value2", "integer", optional=True),
    ...     ),
    ... )
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass
from dataclasses import field as dataclass_field
from enum import Enum
from typing import Any

from ..errors import ConfigurationError, EntityValidationError


class PropertyType(Enum):
    """Supported property types.

    These map to column types in SQL backends and to validation rules.
    """

    STRING = "string"
    NUMBER = "number"
    INTEGER = "integer"
    BOOLEAN = "boolean"
    OBJECT = "object"
    ARRAY = "array"

    @classmethod
    def from_str(cls, value: str) -> PropertyType:
        """Convert string representation to PropertyType.

        Args:
            value: Wire name of the property type

        Returns:
            Corresponding PropertyType enum value

        Raises:
            ConfigurationError: If value is not a valid property type
        """
        for kind in cls:
            if kind.value == value:
                return kind
        valid = [k.value for k in cls]
        raise ConfigurationError(f"Invalid property type '{value}'. Valid types: {valid}")


class SortDirection(Enum):
    """Sort directions for sort hints and sort directives."""

    ASCENDING = "asc"
    DESCENDING = "desc"

    @classmethod
    def from_str(cls, value: str) -> SortDirection:
        lowered = value.lower()
        if lowered in ("asc", "ascending"):
            return cls.ASCENDING
        if lowered in ("desc", "descending"):
            return cls.DESCENDING
        raise ValueError(f"Invalid sort direction '{value}'")


_TYPE_CHECKS = {
    PropertyType.STRING: lambda v: isinstance(v, str),
    PropertyType.NUMBER: lambda v: isinstance(v, (int, float)) and not isinstance(v, bool),
    PropertyType.INTEGER: lambda v: isinstance(v, int) and not isinstance(v, bool),
    PropertyType.BOOLEAN: lambda v: isinstance(v, bool),
    PropertyType.OBJECT: lambda v: isinstance(v, dict),
    PropertyType.ARRAY: lambda v: isinstance(v, list),
}


@dataclass(frozen=True)
class EntitySchemaProperty:
    """Definition of a single property of an entity.

    Attributes:
        property: Property name (also the column/field name in backends)
        type: Storage type of the property
        format: Optional format hint (e.g. "date-time", "uuid", "json")
        item_type: Element type when type is ARRAY
        item_type_ref: Named schema of elements/objects, if any
        is_primary: Whether this is the primary key
        is_secondary: Whether this property is a secondary index
        sort_direction: Default sort direction hint, marks the property sortable
        optional: Whether the property may be absent on write

    Invariants:
        - A primary key is never optional
        - A primary key is a string or integer
    """

    property: str
    type: PropertyType
    format: str | None = None
    item_type: PropertyType | None = None
    item_type_ref: str | None = None
    is_primary: bool = False
    is_secondary: bool = False
    sort_direction: SortDirection | None = None
    optional: bool = False

    def __post_init__(self) -> None:
        """Validate property definition."""
        if not self.property:
            raise ConfigurationError("Property name cannot be empty")
        if self.is_primary and self.optional:
            raise ConfigurationError(f"Primary key '{self.property}' cannot be optional")
        if self.is_primary and self.type not in (PropertyType.STRING, PropertyType.INTEGER):
            raise ConfigurationError(
                f"Primary key '{self.property}' must be a string or integer property"
            )

    def validate_value(self, value: Any) -> tuple[bool, str | None]:
        """Validate a value against this property definition.

        Args:
            value: The value to validate

        Returns:
            Tuple of (is_valid, error_message)
        """
        if value is None:
            if not self.optional:
                return False, f"Property '{self.property}' is required"
            return True, None

        if not _TYPE_CHECKS[self.type](value):
            return False, (
                f"Property '{self.property}' expects {self.type.value}, "
                f"got {type(value).__name__}"
            )

        if self.type == PropertyType.ARRAY and self.item_type is not None:
            check = _TYPE_CHECKS[self.item_type]
            for index, item in enumerate(value):
                if not check(item):
                    return False, (
                        f"Property '{self.property}[{index}]' expects {self.item_type.value}"
                    )

        return True, None

    def to_dict(self) -> dict[str, Any]:
        """Convert to the camelCase wire representation."""
        result: dict[str, Any] = {"property": self.property, "type": self.type.value}
        if self.format:
            result["format"] = self.format
        if self.item_type:
            result["itemType"] = self.item_type.value
        if self.item_type_ref:
            result["itemTypeRef"] = self.item_type_ref
        if self.is_primary:
            result["isPrimary"] = True
        if self.is_secondary:
            result["isSecondary"] = True
        if self.sort_direction:
            result["sortDirection"] = self.sort_direction.value
        if self.optional:
            result["optional"] = True
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> EntitySchemaProperty:
        """Create from the camelCase wire representation."""
        return cls(
            property=data["property"],
            type=PropertyType.from_str(data["type"]),
            format=data.get("format"),
            item_type=PropertyType.from_str(data["itemType"]) if data.get("itemType") else None,
            item_type_ref=data.get("itemTypeRef"),
            is_primary=bool(data.get("isPrimary", False)),
            is_secondary=bool(data.get("isSecondary", False)),
            sort_direction=(
                SortDirection.from_str(data["sortDirection"]) if data.get("sortDirection") else None
            ),
            optional=bool(data.get("optional", False)),
        )


@dataclass(frozen=True)
class EntitySchema:
    """Definition of an entity.

    Attributes:
        name: Stable identifier of the entity
        properties: Ordered property definitions

    Invariants:
        - Exactly one property has is_primary=True
        - Property names are unique
    """

    name: str
    properties: tuple[EntitySchemaProperty, ...] = dataclass_field(default_factory=tuple)

    def __post_init__(self) -> None:
        """Validate schema definition."""
        if not self.name:
            raise ConfigurationError("Entity schema name cannot be empty")

        names = [p.property for p in self.properties]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise ConfigurationError(
                f"Entity schema '{self.name}' has duplicate properties: {duplicates}"
            )

        primaries = [p for p in self.properties if p.is_primary]
        if len(primaries) != 1:
            raise ConfigurationError(
                f"Entity schema '{self.name}' must have exactly one primary key, "
                f"found {len(primaries)}",
                details={"schema": self.name},
            )

    @property
    def primary_key(self) -> EntitySchemaProperty:
        """The primary key property."""
        return next(p for p in self.properties if p.is_primary)

    @property
    def secondary_indexes(self) -> tuple[EntitySchemaProperty, ...]:
        return tuple(p for p in self.properties if p.is_secondary)

    @property
    def sortable_properties(self) -> tuple[EntitySchemaProperty, ...]:
        """Properties declared with a sort hint, or indexed."""
        return tuple(
            p
            for p in self.properties
            if p.is_primary or p.is_secondary or p.sort_direction is not None
        )

    @property
    def property_names(self) -> tuple[str, ...]:
        return tuple(p.property for p in self.properties)

    def get_property(self, name: str) -> EntitySchemaProperty | None:
        """Get a property by name, resolving only the first segment of dotted paths."""
        root = name.split(".", 1)[0]
        for p in self.properties:
            if p.property == root:
                return p
        return None

    def has_property(self, name: str) -> bool:
        return self.get_property(name) is not None

    def validate_entity(self, entity: dict[str, Any]) -> None:
        """Validate an entity against the schema.

        Unknown properties are allowed (services store identity columns as
        extra properties), but declared properties must match their type.

        Args:
            entity: The entity to validate

        Raises:
            EntityValidationError: If the entity is invalid
        """
        if not isinstance(entity, dict):
            raise EntityValidationError(self.name, ["Entity must be an object"])

        errors = []
        for p in self.properties:
            valid, error = p.validate_value(entity.get(p.property))
            if not valid and error:
                errors.append(error)

        if errors:
            raise EntityValidationError(self.name, errors)

    def fingerprint(self) -> str:
        """Compute a stable fingerprint of the schema."""
        canonical = json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":"))
        return f"sha256:{hashlib.sha256(canonical.encode('utf-8')).hexdigest()}"

    def to_dict(self) -> dict[str, Any]:
        """Convert to the wire representation."""
        return {"name": self.name, "properties": [p.to_dict() for p in self.properties]}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> EntitySchema:
        """Create from the wire representation."""
        return cls(
            name=data["name"],
            properties=tuple(EntitySchemaProperty.from_dict(p) for p in data.get("properties", [])),
        )


def prop(
    name: str,
    type: str | PropertyType,
    *,
    is_primary: bool = False,
    is_secondary: bool = False,
    optional: bool = False,
    sort_direction: str | SortDirection | None = None,
    format: str | None = None,
    item_type: str | PropertyType | None = None,
    item_type_ref: str | None = None,
) -> EntitySchemaProperty:
    """Convenience factory for EntitySchemaProperty.

    Example:
        >>> prop("dateCreated", "string", format="date-time", sort_direction="asc")
    """
    kind = type if isinstance(type, PropertyType) else PropertyType.from_str(type)
    item_kind = (
        item_type
        if item_type is None or isinstance(item_type, PropertyType)
        else PropertyType.from_str(item_type)
    )
    direction = (
        sort_direction
        if sort_direction is None or isinstance(sort_direction, SortDirection)
        else SortDirection.from_str(sort_direction)
    )
    return EntitySchemaProperty(
        property=name,
        type=kind,
        format=format,
        item_type=item_kind,
        item_type_ref=item_type_ref,
        is_primary=is_primary,
        is_secondary=is_secondary,
        sort_direction=direction,
        optional=optional,
    )
