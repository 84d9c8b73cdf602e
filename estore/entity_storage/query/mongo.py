"""
Filter builder for document stores (MongoDB).

Translates a Condition tree into a MongoDB filter document and sort
directives into a sort specification. Values are embedded as BSON values,
never as query text, so the only validation needed is on field names.

Invariants:
    - Field paths never start with "$" (operator injection)
    - Missing fields behave as in the reference evaluator: $ne and $nor
      match documents without the field
    - Element Includes on objects matches when the object is a subset of an
      array element ($elemMatch over the flattened keys)
    - Object values are compared in canonical_document form (sorted keys),
      the form the connector stores
"""

from __future__ import annotations

import re
from collections.abc import Sequence
from typing import Any

from ..conditions.model import (
    Comparator,
    ComparisonOperator,
    Condition,
    LogicalOperator,
    SortProperty,
)
from ..errors import GuardError
from ..schema.types import EntitySchema, PropertyType, SortDirection
from .compiler import flatten_object

_OPERATORS = {
    ComparisonOperator.NOT_EQUALS: "$ne",
    ComparisonOperator.GREATER_THAN: "$gt",
    ComparisonOperator.LESS_THAN: "$lt",
    ComparisonOperator.GREATER_THAN_OR_EQUAL: "$gte",
    ComparisonOperator.LESS_THAN_OR_EQUAL: "$lte",
}


def canonical_document(value: Any) -> Any:
    """Sort object keys recursively.

    MongoDB compares embedded documents field by field in stored order, so
    stored entities and compared values both use sorted keys.
    """
    if isinstance(value, dict):
        return {key: canonical_document(value[key]) for key in sorted(value)}
    if isinstance(value, list):
        return [canonical_document(item) for item in value]
    return value


class MongoFilterBuilder:
    """Builds MongoDB filters for one schema.

    Example:
        >>> MongoFilterBuilder(schema).build(equals("valueObject.name.value", "bob"))
        {'valueObject.name.value': 'bob'}
    """

    backend = "mongodb"

    def __init__(self, schema: EntitySchema) -> None:
        self.schema = schema

    def _field(self, path: str) -> str:
        segments = path.split(".")
        if any(not s or s.startswith("$") for s in segments):
            raise GuardError("MongoFilterBuilder", "property", f"Invalid property path '{path}'")
        return path

    def _includes(self, comparator: Comparator) -> dict[str, Any]:
        field = self._field(comparator.property)
        value = canonical_document(comparator.value)
        prop = self.schema.get_property(comparator.property)
        declared = prop.type if prop is not None and "." not in comparator.property else None

        if isinstance(value, dict):
            flat = {".".join(path): leaf for path, leaf in flatten_object(value)}
            return {field: {"$elemMatch": flat}}

        element = {field: {"$elemMatch": {"$eq": value}}}
        if not isinstance(value, str) or declared == PropertyType.ARRAY:
            return element
        substring = {field: {"$regex": re.escape(value)}}
        if declared == PropertyType.STRING:
            return substring
        return {"$or": [element, substring]}

    def _comparator(self, comparator: Comparator) -> dict[str, Any]:
        op = comparator.comparison
        if op == ComparisonOperator.INCLUDES:
            return self._includes(comparator)
        if op == ComparisonOperator.NOT_INCLUDES:
            return {"$nor": [self._includes(comparator)]}

        field = self._field(comparator.property)
        value = canonical_document(comparator.value)
        if op == ComparisonOperator.EQUALS:
            return {field: value}
        if op == ComparisonOperator.IN:
            return {field: {"$in": list(value)}}
        if value is None and op != ComparisonOperator.NOT_EQUALS:
            # Ordered comparison with null never matches
            return {"$expr": False}
        return {field: {_OPERATORS[op]: value}}

    def build(self, condition: Condition | None) -> dict[str, Any]:
        """Build a filter document ({} matches everything)."""
        if condition is None:
            return {}
        if isinstance(condition, Comparator):
            return self._comparator(condition)

        parts = [self.build(child) for child in condition.conditions]
        parts = [p for p in parts if p]
        if not parts:
            return {}
        if len(parts) == 1:
            return parts[0]
        key = "$or" if condition.logical_operator == LogicalOperator.OR else "$and"
        return {key: parts}

    def build_sort(self, sort_properties: Sequence[SortProperty] | None) -> list[tuple[str, int]]:
        """Sort specification with the primary key as final tiebreaker."""
        pk = self.schema.primary_key.property
        spec = [
            (
                self._field(s.property),
                -1 if s.sort_direction == SortDirection.DESCENDING else 1,
            )
            for s in sort_properties or []
        ]
        if all(field != pk for field, _ in spec):
            spec.append((pk, 1))
        return spec

    def build_projection(self, properties: Sequence[str] | None) -> dict[str, int]:
        """Projection document; always excludes the internal _id."""
        projection = {"_id": 0}
        for name in properties or []:
            projection[self._field(name)] = 1
        return projection
