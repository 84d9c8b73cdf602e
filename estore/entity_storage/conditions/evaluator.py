"""
Reference evaluator for the condition model.

The in-memory and file connectors answer queries with these functions, and
every other connector is tested against them: ``query(C)`` must return
exactly the entities for which ``check_condition(e, C)`` is true.

Invariants:
    - Evaluation never raises for type mismatches; mismatched ordered
      comparisons are simply false
    - Missing properties compare as None
    - Sorting is stable; None sorts last in both directions
"""

from __future__ import annotations

import json
from collections.abc import Iterable, Sequence
from typing import Any

from ..schema.types import SortDirection
from .model import (
    Comparator,
    ComparisonOperator,
    Condition,
    ConditionGroup,
    LogicalOperator,
    SortProperty,
)


def get_property_value(entity: dict[str, Any] | None, path: str) -> Any:
    """Resolve a (possibly dotted) property path.

    Args:
        entity: The entity to read from
        path: Property name, e.g. "valueObject.name.value"

    Returns:
        The value, or None if any segment is missing
    """
    current: Any = entity
    for segment in path.split("."):
        if not isinstance(current, dict):
            return None
        current = current.get(segment)
    return current


def _is_subset(expected: dict[str, Any], actual: Any) -> bool:
    if not isinstance(actual, dict):
        return False
    for key, value in expected.items():
        if key not in actual:
            return False
        if isinstance(value, dict):
            if not _is_subset(value, actual[key]):
                return False
        elif actual[key] != value:
            return False
    return True


def _includes(actual: Any, expected: Any) -> bool:
    if isinstance(actual, str):
        return isinstance(expected, str) and expected in actual
    if isinstance(actual, list):
        if isinstance(expected, dict):
            return any(_is_subset(expected, item) for item in actual)
        return expected in actual
    return False


def _ordered(actual: Any, expected: Any, op: ComparisonOperator) -> bool:
    if actual is None or expected is None:
        return False
    try:
        if op == ComparisonOperator.GREATER_THAN:
            return actual > expected
        if op == ComparisonOperator.LESS_THAN:
            return actual < expected
        if op == ComparisonOperator.GREATER_THAN_OR_EQUAL:
            return actual >= expected
        return actual <= expected
    except TypeError:
        return False


def check_comparator(entity: dict[str, Any], comparator: Comparator) -> bool:
    """Check a single comparator against an entity."""
    actual = get_property_value(entity, comparator.property)
    expected = comparator.value
    op = comparator.comparison

    if op == ComparisonOperator.EQUALS:
        return actual == expected
    if op == ComparisonOperator.NOT_EQUALS:
        return actual != expected
    if op == ComparisonOperator.IN:
        return actual in list(expected or [])
    if op == ComparisonOperator.INCLUDES:
        return _includes(actual, expected)
    if op == ComparisonOperator.NOT_INCLUDES:
        return not _includes(actual, expected)
    return _ordered(actual, expected, op)


def check_condition(entity: dict[str, Any], condition: Condition | None) -> bool:
    """Check an entity against a condition tree.

    Args:
        entity: The entity to check
        condition: Comparator, group, or None (always true)

    Returns:
        True if the entity matches
    """
    if condition is None:
        return True
    if isinstance(condition, Comparator):
        return check_comparator(entity, condition)

    children = [c for c in condition.conditions if not (isinstance(c, ConditionGroup) and c.is_empty)]
    if not children:
        return True
    if condition.logical_operator == LogicalOperator.OR:
        return any(check_condition(entity, c) for c in children)
    return all(check_condition(entity, c) for c in children)


def check_conditions(entity: dict[str, Any] | None, comparators: Iterable[Comparator]) -> bool:
    """Check that an entity matches all comparators (AND)."""
    if entity is None:
        return False
    return all(check_comparator(entity, c) for c in comparators)


def _sort_key(value: Any) -> tuple[int, Any]:
    # Rank keeps mixed types comparable: bools, numbers, strings, everything else
    if isinstance(value, bool):
        return (0, int(value))
    if isinstance(value, (int, float)):
        return (1, value)
    if isinstance(value, str):
        return (2, value)
    return (3, json.dumps(value, sort_keys=True, default=str))


def sort_entities(
    entities: Sequence[dict[str, Any]],
    sort_properties: Sequence[SortProperty] | None,
) -> list[dict[str, Any]]:
    """Sort entities by one or more properties.

    Args:
        entities: Entities to sort
        sort_properties: Directives, most significant first

    Returns:
        A new sorted list
    """
    result = list(entities)
    if not sort_properties:
        return result

    # Stable sort from least to most significant directive
    for directive in reversed(list(sort_properties)):
        present = [e for e in result if get_property_value(e, directive.property) is not None]
        missing = [e for e in result if get_property_value(e, directive.property) is None]
        present.sort(
            key=lambda e, p=directive.property: _sort_key(get_property_value(e, p)),
            reverse=directive.sort_direction == SortDirection.DESCENDING,
        )
        result = present + missing
    return result


def pick(entity: dict[str, Any], properties: Sequence[str] | None) -> dict[str, Any]:
    """Project an entity to the named properties.

    Properties not present on the entity stay absent (never None).
    """
    if not properties:
        return dict(entity)
    return {p: entity[p] for p in properties if p in entity}
