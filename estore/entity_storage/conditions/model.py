"""
Condition model for entity queries.

Conditions are a language-neutral predicate tree shared by every connector:
- Comparator: one property compared with a value
- ConditionGroup: an AND/OR composition of conditions
- SortProperty: one sort directive

The JSON form (used by the REST surface and stored snapshots) is:
    {"property": "value1", "comparison": "equals", "value": "aaa"}
    {"logicalOperator": "and", "conditions": [...]}

Invariants:
    - An empty group is always true
    - Property paths may be dotted to address nested object fields
    - A shorthand comparator without "comparison" means equals
    - A bare list of conditions means an AND group

How to change safely:
    - Add new comparison operators at the end and teach every compiler about
      them (or have the compiler raise UnsupportedComparisonError)
    - Never rename wire values
"""

from __future__ import annotations

from dataclasses import dataclass
from dataclasses import field as dataclass_field
from enum import Enum
from typing import Any, Union

from ..errors import GuardError
from ..schema.types import SortDirection


class ComparisonOperator(Enum):
    """Comparison operators for a Comparator."""

    EQUALS = "equals"
    NOT_EQUALS = "notEquals"
    GREATER_THAN = "greaterThan"
    LESS_THAN = "lessThan"
    GREATER_THAN_OR_EQUAL = "greaterThanOrEqual"
    LESS_THAN_OR_EQUAL = "lessThanOrEqual"
    IN = "in"
    INCLUDES = "includes"
    NOT_INCLUDES = "notIncludes"

    @classmethod
    def from_str(cls, value: str) -> ComparisonOperator:
        for op in cls:
            if op.value == value or op.name.lower() == value.lower():
                return op
        raise GuardError("Comparator", "comparison", f"Invalid comparison operator '{value}'")


class LogicalOperator(Enum):
    """Logical operators joining a ConditionGroup."""

    AND = "and"
    OR = "or"

    @classmethod
    def from_str(cls, value: str) -> LogicalOperator:
        lowered = value.lower()
        for op in cls:
            if op.value == lowered:
                return op
        raise GuardError("ConditionGroup", "logicalOperator", f"Invalid logical operator '{value}'")


@dataclass(frozen=True)
class Comparator:
    """A single property comparison.

    Attributes:
        property: Property name, dotted for nested object fields
        comparison: The comparison to perform
        value: The value to compare with (a list for IN)
    """

    property: str
    comparison: ComparisonOperator
    value: Any = None

    def __post_init__(self) -> None:
        if not self.property:
            raise GuardError("Comparator", "property")
        if self.comparison == ComparisonOperator.IN and not isinstance(self.value, (list, tuple)):
            raise GuardError("Comparator", "value", "The 'in' comparison requires a list value")

    def to_dict(self) -> dict[str, Any]:
        value = list(self.value) if isinstance(self.value, tuple) else self.value
        return {"property": self.property, "comparison": self.comparison.value, "value": value}


@dataclass(frozen=True)
class ConditionGroup:
    """A logical composition of conditions.

    Attributes:
        conditions: Child conditions (comparators or groups)
        logical_operator: How children are joined, AND by default
    """

    conditions: tuple[Condition, ...] = dataclass_field(default_factory=tuple)
    logical_operator: LogicalOperator = LogicalOperator.AND

    def to_dict(self) -> dict[str, Any]:
        return {
            "logicalOperator": self.logical_operator.value,
            "conditions": [c.to_dict() for c in self.conditions],
        }

    @property
    def is_empty(self) -> bool:
        return all(isinstance(c, ConditionGroup) and c.is_empty for c in self.conditions)


Condition = Union[Comparator, ConditionGroup]


@dataclass(frozen=True)
class SortProperty:
    """A sort directive.

    Attributes:
        property: Property to sort by
        sort_direction: Ascending or descending
    """

    property: str
    sort_direction: SortDirection = SortDirection.ASCENDING

    def to_dict(self) -> dict[str, Any]:
        return {"property": self.property, "sortDirection": self.sort_direction.value}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SortProperty:
        direction = data.get("sortDirection") or data.get("direction") or "asc"
        return cls(property=data["property"], sort_direction=SortDirection.from_str(direction))


def equals(property: str, value: Any) -> Comparator:
    return Comparator(property, ComparisonOperator.EQUALS, value)


def and_(*conditions: Condition) -> ConditionGroup:
    return ConditionGroup(tuple(conditions), LogicalOperator.AND)


def or_(*conditions: Condition) -> ConditionGroup:
    return ConditionGroup(tuple(conditions), LogicalOperator.OR)


def condition_from_dict(data: Any) -> Condition | None:
    """Parse the JSON form of a condition tree.

    Args:
        data: Dict, list of dicts, or None

    Returns:
        The parsed condition, or None when data is empty

    Raises:
        GuardError: If the structure is not a condition
    """
    if data is None:
        return None
    if isinstance(data, (Comparator, ConditionGroup)):
        return data
    if isinstance(data, list):
        children = [condition_from_dict(item) for item in data]
        return ConditionGroup(tuple(c for c in children if c is not None), LogicalOperator.AND)
    if not isinstance(data, dict):
        raise GuardError("Condition", "conditions", "Conditions must be an object or a list")

    if "conditions" in data:
        children = [condition_from_dict(item) for item in data.get("conditions") or []]
        operator = data.get("logicalOperator")
        return ConditionGroup(
            tuple(c for c in children if c is not None),
            LogicalOperator.from_str(operator) if operator else LogicalOperator.AND,
        )

    if "property" in data:
        comparison = data.get("comparison")
        return Comparator(
            property=data["property"],
            comparison=(
                ComparisonOperator.from_str(comparison) if comparison else ComparisonOperator.EQUALS
            ),
            value=data.get("value"),
        )

    raise GuardError("Condition", "conditions", "Condition requires 'property' or 'conditions'")


def normalize_comparators(conditions: Any) -> list[Comparator]:
    """Normalise the conditions argument of get/set/remove to a comparator list.

    Accepts None, a single comparator, a list of comparators, or their dict
    forms (including the ``{property, value}`` shorthand). Groups are
    flattened only when they are AND groups.
    """
    if conditions is None:
        return []
    parsed = condition_from_dict(conditions)
    if parsed is None:
        return []
    if isinstance(parsed, Comparator):
        return [parsed]
    if parsed.logical_operator != LogicalOperator.AND:
        raise GuardError(
            "Conditions", "conditions", "Write and lookup conditions must be combined with AND"
        )
    result: list[Comparator] = []
    for child in parsed.conditions:
        result.extend(normalize_comparators(child))
    return result


def sort_from_dict(data: Any) -> list[SortProperty]:
    """Parse sort directives from their JSON form (list or single dict)."""
    if not data:
        return []
    if isinstance(data, dict):
        data = [data]
    return [s if isinstance(s, SortProperty) else SortProperty.from_dict(s) for s in data]
