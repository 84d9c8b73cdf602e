"""
Expression builder for DynamoDB.

DynamoDB expressions reference attributes through a name map (``#n0``) and
values through a value map (``:v0``), so property paths and values never
appear in the expression text. Items use a constant partition key; the
primary key is the table range key and each sortable or secondary property
gets a global secondary index keyed on (partition, property).

Invariants:
    - Top-level AND Equals on the primary key (or the chosen index key)
      become key conditions; everything else is a filter
    - Values are marshalled to AttributeValue dicts by to_attribute_value
    - Element Includes with an object value is not expressible (contains()
      is exact on list elements) and raises UnsupportedComparisonError
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any

from ..conditions.model import (
    Comparator,
    ComparisonOperator,
    Condition,
    ConditionGroup,
    LogicalOperator,
    SortProperty,
)
from ..errors import GuardError, SortNotIndexedError, UnsupportedComparisonError
from ..schema.types import EntitySchema, PropertyType, SortDirection

PARTITION_KEY = "partitionId"
PARTITION_VALUE = "root"

_OPERATORS = {
    ComparisonOperator.EQUALS: "=",
    ComparisonOperator.GREATER_THAN: ">",
    ComparisonOperator.LESS_THAN: "<",
    ComparisonOperator.GREATER_THAN_OR_EQUAL: ">=",
    ComparisonOperator.LESS_THAN_OR_EQUAL: "<=",
}


def to_attribute_value(value: Any) -> dict[str, Any]:
    """Marshal a JSON-like value to a DynamoDB AttributeValue."""
    if value is None:
        return {"NULL": True}
    if isinstance(value, bool):
        return {"BOOL": value}
    if isinstance(value, (int, float, Decimal)):
        return {"N": str(value)}
    if isinstance(value, str):
        return {"S": value}
    if isinstance(value, (list, tuple)):
        return {"L": [to_attribute_value(v) for v in value]}
    if isinstance(value, dict):
        return {"M": {k: to_attribute_value(v) for k, v in value.items()}}
    raise GuardError("DynamoDb", "value", f"Cannot store value of type {type(value).__name__}")


def from_attribute_value(attribute: dict[str, Any]) -> Any:
    """Unmarshal a DynamoDB AttributeValue."""
    (kind, value), = attribute.items()
    if kind == "NULL":
        return None
    if kind == "BOOL":
        return value
    if kind == "N":
        return int(value) if value.lstrip("-").isdigit() else float(Decimal(value))
    if kind == "S":
        return value
    if kind == "L":
        return [from_attribute_value(v) for v in value]
    if kind == "M":
        return {k: from_attribute_value(v) for k, v in value.items()}
    if kind in ("SS", "NS"):
        return [from_attribute_value({kind[0]: v}) for v in value]
    raise GuardError("DynamoDb", "attribute", f"Unsupported attribute type '{kind}'")


def to_item(entity: dict[str, Any]) -> dict[str, Any]:
    """Marshal an entity into an item under the constant partition."""
    item = {k: to_attribute_value(v) for k, v in entity.items()}
    item[PARTITION_KEY] = {"S": PARTITION_VALUE}
    return item


def from_item(item: dict[str, Any]) -> dict[str, Any]:
    """Unmarshal an item, dropping the internal partition attribute."""
    return {k: from_attribute_value(v) for k, v in item.items() if k != PARTITION_KEY}


def index_name(property: str) -> str:
    return f"{property}Index"


@dataclass
class DynamoExpression:
    """Compiled expression parts for a Query request."""

    key_condition: str
    filter_expression: str | None = None
    names: dict[str, str] = field(default_factory=dict)
    values: dict[str, dict[str, Any]] = field(default_factory=dict)
    index_name: str | None = None
    scan_forward: bool = True

    def to_request(self) -> dict[str, Any]:
        request: dict[str, Any] = {
            "KeyConditionExpression": self.key_condition,
            "ExpressionAttributeNames": self.names,
            "ExpressionAttributeValues": self.values,
            "ScanIndexForward": self.scan_forward,
        }
        if self.filter_expression:
            request["FilterExpression"] = self.filter_expression
        if self.index_name:
            request["IndexName"] = self.index_name
        return request


class DynamoExpressionBuilder:
    """Builds key conditions and filter expressions for one schema."""

    backend = "dynamodb"

    def __init__(self, schema: EntitySchema) -> None:
        self.schema = schema

    def _name(self, path: str, names: dict[str, str]) -> str:
        parts = []
        for segment in path.split("."):
            if not segment:
                raise GuardError("DynamoExpressionBuilder", "property", f"Invalid property path '{path}'")
            existing = next((k for k, v in names.items() if v == segment), None)
            if existing is None:
                existing = f"#n{len(names)}"
                names[existing] = segment
            parts.append(existing)
        return ".".join(parts)

    def _value(self, value: Any, values: dict[str, dict[str, Any]]) -> str:
        placeholder = f":v{len(values)}"
        values[placeholder] = to_attribute_value(value)
        return placeholder

    def _coerce(self, comparator: Comparator, value: Any) -> Any:
        prop = self.schema.get_property(comparator.property)
        if prop is None or "." in comparator.property or value is None:
            return value
        if prop.type in (PropertyType.INTEGER, PropertyType.NUMBER) and isinstance(value, str):
            try:
                return Decimal(value)
            except ArithmeticError as err:
                raise GuardError("DynamoExpressionBuilder", "value", f"'{value}' is not a number") from err
        if prop.type == PropertyType.STRING and not isinstance(value, str):
            return str(value)
        return value

    def compile_comparator(
        self,
        comparator: Comparator,
        names: dict[str, str],
        values: dict[str, dict[str, Any]],
    ) -> str:
        """Compile one comparator to an expression fragment.

        Raises:
            UnsupportedComparisonError: For element Includes with an object value
        """
        name = self._name(comparator.property, names)
        op = comparator.comparison
        value = comparator.value

        if op in (ComparisonOperator.INCLUDES, ComparisonOperator.NOT_INCLUDES):
            if isinstance(value, (dict, list)):
                raise UnsupportedComparisonError(self.backend, op.value, comparator.property)
            clause = f"contains({name}, {self._value(value, values)})"
            return f"(NOT {clause})" if op == ComparisonOperator.NOT_INCLUDES else clause

        if op == ComparisonOperator.IN:
            items = [self._coerce(comparator, v) for v in value]
            if not items:
                # Never true
                return f"(attribute_exists({name}) AND attribute_not_exists({name}))"
            placeholders = ", ".join(self._value(v, values) for v in items)
            return f"{name} IN ({placeholders})"

        if value is None:
            if op == ComparisonOperator.EQUALS:
                null_type = self._value("NULL", values)
                return f"(attribute_not_exists({name}) OR attribute_type({name}, {null_type}))"
            if op == ComparisonOperator.NOT_EQUALS:
                null_type = self._value("NULL", values)
                return f"(attribute_exists({name}) AND NOT attribute_type({name}, {null_type}))"
            return f"(attribute_exists({name}) AND attribute_not_exists({name}))"

        placeholder = self._value(self._coerce(comparator, value), values)
        if op == ComparisonOperator.NOT_EQUALS:
            return f"(attribute_not_exists({name}) OR {name} <> {placeholder})"
        return f"{name} {_OPERATORS[op]} {placeholder}"

    def compile_filter(
        self,
        condition: Condition | None,
        names: dict[str, str],
        values: dict[str, dict[str, Any]],
    ) -> str:
        """Compile a condition tree to a filter expression ("" when empty)."""
        if condition is None:
            return ""
        if isinstance(condition, Comparator):
            return self.compile_comparator(condition, names, values)
        parts = [self.compile_filter(c, names, values) for c in condition.conditions]
        parts = [p for p in parts if p]
        if not parts:
            return ""
        joiner = " OR " if condition.logical_operator == LogicalOperator.OR else " AND "
        return "(" + joiner.join(parts) + ")"

    def _key_candidate(self, condition: Condition | None, key_property: str) -> Comparator | None:
        if isinstance(condition, Comparator):
            children: Sequence[Condition] = [condition]
        elif isinstance(condition, ConditionGroup) and condition.logical_operator == LogicalOperator.AND:
            children = condition.conditions
        else:
            return None
        for child in children:
            if (
                isinstance(child, Comparator)
                and child.property == key_property
                and child.comparison == ComparisonOperator.EQUALS
                and child.value is not None
            ):
                return child
        return None

    def _without(self, condition: Condition | None, removed: Comparator) -> Condition | None:
        if condition is removed:
            return None
        if isinstance(condition, ConditionGroup):
            return ConditionGroup(
                tuple(c for c in condition.conditions if c is not removed),
                condition.logical_operator,
            )
        return condition

    def build(
        self,
        condition: Condition | None,
        sort_properties: Sequence[SortProperty] | None = None,
        secondary_index: str | None = None,
    ) -> DynamoExpression:
        """Build a Query request for the constant partition.

        Args:
            condition: Caller conditions
            sort_properties: At most one directive, on a sortable property
            secondary_index: Force the index of this property (lookups)

        Raises:
            SortNotIndexedError: For multiple directives or an unindexed property
        """
        names: dict[str, str] = {"#pk": PARTITION_KEY}
        values: dict[str, dict[str, Any]] = {":pk": {"S": PARTITION_VALUE}}
        expression = DynamoExpression(key_condition="#pk = :pk", names=names, values=values)

        key_property = self.schema.primary_key.property
        if secondary_index:
            expression.index_name = index_name(secondary_index)
            key_property = secondary_index

        sorts = list(sort_properties or [])
        if len(sorts) > 1:
            raise SortNotIndexedError(self.backend, sorts[1].property)
        if sorts:
            prop = self.schema.get_property(sorts[0].property)
            if prop is None or prop not in self.schema.sortable_properties or "." in sorts[0].property:
                raise SortNotIndexedError(self.backend, sorts[0].property)
            if not prop.is_primary:
                expression.index_name = index_name(prop.property)
                key_property = prop.property
            expression.scan_forward = sorts[0].sort_direction != SortDirection.DESCENDING

        key = self._key_candidate(condition, key_property)
        if key is not None:
            expression.key_condition += " AND " + self.compile_comparator(key, names, values)
            condition = self._without(condition, key)

        expression.filter_expression = self.compile_filter(condition, names, values) or None
        return expression

    def build_projection(self, properties: Sequence[str] | None, names: dict[str, str]) -> str | None:
        """ProjectionExpression for the requested properties (None for all)."""
        if not properties:
            return None
        return ", ".join(self._name(p, names) for p in properties)

    def build_write_guard(
        self,
        conditions: Sequence[Comparator],
        names: dict[str, str],
        values: dict[str, dict[str, Any]],
    ) -> str | None:
        """ConditionExpression for a guarded put: match all, or no existing item."""
        if not conditions:
            return None
        pk = self._name(self.schema.primary_key.property, names)
        guard = " AND ".join(self.compile_comparator(c, names, values) for c in conditions)
        return f"(attribute_exists({pk}) AND {guard}) OR attribute_not_exists({pk})"

    def build_remove_guard(
        self,
        conditions: Sequence[Comparator],
        names: dict[str, str],
        values: dict[str, dict[str, Any]],
    ) -> str | None:
        """ConditionExpression for a guarded delete."""
        if not conditions:
            return None
        return " AND ".join(self.compile_comparator(c, names, values) for c in conditions)
