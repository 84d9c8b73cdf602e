"""
Condition model and reference evaluator.

Invariants:
    - Every connector accepts the same Condition tree
    - The evaluator in this package is the behavioural oracle for connectors
"""

from .evaluator import (
    check_comparator,
    check_condition,
    check_conditions,
    get_property_value,
    pick,
    sort_entities,
)
from .model import (
    Comparator,
    ComparisonOperator,
    Condition,
    ConditionGroup,
    LogicalOperator,
    SortProperty,
    and_,
    condition_from_dict,
    equals,
    normalize_comparators,
    or_,
    sort_from_dict,
)

__all__ = [
    # Model
    "Comparator",
    "ComparisonOperator",
    "Condition",
    "ConditionGroup",
    "LogicalOperator",
    "SortProperty",
    "and_",
    "or_",
    "equals",
    "condition_from_dict",
    "normalize_comparators",
    "sort_from_dict",
    # Evaluator
    "check_comparator",
    "check_condition",
    "check_conditions",
    "get_property_value",
    "pick",
    "sort_entities",
]
