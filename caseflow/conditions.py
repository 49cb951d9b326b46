"""Evaluation of predicate conditions against instance variables."""

from __future__ import annotations

import logging
from typing import Any, Iterable, Mapping

from .contracts import Condition

logger = logging.getLogger(__name__)


def evaluate_condition(actual: Any, operator: str, expected: Any) -> bool:
    """Evaluate a single ``actual <operator> expected`` predicate."""
    if operator == "equals":
        return actual == expected
    if operator == "not_equals":
        return actual != expected
    if operator in ("greater_than", "less_than"):
        try:
            return actual > expected if operator == "greater_than" else actual < expected
        except TypeError:
            # Missing or incomparable values never satisfy an ordering check
            return False
    if operator == "contains":
        return str(expected) in str(actual) if actual is not None else False
    if operator == "not_contains":
        return str(expected) not in str(actual) if actual is not None else True
    if operator == "is_empty":
        return actual is None or actual == "" or actual == [] or actual == {}
    if operator == "is_not_empty":
        return not evaluate_condition(actual, "is_empty", None)
    logger.warning(f"Unknown condition operator '{operator}'")
    return False


def evaluate_conditions(
    conditions: Iterable[Condition], variables: Mapping[str, Any]
) -> bool:
    """Fold ``conditions`` left to right.

    Each condition's ``logic_gate`` decides how it combines with the next one.
    An empty list is always satisfied.
    """
    result = True
    gate = "AND"
    for condition in conditions:
        met = evaluate_condition(
            variables.get(condition.field), condition.operator, condition.value
        )
        result = (result and met) if gate == "AND" else (result or met)
        gate = condition.logic_gate
    return result
