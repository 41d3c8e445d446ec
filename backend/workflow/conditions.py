"""Condition evaluator for step guards and routing rules.

Evaluates a leaf comparison or an AND/OR tree against the execution
variables. Missing data is a normal case, not an error: a missing field
makes every operator false except ``not_exists``.
"""

from typing import Any, Mapping, Union

from workflow.definitions import Condition, ConditionLike, ConditionOperator, LogicGroup
from workflow.expressions import MISSING, resolve_path


def _to_number(value: Any):
    """Coerce ints, floats and numeric strings; None for anything else."""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return value
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return None
    return None


def _contains(container: Any, item: Any):
    """Membership test. Returns None when the container type is unsupported."""
    if isinstance(container, str):
        return str(item) in container if item is not None else False
    if isinstance(container, (list, tuple, set)):
        return item in container
    if isinstance(container, dict):
        try:
            return item in container
        except TypeError:
            return False
    return None


class ConditionEvaluator:
    """Pure, deterministic evaluation of conditions."""

    @staticmethod
    def evaluate(condition: Union[ConditionLike, Mapping, None], variables: Mapping) -> bool:
        """Evaluate a condition or logic group against ``variables``.

        Plain dicts are accepted and parsed into condition models first.
        A ``None`` condition is always true.
        """
        if condition is None:
            return True
        if isinstance(condition, Mapping):
            condition = ConditionEvaluator.parse(condition)

        if isinstance(condition, LogicGroup):
            if condition.logic == "AND":
                # all() stops at the first false child
                return all(ConditionEvaluator.evaluate(c, variables) for c in condition.conditions)
            return any(ConditionEvaluator.evaluate(c, variables) for c in condition.conditions)

        return ConditionEvaluator._compare(condition, variables)

    @staticmethod
    def parse(data: Mapping) -> ConditionLike:
        if "logic" in data or "conditions" in data:
            return LogicGroup.model_validate(data)
        return Condition.model_validate(data)

    @staticmethod
    def _compare(condition: Condition, variables: Mapping) -> bool:
        actual = resolve_path(variables, condition.field)
        present = actual is not MISSING and actual is not None
        op = condition.operator

        if op == ConditionOperator.EXISTS:
            return present
        if op == ConditionOperator.NOT_EXISTS:
            return not present
        if not present:
            return False

        expected = condition.value

        if op == ConditionOperator.EQUALS:
            return actual == expected
        if op == ConditionOperator.NOT_EQUALS:
            return actual != expected

        if op in (ConditionOperator.CONTAINS, ConditionOperator.NOT_CONTAINS):
            found = _contains(actual, expected)
            if found is None:
                return False
            return found if op == ConditionOperator.CONTAINS else not found

        left, right = _to_number(actual), _to_number(expected)
        if left is None or right is None:
            return False
        if op == ConditionOperator.GREATER_THAN:
            return left > right
        if op == ConditionOperator.LESS_THAN:
            return left < right
        if op == ConditionOperator.GREATER_OR_EQUAL:
            return left >= right
        if op == ConditionOperator.LESS_OR_EQUAL:
            return left <= right
        return False


evaluate_condition = ConditionEvaluator.evaluate
