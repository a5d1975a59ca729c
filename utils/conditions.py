"""
Condition evaluator for condition nodes.

Compares a flow variable against a literal. String operators are
case-insensitive; numeric operators parse both sides as floats and are
false when either side does not parse.
"""
from __future__ import annotations

from typing import Any, Callable, Optional

from models.schemas import ConditionConfig


def _to_float(value: str) -> Optional[float]:
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _numeric(compare: Callable[[float, float], bool]) -> Callable[[str, str], bool]:
    def fn(actual: str, expected: str) -> bool:
        a, b = _to_float(actual), _to_float(expected)
        if a is None or b is None:
            return False
        return compare(a, b)
    return fn


OPERATORS: dict[str, Callable[[str, str], bool]] = {
    "equals": lambda a, b: a.lower() == b.lower(),
    "contains": lambda a, b: b.lower() in a.lower(),
    "greater": _numeric(lambda a, b: a > b),
    "less": _numeric(lambda a, b: a < b),
}


def evaluate(operator: str, actual: Any, expected: Any) -> bool:
    """Apply a named operator. Unknown operators evaluate to False."""
    fn = OPERATORS.get(operator)
    if fn is None:
        return False
    return fn("" if actual is None else str(actual), "" if expected is None else str(expected))


def evaluate_condition(condition: ConditionConfig, variables: dict[str, str]) -> bool:
    """Evaluate a condition node's config against the flow variables."""
    return evaluate(condition.operator, variables.get(condition.variable, ""), condition.value)
