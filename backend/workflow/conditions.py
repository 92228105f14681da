"""Condition evaluation for step pre-checks and conditional branches.

A condition list is a conjunction; each entry names a variable, an
operator and an optional comparison value:

    [{"variable": "status", "operator": "==", "value": "ready"},
     {"variable": "retries", "operator": "<", "value": 3}]

Unknown operators evaluate to True and only log a warning.
"""

from typing import Any, Iterable, Mapping, Optional

import structlog

from core.constants import OPERATOR_ALIASES, ConditionOperator
from workflow.models import Condition

logger = structlog.get_logger(__name__)

_MISSING = object()


def _as_number(value: Any) -> Optional[float]:
    """Coerce booleans, numbers and numeric strings to float."""
    if isinstance(value, bool):
        return 1.0 if value else 0.0
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return None
    return None


def loose_equals(left: Any, right: Any) -> bool:
    """Equality that lets numbers match their string or boolean forms.

    None only equals None.
    """
    if left is None or right is None:
        return left is None and right is None
    if left == right:
        return True
    numeric_types = (int, float, bool)
    if isinstance(left, numeric_types) or isinstance(right, numeric_types):
        a, b = _as_number(left), _as_number(right)
        return a is not None and b is not None and a == b
    return False


def _compare(left: Any, right: Any, op: ConditionOperator) -> bool:
    if left is None or right is None:
        return False
    if isinstance(left, str) and isinstance(right, str):
        a, b = left, right
    else:
        a, b = _as_number(left), _as_number(right)
        if a is None or b is None:
            return False
    if op == ConditionOperator.GREATER_THAN:
        return a > b
    return a < b


def _normalize_operator(operator: str) -> Optional[ConditionOperator]:
    if operator in OPERATOR_ALIASES:
        return OPERATOR_ALIASES[operator]
    try:
        return ConditionOperator(operator)
    except ValueError:
        return None


def evaluate_condition(condition: Any, scope: Mapping[str, Any]) -> bool:
    """Evaluate a single condition against a variable scope."""
    condition = Condition.from_dict(condition)
    raw = scope.get(condition.variable, _MISSING)
    value = None if raw is _MISSING else raw
    op = _normalize_operator(condition.operator)

    if op is None:
        logger.warning(
            "Unknown condition operator",
            operator=condition.operator,
            variable=condition.variable,
        )
        return True
    if op == ConditionOperator.EQUALS:
        return loose_equals(value, condition.value)
    if op == ConditionOperator.NOT_EQUALS:
        return not loose_equals(value, condition.value)
    if op in (ConditionOperator.GREATER_THAN, ConditionOperator.LESS_THAN):
        return _compare(value, condition.value, op)
    if op == ConditionOperator.CONTAINS:
        if value is None:
            return False
        return _to_text(condition.value) in _to_text(value)
    if op == ConditionOperator.EXISTS:
        return value is not None
    return value is None


def _to_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def evaluate_conditions(conditions: Optional[Iterable[Any]], scope: Mapping[str, Any]) -> bool:
    """Return True iff every condition holds. Empty or missing lists are True."""
    if not conditions:
        return True
    return all(evaluate_condition(c, scope) for c in conditions)
