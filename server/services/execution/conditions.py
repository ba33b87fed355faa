"""Condition evaluation for runtime conditional branching.

Evaluates ``{field, operator, value}`` conditions against a node output.
Used by conditional edges and by the ``condition`` node, so both share one
operator table.
"""

import re
from typing import Dict, Any, Callable, List

from core.logging import get_logger

logger = get_logger(__name__)


ConditionDict = Dict[str, Any]


def get_nested_value(data: Any, field_path: str) -> Any:
    """Get a nested value using dot notation.

    Args:
        data: Dict/list to extract value from
        field_path: Dot-separated path (e.g., "result.status", "items.0.name")

    Returns:
        Value at path or None if not found

    Examples:
        >>> get_nested_value({"result": {"status": "ok"}}, "result.status")
        'ok'
        >>> get_nested_value({"items": [{"name": "a"}]}, "items.0.name")
        'a'
    """
    if data is None:
        return None
    if not field_path:
        return data

    current = data
    for part in field_path.split('.'):
        if current is None:
            return None
        if isinstance(current, (list, tuple)):
            if not part.isdigit() or int(part) >= len(current):
                return None
            current = current[int(part)]
        elif isinstance(current, dict):
            current = current.get(part)
        else:
            return None

    return current


def _safe_compare(actual: Any, target: Any, comparator: Callable[[Any, Any], bool]) -> bool:
    """Compare numerically when both sides coerce to float, else as strings."""
    if actual is None or target is None:
        return False
    try:
        return comparator(float(actual), float(target))
    except (ValueError, TypeError):
        pass
    return comparator(str(actual), str(target))


def _contains(actual: Any, target: Any) -> bool:
    if actual is None:
        return False
    if isinstance(actual, str):
        return str(target) in actual
    if isinstance(actual, (list, tuple, dict)):
        return target in actual
    return False


def _is_empty(actual: Any) -> bool:
    if actual is None:
        return True
    if isinstance(actual, (str, list, dict, tuple)):
        return len(actual) == 0
    return False


def _matches(actual: Any, target: Any) -> bool:
    if actual is None or target is None:
        return False
    try:
        return bool(re.search(str(target), str(actual)))
    except re.error:
        logger.warning("Invalid regex pattern", pattern=target)
        return False


def _in(actual: Any, target: Any) -> bool:
    if not isinstance(target, (list, tuple)):
        return actual == target
    return actual in target


def _affix(method: str) -> Callable[[Any, Any], bool]:
    def check(actual: Any, target: Any) -> bool:
        if actual is None or target is None:
            return False
        return getattr(str(actual), method)(str(target))
    return check


_OPERATORS: Dict[str, Callable[[Any, Any], bool]] = {
    "eq": lambda a, t: a == t,
    "neq": lambda a, t: a != t,
    "gt": lambda a, t: _safe_compare(a, t, lambda x, y: x > y),
    "lt": lambda a, t: _safe_compare(a, t, lambda x, y: x < y),
    "gte": lambda a, t: _safe_compare(a, t, lambda x, y: x >= y),
    "lte": lambda a, t: _safe_compare(a, t, lambda x, y: x <= y),
    "contains": _contains,
    "not_contains": lambda a, t: not _contains(a, t),
    "exists": lambda a, t: a is not None,
    "not_exists": lambda a, t: a is None,
    "is_empty": lambda a, t: _is_empty(a),
    "is_not_empty": lambda a, t: not _is_empty(a),
    "matches": _matches,
    "in": _in,
    "not_in": lambda a, t: not _in(a, t),
    "starts_with": _affix("startswith"),
    "ends_with": _affix("endswith"),
    "is_true": lambda a, t: a is True or a == "true" or a == 1,
    "is_false": lambda a, t: a is False or a == "false" or a == 0,
}


def is_known_operator(operator: str) -> bool:
    return operator in _OPERATORS


def evaluate_condition(condition: ConditionDict, output: Any) -> bool:
    """Evaluate a condition against node output.

    Args:
        condition: ``{"field": "status", "operator": "eq", "value": "ok"}``
        output: Node execution output

    Returns:
        True if condition matches (an empty condition always matches)
    """
    if not condition:
        return True

    field = condition.get("field", "")
    operator = condition.get("operator", "eq")
    target = condition.get("value")

    check = _OPERATORS.get(operator)
    if check is None:
        logger.warning("Unknown operator", operator=operator)
        return False

    actual = get_nested_value(output, field)
    try:
        result = check(actual, target)
    except (TypeError, ValueError) as e:
        logger.warning("Condition evaluation error", field=field, operator=operator, error=str(e))
        return False

    logger.debug("Condition evaluated", field=field, operator=operator, result=result)
    return result


def evaluate_conditions(conditions: List[ConditionDict], output: Any,
                        logic: str = "and") -> bool:
    """Evaluate multiple conditions with AND/OR logic."""
    if not conditions:
        return True

    results = [evaluate_condition(c, output) for c in conditions]
    return any(results) if logic == "or" else all(results)


# Operator metadata for API clients
OPERATORS = {
    "eq": {"label": "Equals", "requires_value": True},
    "neq": {"label": "Not Equals", "requires_value": True},
    "gt": {"label": "Greater Than", "requires_value": True},
    "lt": {"label": "Less Than", "requires_value": True},
    "gte": {"label": "Greater or Equal", "requires_value": True},
    "lte": {"label": "Less or Equal", "requires_value": True},
    "contains": {"label": "Contains", "requires_value": True},
    "not_contains": {"label": "Does Not Contain", "requires_value": True},
    "exists": {"label": "Exists", "requires_value": False},
    "not_exists": {"label": "Does Not Exist", "requires_value": False},
    "is_empty": {"label": "Is Empty", "requires_value": False},
    "is_not_empty": {"label": "Is Not Empty", "requires_value": False},
    "matches": {"label": "Matches Regex", "requires_value": True},
    "in": {"label": "In List", "requires_value": True},
    "not_in": {"label": "Not In List", "requires_value": True},
    "starts_with": {"label": "Starts With", "requires_value": True},
    "ends_with": {"label": "Ends With", "requires_value": True},
    "is_true": {"label": "Is True", "requires_value": False},
    "is_false": {"label": "Is False", "requires_value": False},
}
