"""Row and output condition evaluation.

Used by the filter handlers (one condition list per row) and by the
condition node (one condition against an upstream output).

Operators use snake_case names; the camelCase names stored by the
workflow editor (equals, notEquals, greaterThan, ...) are accepted as
aliases.
"""

import re
from typing import Any, Callable, Dict, Iterable, List

from sheetflow.core.logging import get_logger

logger = get_logger(__name__)

ConditionDict = Dict[str, Any]


def get_nested_value(data: Any, field_path: str) -> Any:
    """Value at a dot-separated path ("result.status", "items.0.name"), or None."""
    if data is None or not field_path:
        return None

    current = data
    for part in field_path.split('.'):
        if current is None:
            return None
        if isinstance(current, dict):
            current = current.get(part)
        elif part.isdigit() and isinstance(current, (list, tuple)):
            index = int(part)
            current = current[index] if 0 <= index < len(current) else None
        else:
            return None
    return current


def _safe_compare(actual: Any, target: Any, comparator: Callable[[Any, Any], bool]) -> bool:
    """Numeric comparison when both sides parse as numbers, string comparison otherwise."""
    if actual is None or target is None:
        return False
    try:
        return comparator(float(actual), float(target))
    except (ValueError, TypeError):
        pass
    try:
        return comparator(str(actual), str(target))
    except (ValueError, TypeError):
        return False


def _loose_equals(actual: Any, target: Any) -> bool:
    if actual == target:
        return True
    if actual is None or target is None:
        return False
    try:
        return float(actual) == float(target)
    except (ValueError, TypeError):
        return str(actual) == str(target)


def _contains(actual: Any, target: Any) -> bool:
    if actual is None:
        return False
    if isinstance(actual, str):
        return str(target).lower() in actual.lower()
    if isinstance(actual, (list, tuple, dict)):
        return target in actual
    return str(target) in str(actual)


def _is_empty(actual: Any, _target: Any = None) -> bool:
    if actual is None:
        return True
    if isinstance(actual, str):
        return actual.strip() == ""
    if isinstance(actual, (list, tuple, dict)):
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
        return _loose_equals(actual, target)
    return any(_loose_equals(actual, item) for item in target)


_OPERATOR_FUNCS: Dict[str, Callable[[Any, Any], bool]] = {
    "eq": _loose_equals,
    "neq": lambda a, t: not _loose_equals(a, t),
    "gt": lambda a, t: _safe_compare(a, t, lambda x, y: x > y),
    "lt": lambda a, t: _safe_compare(a, t, lambda x, y: x < y),
    "gte": lambda a, t: _safe_compare(a, t, lambda x, y: x >= y),
    "lte": lambda a, t: _safe_compare(a, t, lambda x, y: x <= y),
    "contains": _contains,
    "not_contains": lambda a, t: not _contains(a, t),
    "exists": lambda a, t: a is not None,
    "not_exists": lambda a, t: a is None,
    "is_empty": _is_empty,
    "is_not_empty": lambda a, t: not _is_empty(a),
    "matches": _matches,
    "in": _in,
    "not_in": lambda a, t: not _in(a, t),
    "starts_with": lambda a, t: a is not None and t is not None and str(a).startswith(str(t)),
    "ends_with": lambda a, t: a is not None and t is not None and str(a).endswith(str(t)),
    "is_true": lambda a, t: a is True or a == "true" or a == 1,
    "is_false": lambda a, t: a is False or a == "false" or a == 0,
}

OPERATOR_ALIASES: Dict[str, str] = {
    "equals": "eq",
    "notEquals": "neq",
    "greaterThan": "gt",
    "lessThan": "lt",
    "greaterThanOrEqual": "gte",
    "lessThanOrEqual": "lte",
    "notContains": "not_contains",
    "isEmpty": "is_empty",
    "isNotEmpty": "is_not_empty",
    "startsWith": "starts_with",
    "endsWith": "ends_with",
}


def normalize_operator(operator: str) -> str:
    return OPERATOR_ALIASES.get(operator, operator)


def is_known_operator(operator: str) -> bool:
    return normalize_operator(operator) in _OPERATOR_FUNCS


def evaluate_condition(condition: ConditionDict, data: Any) -> bool:
    """Evaluate {"field", "operator", "value"} against a row or output dict.

    An empty condition always matches. Unknown operators never match.
    """
    if not condition:
        return True

    field = condition.get("field") or condition.get("column") or ""
    operator = normalize_operator(condition.get("operator", "eq"))
    target = condition.get("value")
    actual = get_nested_value(data, field)

    func = _OPERATOR_FUNCS.get(operator)
    if func is None:
        logger.warning("Unknown operator", operator=operator)
        return False
    try:
        return func(actual, target)
    except Exception as e:
        logger.warning("Condition evaluation error", field=field, operator=operator, error=str(e))
        return False


def evaluate_conditions(conditions: List[ConditionDict], data: Any, logic: str = "and") -> bool:
    """Combine several conditions with "and" (default) or "or"."""
    if not conditions:
        return True
    results = (evaluate_condition(c, data) for c in conditions)
    return any(results) if logic == "or" else all(results)


def filter_rows(rows: Iterable[Dict[str, Any]], conditions: List[ConditionDict],
                logic: str = "and") -> List[Dict[str, Any]]:
    return [row for row in rows if evaluate_conditions(conditions, row, logic)]


# Operator metadata for editors
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
