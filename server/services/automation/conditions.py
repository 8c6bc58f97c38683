"""Condition evaluation for branch and filter nodes.

Evaluates a condition tree against a run's context snapshot.

Tree shape:
- Group: {"operator": "and" | "or", "children": [...]}
- Leaf:  {"operator": "equals", "field": "order.total", "value": 100}

Supported leaf operators:
- equals / not_equals: Python equality (booleans never equal numbers)
- gt / gte / lt / lte: numbers against numbers, or strings against strings
- contains / not_contains: substring, list element or dict key
- in / not_in: value is in the given list
- starts_with / ends_with: string prefix/suffix
- exists / not_exists: field is present and not None

Evaluation never raises. A missing field fails every operator except not_exists.
Unknown operators, malformed nodes and type mismatches evaluate to False.
"""

from dataclasses import dataclass
from numbers import Real
from typing import Dict, Any, Optional, List

from core.logging import get_logger

logger = get_logger(__name__)


# Type alias for condition dict
ConditionDict = Dict[str, Any]

GROUP_OPERATORS = ("and", "or")


@dataclass(frozen=True)
class ComparisonOptions:
    """How leaf operands are compared.

    Strict by default: case-sensitive strings and no string-to-number parsing.
    """
    case_sensitive: bool = True
    coerce_numbers: bool = False

    @classmethod
    def from_settings(cls, settings) -> "ComparisonOptions":
        return cls(
            case_sensitive=settings.condition_case_sensitive,
            coerce_numbers=settings.condition_coerce_numbers,
        )


STRICT = ComparisonOptions()


def get_nested_value(data: Dict[str, Any], field_path: str) -> Any:
    """Get a nested value from a dictionary using dot notation.

    Args:
        data: Dictionary to extract value from
        field_path: Dot-separated path (e.g., "order.total", "items.0.sku")

    Returns:
        Value at path or None if not found

    Examples:
        >>> get_nested_value({"order": {"total": 10}}, "order.total")
        10
        >>> get_nested_value({"items": [{"sku": "a"}]}, "items.0.sku")
        "a"
    """
    if not data or not field_path:
        return None

    current = data

    for part in field_path.split('.'):
        if current is None:
            return None

        # Dict keys take precedence so numeric keys still resolve
        if isinstance(current, dict):
            current = current.get(part)
        elif part.isdigit() and isinstance(current, (list, tuple)):
            index = int(part)
            current = current[index] if index < len(current) else None
        else:
            return None

    return current


def evaluate(conditions: Optional[ConditionDict], context: Dict[str, Any],
             options: ComparisonOptions = STRICT) -> bool:
    """Evaluate a condition tree against a context record.

    Args:
        conditions: Group or leaf dict; None (or empty) is vacuously true
        context: Run context snapshot
        options: Comparison options

    Returns:
        True if the tree matches, False otherwise
    """
    if not conditions:
        return True

    if not isinstance(conditions, dict):
        logger.warning("Malformed condition node", node_type=type(conditions).__name__)
        return False

    operator = conditions.get("operator")

    if operator in GROUP_OPERATORS:
        children = conditions.get("children", [])
        if not isinstance(children, list):
            logger.warning("Condition group children must be a list", operator=operator)
            return False
        # Generators keep all()/any() short-circuiting
        results = (_evaluate_child(c, context, options) for c in children)
        return all(results) if operator == "and" else any(results)

    return evaluate_condition(conditions, context, options)


def _evaluate_child(child: Any, context: Dict[str, Any], options: ComparisonOptions) -> bool:
    # An empty child is malformed, not vacuously true
    if not child:
        logger.warning("Empty condition in group")
        return False
    return evaluate(child, context, options)


def evaluate_condition(condition: ConditionDict, context: Dict[str, Any],
                       options: ComparisonOptions = STRICT) -> bool:
    """Evaluate a single leaf condition.

    Args:
        condition: Leaf dict with field, operator, value
        context: Run context snapshot
        options: Comparison options

    Returns:
        True if condition matches, False otherwise
    """
    field = condition.get("field")
    operator = condition.get("operator")
    target_value = condition.get("value")

    if not isinstance(field, str) or not field:
        logger.warning("Condition leaf without field", operator=operator)
        return False

    if operator not in OPERATORS:
        logger.warning("Unknown operator", operator=operator, field=field)
        return False

    actual_value = get_nested_value(context, field)

    if actual_value is None:
        return operator == "not_exists"

    try:
        result = _evaluate_operator(
            operator,
            _normalize(actual_value, options),
            _normalize(target_value, options),
        )
        logger.debug("Condition result", field=field, operator=operator, result=result)
        return result
    except Exception as e:
        logger.warning("Condition evaluation error",
                      field=field,
                      operator=operator,
                      error=str(e))
        return False


def _normalize(value: Any, options: ComparisonOptions) -> Any:
    """Apply comparison options to an operand (recursing into lists)."""
    if isinstance(value, (list, tuple)):
        return [_normalize(v, options) for v in value]
    if not isinstance(value, str):
        return value
    if options.coerce_numbers:
        try:
            return float(value.strip())
        except ValueError:
            pass
    if not options.case_sensitive:
        return value.casefold()
    return value


def _is_number(value: Any) -> bool:
    return isinstance(value, Real) and not isinstance(value, bool)


def _equal(a: Any, b: Any) -> bool:
    """Equality that never treats True/False as 1/0."""
    if isinstance(a, bool) != isinstance(b, bool):
        return False
    return a == b


def _evaluate_operator(operator: str, actual: Any, target: Any) -> bool:
    """Evaluate a single operator on normalized operands.

    Args:
        operator: Operator name
        actual: Value from the context (never None here)
        target: Value from the condition

    Returns:
        Comparison result
    """
    # Equality operators
    if operator == "equals":
        return _equal(actual, target)

    elif operator == "not_equals":
        return not _equal(actual, target)

    # Ordering operators
    elif operator == "gt":
        return _safe_compare(actual, target, lambda a, b: a > b)

    elif operator == "gte":
        return _safe_compare(actual, target, lambda a, b: a >= b)

    elif operator == "lt":
        return _safe_compare(actual, target, lambda a, b: a < b)

    elif operator == "lte":
        return _safe_compare(actual, target, lambda a, b: a <= b)

    # String/list/dict contains
    elif operator == "contains":
        if isinstance(actual, str):
            return isinstance(target, str) and target in actual
        elif isinstance(actual, list):
            return any(_equal(item, target) for item in actual)
        elif isinstance(actual, dict):
            return isinstance(target, str) and target in actual
        return _mismatch(operator, actual, target)

    elif operator == "not_contains":
        if not isinstance(actual, (str, list, dict)):
            return _mismatch(operator, actual, target)
        return not _evaluate_operator("contains", actual, target)

    # List membership
    elif operator == "in":
        if not isinstance(target, list):
            return _mismatch(operator, actual, target)
        return any(_equal(actual, t) for t in target)

    elif operator == "not_in":
        if not isinstance(target, list):
            return _mismatch(operator, actual, target)
        return not any(_equal(actual, t) for t in target)

    # String prefix/suffix
    elif operator == "starts_with":
        if not isinstance(actual, str) or not isinstance(target, str):
            return _mismatch(operator, actual, target)
        return actual.startswith(target)

    elif operator == "ends_with":
        if not isinstance(actual, str) or not isinstance(target, str):
            return _mismatch(operator, actual, target)
        return actual.endswith(target)

    # Existence checks (missing values are handled by the caller)
    elif operator == "exists":
        return True

    elif operator == "not_exists":
        return False

    else:
        logger.warning("Unknown operator", operator=operator)
        return False


def _safe_compare(actual: Any, target: Any, comparator) -> bool:
    """Compare two numbers or two strings; anything else is a mismatch."""
    if _is_number(actual) and _is_number(target):
        return comparator(actual, target)
    if isinstance(actual, str) and isinstance(target, str):
        return comparator(actual, target)
    return _mismatch("compare", actual, target)


def _mismatch(operator: str, actual: Any, target: Any) -> bool:
    logger.debug("Condition type mismatch",
                operator=operator,
                actual_type=type(actual).__name__,
                target_type=type(target).__name__)
    return False


def validate_conditions(conditions: Optional[ConditionDict], path: str = "conditions") -> List[str]:
    """Check a condition tree's shape before it is saved.

    Args:
        conditions: Tree to check
        path: Location prefix used in problem messages

    Returns:
        List of problems, empty when the tree is well formed
    """
    if conditions is None or conditions == {}:
        return []
    if not isinstance(conditions, dict):
        return [f"{path}: must be an object"]

    operator = conditions.get("operator")
    if operator in GROUP_OPERATORS:
        children = conditions.get("children", [])
        if not isinstance(children, list):
            return [f"{path}.children: must be a list"]
        problems = []
        for i, child in enumerate(children):
            if not child:
                problems.append(f"{path}.children.{i}: empty condition")
            else:
                problems.extend(validate_conditions(child, f"{path}.children.{i}"))
        return problems

    problems = []
    if operator not in OPERATORS:
        problems.append(f"{path}: unknown operator {operator!r}")
    if not isinstance(conditions.get("field"), str) or not conditions.get("field"):
        problems.append(f"{path}: field is required")
    elif operator in OPERATORS and OPERATORS[operator] and "value" not in conditions:
        problems.append(f"{path}: operator {operator!r} requires a value")
    if operator in ("in", "not_in") and not isinstance(conditions.get("value"), list):
        problems.append(f"{path}: operator {operator!r} requires a list value")
    return problems


# Leaf operator -> whether it takes a value
OPERATORS = {
    "equals": True,
    "not_equals": True,
    "gt": True,
    "gte": True,
    "lt": True,
    "lte": True,
    "contains": True,
    "not_contains": True,
    "in": True,
    "not_in": True,
    "starts_with": True,
    "ends_with": True,
    "exists": False,
    "not_exists": False,
}
