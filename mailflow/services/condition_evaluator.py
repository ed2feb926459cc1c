"""Evaluate workflow condition trees against a trigger payload.

A tree is ``{"operator": "AND" | "OR", "rules": [...]}``. Each rule is either
a nested group (it carries ``rules``) or a leaf ``{"field", "operator",
"value"}`` whose ``field`` is a dot-path into the payload. Evaluation
short-circuits; a missing tree always passes.
"""

import re
from functools import lru_cache
from typing import Any, Callable, Dict, Optional, Pattern

import structlog

from mailflow.core.exceptions import ValidationError
from mailflow.services.template import MISSING, resolve_path

logger = structlog.get_logger(__name__)


@lru_cache(maxsize=512)
def _compile(pattern: str) -> Pattern:
    return re.compile(pattern, re.IGNORECASE)


def _text(value: Any) -> str:
    return "" if value is None else str(value)


def _number(value: Any) -> Optional[float]:
    if isinstance(value, bool) or value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _greater(actual: Any, expected: Any) -> bool:
    left, right = _number(actual), _number(expected)
    return left is not None and right is not None and left > right


def _less(actual: Any, expected: Any) -> bool:
    left, right = _number(actual), _number(expected)
    return left is not None and right is not None and left < right


def _regex(actual: Any, expected: Any) -> bool:
    try:
        return _compile(_text(expected)).search(_text(actual)) is not None
    except re.error as e:
        logger.warning("Invalid condition pattern", pattern=expected, error=str(e))
        return False


def _is_empty(actual: Any, _expected: Any = None) -> bool:
    if actual is None:
        return True
    if isinstance(actual, (str, list, dict, tuple)):
        return len(actual) == 0
    return not actual


OPERATORS: Dict[str, Callable[[Any, Any], bool]] = {
    "equals": lambda actual, expected: actual == expected,
    "not_equals": lambda actual, expected: actual != expected,
    "contains": lambda actual, expected: _text(expected) in _text(actual),
    "not_contains": lambda actual, expected: _text(expected) not in _text(actual),
    "starts_with": lambda actual, expected: _text(actual).startswith(_text(expected)),
    "ends_with": lambda actual, expected: _text(actual).endswith(_text(expected)),
    "regex": _regex,
    "gt": _greater,
    "greater_than": _greater,
    "lt": _less,
    "less_than": _less,
    "is_empty": _is_empty,
    "is_not_empty": lambda actual, expected: not _is_empty(actual),
}


def evaluate_rule(rule: Dict[str, Any], payload: Any) -> bool:
    if "rules" in rule:
        return evaluate_conditions(rule, payload)

    handler = OPERATORS.get(rule.get("operator", ""))
    if handler is None:
        logger.warning("Unknown condition operator", operator=rule.get("operator"))
        return False

    actual = resolve_path(payload, rule.get("field", ""))
    if actual is MISSING:
        actual = None
    return handler(actual, rule.get("value"))


def evaluate_conditions(tree: Optional[Dict[str, Any]], payload: Any) -> bool:
    """True when ``tree`` is absent or holds for ``payload``."""
    if not tree or tree.get("rules") is None:
        return True

    operator = str(tree.get("operator") or "AND").upper()
    rules = tree["rules"]
    if operator == "AND":
        return all(evaluate_rule(rule, payload) for rule in rules)
    if operator == "OR":
        return any(evaluate_rule(rule, payload) for rule in rules)

    logger.warning("Unknown condition group operator", operator=operator)
    return False


def validate_conditions(tree: Optional[Dict[str, Any]]) -> None:
    """Check a tree's structure and compile its regex rules.

    Raises:
        ValidationError: On a malformed group or an invalid pattern.
    """
    if not tree:
        return
    if not isinstance(tree, dict) or not isinstance(tree.get("rules", []), list):
        raise ValidationError("Conditions must be a mapping with a list of rules")
    if str(tree.get("operator") or "AND").upper() not in ("AND", "OR"):
        raise ValidationError(f"Invalid condition group operator: {tree.get('operator')}")

    for rule in tree.get("rules", []):
        if not isinstance(rule, dict):
            raise ValidationError(f"Invalid condition rule: {rule!r}")
        if "rules" in rule:
            validate_conditions(rule)
            continue
        if rule.get("operator") not in OPERATORS:
            raise ValidationError(f"Unknown condition operator: {rule.get('operator')}")
        if not rule.get("field"):
            raise ValidationError("Condition rule is missing a field")
        if rule["operator"] == "regex":
            try:
                _compile(_text(rule.get("value")))
            except re.error as e:
                raise ValidationError(f"Invalid condition pattern {rule.get('value')!r}: {e}")
