import json
import logging
import re
from typing import Any, Iterable

from autoflow.core.errors import ConditionEvaluationError
from autoflow.schemas.automation import Condition, ExecutionContext


logger = logging.getLogger("autoflow.engine")

_TEMPLATE_VAR_RE = re.compile(r"{{\s*([^{}]+?)\s*}}")


class _Missing:
    __slots__ = ()

    def __repr__(self) -> str:
        return "MISSING"

    def __bool__(self) -> bool:
        return False


MISSING: Any = _Missing()


def build_evaluation_data(trigger_data: dict[str, Any] | None, context: ExecutionContext | None) -> dict[str, Any]:
    data = dict(trigger_data or {})
    if context is not None:
        data.update(context.model_dump())
    return data


def resolve_path(container: Any, path: str) -> Any:
    """Walk a dot path through nested dicts and lists.

    Returns ``MISSING`` when any segment is absent so callers can tell an
    absent field apart from an explicit ``None``.
    """
    current: Any = container
    for part in _split_path(path):
        if isinstance(current, dict):
            if part not in current:
                return MISSING
            current = current[part]
            continue
        if isinstance(current, (list, tuple)):
            if not part.isdigit():
                return MISSING
            index = int(part)
            if index >= len(current):
                return MISSING
            current = current[index]
            continue
        return MISSING
    return current


def render_template(template: str, data: dict[str, Any]) -> str:
    def _replace(match: re.Match[str]) -> str:
        try:
            resolved = resolve_path(data, match.group(1))
        except ConditionEvaluationError:
            return match.group(0)
        if resolved is MISSING or resolved is None:
            return match.group(0)
        if isinstance(resolved, (dict, list)):
            return json.dumps(resolved, ensure_ascii=True, default=str)
        return _to_text(resolved)

    return _TEMPLATE_VAR_RE.sub(_replace, template)


def render_value(value: Any, data: dict[str, Any]) -> Any:
    if isinstance(value, str):
        return render_template(value, data)
    if isinstance(value, dict):
        return {key: render_value(item, data) for key, item in value.items()}
    if isinstance(value, list):
        return [render_value(item, data) for item in value]
    return value


def evaluate_conditions(conditions: Iterable[Condition], data: dict[str, Any]) -> bool:
    overall = True
    group_results: dict[str, bool] = {}

    for condition in conditions:
        matched = evaluate_condition(condition, data)
        if condition.group:
            if condition.group not in group_results:
                group_results[condition.group] = matched
            else:
                group_results[condition.group] = _combine(
                    group_results[condition.group], matched, condition.logical_operator
                )
        else:
            overall = _combine(overall, matched, condition.logical_operator)

    return overall and all(group_results.values())


def evaluate_condition(condition: Condition, data: dict[str, Any]) -> bool:
    try:
        actual = resolve_path(data, condition.field)
        return _condition_matches(actual, operator=condition.operator, expected=condition.value)
    except ConditionEvaluationError as exc:
        logger.debug(
            json.dumps(
                {
                    "event": "condition.invalid",
                    "field": condition.field,
                    "operator": condition.operator,
                    "error": str(exc),
                }
            )
        )
        return False


def _combine(left: bool, right: bool, logical_operator: str) -> bool:
    if logical_operator == "or":
        return left or right
    return left and right


def _split_path(path: str) -> list[str]:
    normalized = (path or "").strip()
    if normalized.startswith("$."):
        normalized = normalized[2:]
    if not normalized:
        raise ConditionEvaluationError("Empty field path")
    parts = normalized.split(".")
    if any(not part.strip() for part in parts):
        raise ConditionEvaluationError(f"Malformed field path '{path}'")
    return [part.strip() for part in parts]


def _condition_matches(actual: Any, *, operator: str, expected: Any) -> bool:
    if operator == "exists":
        return actual is not MISSING and actual is not None
    if operator == "not_exists":
        return actual is MISSING or actual is None

    if operator == "equals":
        return _strict_equals(actual, expected)
    if operator == "not_equals":
        return not _strict_equals(actual, expected)

    if operator in {"greater_than", "less_than"}:
        left = _to_number(actual)
        right = _to_number(expected)
        if left is None or right is None:
            return False
        if operator == "greater_than":
            return left > right
        return left < right

    if operator in {"contains", "starts_with", "ends_with"}:
        if actual is MISSING:
            return False
        if operator == "contains" and isinstance(actual, (list, tuple)):
            return any(_strict_equals(item, expected) for item in actual)
        left_text = _to_text(actual)
        right_text = _to_text(expected)
        if operator == "contains":
            return right_text in left_text
        if operator == "starts_with":
            return left_text.startswith(right_text)
        return left_text.endswith(right_text)

    if operator in {"in", "not_in"}:
        if not isinstance(expected, (list, tuple)):
            return False
        found = any(_strict_equals(actual, item) for item in expected)
        return found if operator == "in" else not found

    raise ConditionEvaluationError(f"Unsupported operator '{operator}'")


def _strict_equals(left: Any, right: Any) -> bool:
    if left is MISSING or right is MISSING:
        return left is right
    # True == 1 in Python; the condition language keeps booleans and numbers apart
    if isinstance(left, bool) != isinstance(right, bool):
        return False
    left_number = isinstance(left, (int, float)) and not isinstance(left, bool)
    right_number = isinstance(right, (int, float)) and not isinstance(right, bool)
    if left_number != right_number:
        return False
    return left == right


def _to_number(value: Any) -> float | None:
    if value is MISSING or value is None:
        return None
    if isinstance(value, str) and not value.strip():
        # blank text compares as zero
        return 0.0
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _to_text(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (list, tuple)):
        return ",".join(_to_text(item) for item in value)
    return str(value)
