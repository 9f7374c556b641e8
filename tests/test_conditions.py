import pytest

from autoflow.core.errors import ConditionEvaluationError
from autoflow.schemas.automation import Condition, ExecutionContext
from autoflow.services.conditions import (
    MISSING,
    build_evaluation_data,
    evaluate_condition,
    evaluate_conditions,
    render_template,
    render_value,
    resolve_path,
)


def _cond(field, operator="equals", value=None, **extra):
    return Condition(field=field, operator=operator, value=value, **extra)


def test_empty_conditions_are_true():
    assert evaluate_conditions([], {}) is True


def test_single_equals_condition():
    assert evaluate_conditions([_cond("status", value="active")], {"status": "active"}) is True
    assert evaluate_conditions([_cond("status", value="active")], {"status": "inactive"}) is False


def test_ungrouped_conditions_use_logical_and():
    data = {"size": 10, "kind": "pdf"}
    conditions = [_cond("size", "less_than", 20), _cond("kind", value="pdf")]
    assert evaluate_conditions(conditions, data) is True

    conditions = [_cond("size", "less_than", 5), _cond("kind", value="pdf")]
    assert evaluate_conditions(conditions, data) is False


def test_grouped_or_combines_inside_group_and_and_across_groups():
    conditions = [
        _cond("a", value=1, group="g1"),
        _cond("b", value=2, group="g1", logical_operator="or"),
        _cond("c", value=3, group="g2"),
    ]
    assert evaluate_conditions(conditions, {"a": 0, "b": 2, "c": 3}) is True
    assert evaluate_conditions(conditions, {"a": 1, "b": 0, "c": 3}) is True
    assert evaluate_conditions(conditions, {"a": 0, "b": 0, "c": 3}) is False
    assert evaluate_conditions(conditions, {"a": 1, "b": 2, "c": 0}) is False


def test_grouped_and_condition_requires_every_member():
    conditions = [
        _cond("a", value=1, group="g1"),
        _cond("b", value=2, group="g1"),
    ]
    assert evaluate_conditions(conditions, {"a": 1, "b": 2}) is True
    assert evaluate_conditions(conditions, {"a": 1, "b": 3}) is False


def test_overall_or_is_combined_with_previous_result():
    conditions = [_cond("a", value=1), _cond("b", value=2, logical_operator="or")]
    assert evaluate_conditions(conditions, {"a": 0, "b": 2}) is True


def test_numeric_comparisons_coerce_numbers_and_reject_text():
    assert evaluate_condition(_cond("size", "greater_than", "10"), {"size": 11}) is True
    assert evaluate_condition(_cond("size", "less_than", 10), {"size": "9.5"}) is True
    assert evaluate_condition(_cond("size", "greater_than", 10), {"size": "big"}) is False
    assert evaluate_condition(_cond("size", "greater_than", 10), {}) is False


def test_equality_keeps_booleans_and_numbers_apart():
    assert evaluate_condition(_cond("flag", value=1), {"flag": True}) is False
    assert evaluate_condition(_cond("count", value=1), {"count": 1.0}) is True
    assert evaluate_condition(_cond("flag", "not_equals", False), {"flag": 0}) is True


def test_string_operators():
    data = {"name": "report-final.pdf", "tags": ["urgent", "qc"]}
    assert evaluate_condition(_cond("name", "contains", "final"), data) is True
    assert evaluate_condition(_cond("name", "starts_with", "report"), data) is True
    assert evaluate_condition(_cond("name", "ends_with", ".pdf"), data) is True
    assert evaluate_condition(_cond("tags", "contains", "qc"), data) is True
    assert evaluate_condition(_cond("missing", "contains", "x"), data) is False


def test_membership_and_existence_operators():
    data = {"status": "open", "owner": None}
    assert evaluate_condition(_cond("status", "in", ["open", "pending"]), data) is True
    assert evaluate_condition(_cond("status", "not_in", ["closed"]), data) is True
    assert evaluate_condition(_cond("status", "in", "open"), data) is False
    assert evaluate_condition(_cond("owner", "exists"), data) is False
    assert evaluate_condition(_cond("missing", "not_exists"), data) is True


def test_nested_paths_and_list_indexes():
    data = {"file": {"meta": {"pages": 4}}, "items": [{"sku": "A"}, {"sku": "B"}]}
    assert resolve_path(data, "file.meta.pages") == 4
    assert resolve_path(data, "$.items.1.sku") == "B"
    assert resolve_path(data, "items.5.sku") is MISSING
    assert resolve_path(data, "file.unknown") is MISSING


def test_malformed_path_raises_and_condition_evaluates_false():
    with pytest.raises(ConditionEvaluationError):
        resolve_path({}, "a..b")
    assert evaluate_condition(_cond("a..b", "exists"), {"a": {"b": 1}}) is False


def test_context_overrides_trigger_data():
    data = build_evaluation_data(
        {"fileId": "f1", "user_id": "from-trigger"},
        ExecutionContext(user_id="u1", entity_type="file", entity_id="f1"),
    )
    assert data["fileId"] == "f1"
    assert data["user_id"] == "u1"
    assert data["entity_type"] == "file"


def test_render_template_substitutes_and_keeps_unknown_tokens():
    data = {"fileId": "f1", "meta": {"size": 3}, "count": 2.0, "ok": True}
    assert render_template("File {{ fileId }} ({{count}})", data) == "File f1 (2)"
    assert render_template("{{ok}} {{missing}}", data) == "true {{missing}}"
    assert render_template("{{meta}}", data) == '{"size": 3}'


def test_render_value_walks_nested_structures():
    rendered = render_value({"id": "{{fileId}}", "tags": ["{{kind}}", 3]}, {"fileId": "f1", "kind": "pdf"})
    assert rendered == {"id": "f1", "tags": ["pdf", 3]}


def test_blank_text_compares_as_zero():
    assert evaluate_conditions([_cond("size", "less_than", 1)], {"size": ""}) is True
    assert evaluate_conditions([_cond("size", "greater_than", -1)], {"size": "  "}) is True
    assert evaluate_conditions([_cond("size", "greater_than", "")], {"size": 0.5}) is True
    assert evaluate_conditions([_cond("size", "less_than", 1)], {"size": None}) is False
