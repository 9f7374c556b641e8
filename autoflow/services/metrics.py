from collections import Counter, OrderedDict
from datetime import date
from typing import Iterable

from autoflow.schemas.automation import (
    AutomationMetrics,
    ErrorCategory,
    Execution,
    ExecutionTrend,
    MetricsPeriod,
    Rule,
    TopRule,
)
from autoflow.services.stores import utc_day


TOP_RULES_LIMIT = 10

# First match wins, so order matters.
_ERROR_KEYWORDS: list[tuple[str, tuple[str, ...]]] = [
    ("Timeout", ("timeout", "timed out")),
    ("Network", ("network", "fetch", "connect")),
    ("Permission", ("permission", "unauthorized", "forbidden")),
    ("Validation", ("validation", "invalid")),
    ("Database", ("database", "sql")),
]


def categorize_error(error: str | None) -> str:
    text = (error or "").lower()
    for category, keywords in _ERROR_KEYWORDS:
        if any(keyword in text for keyword in keywords):
            return category
    return "Other"


def _is_success(execution: Execution) -> bool:
    return execution.status == "completed" and not execution.was_skipped


def _failure_text(execution: Execution) -> str:
    # "Action failed: <name>" alone says little, so the failing step's error is folded in.
    parts = [execution.error or ""]
    parts.extend(step.error for step in execution.steps if step.status == "failed" and step.error)
    return " ".join(part for part in parts if part)


def _top_rules(rules: list[Rule], executions: list[Execution]) -> list[TopRule]:
    names = {rule.id: rule.name for rule in rules}
    counts = Counter(execution.rule_id for execution in executions)
    successes = Counter(execution.rule_id for execution in executions if _is_success(execution))
    # Counter.most_common keeps first-seen order among ties
    return [
        TopRule(
            rule_id=rule_id,
            name=names.get(rule_id, "Unknown Rule"),
            executions=count,
            success_rate=round(successes[rule_id] / count, 4) if count else 0.0,
        )
        for rule_id, count in counts.most_common(TOP_RULES_LIMIT)
    ]


def _execution_trends(executions: list[Execution]) -> list[ExecutionTrend]:
    buckets: dict[date, dict[str, int]] = OrderedDict()
    for execution in executions:
        bucket = buckets.setdefault(
            utc_day(execution.triggered_at),
            {"executions": 0, "successes": 0, "failures": 0},
        )
        bucket["executions"] += 1
        if _is_success(execution):
            bucket["successes"] += 1
        if execution.status == "failed":
            bucket["failures"] += 1
    return [ExecutionTrend(date=day, **stats) for day, stats in sorted(buckets.items())]


def _error_analysis(executions: list[Execution]) -> list[ErrorCategory]:
    failed = [execution for execution in executions if execution.status == "failed"]
    if not failed:
        return []
    counts = Counter(categorize_error(_failure_text(execution)) for execution in failed)
    return [
        ErrorCategory(error_type=error_type, count=count, percentage=round(count / len(failed) * 100))
        for error_type, count in counts.most_common()
    ]


def compute_metrics(
    rules: Iterable[Rule],
    executions: Iterable[Execution],
    period: MetricsPeriod | None = None,
) -> AutomationMetrics:
    rules = list(rules)
    executions = [
        execution for execution in executions if period is None or period.contains(execution.triggered_at)
    ]
    durations = [execution.duration for execution in executions if execution.duration is not None]

    return AutomationMetrics(
        total_rules=len(rules),
        active_rules=sum(1 for rule in rules if rule.is_active),
        total_executions=len(executions),
        successful_executions=sum(1 for execution in executions if _is_success(execution)),
        failed_executions=sum(1 for execution in executions if execution.status == "failed"),
        skipped_executions=sum(1 for execution in executions if execution.was_skipped),
        avg_execution_time=round(sum(durations) / len(durations), 2) if durations else 0.0,
        top_rules=_top_rules(rules, executions),
        execution_trends=_execution_trends(executions),
        error_analysis=_error_analysis(executions),
    )
