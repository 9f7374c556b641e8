"""Persistence contracts consumed by the engine, plus in-memory implementations.

The in-memory stores copy models on the way in and out so a stored execution
snapshot cannot be mutated through a reference held by the caller.
"""
from datetime import date, datetime, timezone
from threading import Lock
from typing import List, Optional, Protocol

from autoflow.schemas.automation import Execution, ExecutionStatus, MetricsPeriod, Rule


class RuleStore(Protocol):
    async def get(self, rule_id: str) -> Optional[Rule]:
        ...

    async def list(self, tenant_id: Optional[str] = None) -> List[Rule]:
        ...

    async def create(self, rule: Rule) -> Rule:
        ...

    async def update(self, rule: Rule) -> Rule:
        ...


class ExecutionStore(Protocol):
    async def create(self, execution: Execution) -> Execution:
        ...

    async def update(self, execution: Execution) -> Execution:
        ...

    async def get(self, execution_id: str) -> Optional[Execution]:
        ...

    async def list(
        self,
        tenant_id: str,
        period: Optional[MetricsPeriod] = None,
        *,
        rule_id: Optional[str] = None,
        status: Optional[ExecutionStatus] = None,
    ) -> List[Execution]:
        ...

    async def count_executions(self, rule_id: str, day: date) -> int:
        ...

    async def last_execution_at(self, rule_id: str) -> Optional[datetime]:
        """Latest ``started_at`` of the rule; attempts that never ran are ignored."""
        ...


def utc_day(moment: datetime) -> date:
    if moment.tzinfo is None:
        return moment.date()
    return moment.astimezone(timezone.utc).date()


class InMemoryRuleStore:
    def __init__(self) -> None:
        self._rules: dict[str, Rule] = {}
        self._lock = Lock()

    async def get(self, rule_id: str) -> Optional[Rule]:
        with self._lock:
            rule = self._rules.get(rule_id)
            return rule.model_copy(deep=True) if rule else None

    async def list(self, tenant_id: Optional[str] = None) -> List[Rule]:
        with self._lock:
            return [
                rule.model_copy(deep=True)
                for rule in self._rules.values()
                if tenant_id is None or rule.tenant_id == tenant_id
            ]

    async def create(self, rule: Rule) -> Rule:
        with self._lock:
            if rule.id in self._rules:
                raise ValueError(f"Automation rule '{rule.id}' already exists")
            self._rules[rule.id] = rule.model_copy(deep=True)
        return rule

    async def update(self, rule: Rule) -> Rule:
        with self._lock:
            if rule.id not in self._rules:
                raise KeyError(rule.id)
            self._rules[rule.id] = rule.model_copy(deep=True)
        return rule


class InMemoryExecutionStore:
    def __init__(self) -> None:
        self._executions: dict[str, Execution] = {}
        self._lock = Lock()

    async def create(self, execution: Execution) -> Execution:
        with self._lock:
            self._executions[execution.id] = execution.model_copy(deep=True)
        return execution

    async def update(self, execution: Execution) -> Execution:
        with self._lock:
            if execution.id not in self._executions:
                raise KeyError(execution.id)
            self._executions[execution.id] = execution.model_copy(deep=True)
        return execution

    async def get(self, execution_id: str) -> Optional[Execution]:
        with self._lock:
            execution = self._executions.get(execution_id)
            return execution.model_copy(deep=True) if execution else None

    async def list(
        self,
        tenant_id: str,
        period: Optional[MetricsPeriod] = None,
        *,
        rule_id: Optional[str] = None,
        status: Optional[ExecutionStatus] = None,
    ) -> List[Execution]:
        with self._lock:
            rows = [
                item.model_copy(deep=True)
                for item in self._executions.values()
                if item.tenant_id == tenant_id
                and (period is None or period.contains(item.triggered_at))
                and (rule_id is None or item.rule_id == rule_id)
                and (status is None or item.status == status)
            ]
        return sorted(rows, key=lambda item: item.triggered_at)

    async def count_executions(self, rule_id: str, day: date) -> int:
        with self._lock:
            return sum(
                1
                for item in self._executions.values()
                if item.rule_id == rule_id and utc_day(item.triggered_at) == day
            )

    async def last_execution_at(self, rule_id: str) -> Optional[datetime]:
        with self._lock:
            moments = [
                item.started_at
                for item in self._executions.values()
                if item.rule_id == rule_id and item.started_at is not None
            ]
        return max(moments) if moments else None
