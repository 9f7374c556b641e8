"""SQLAlchemy-backed stores and collaborators.

Sessions are synchronous; each call runs in a worker thread, opens a short
session from the injected factory and commits before returning.
"""
import asyncio
import functools
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, List, Optional

from sqlalchemy import MetaData, Table, and_, delete, func, insert, select, update
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from autoflow.core.id_utils import generate_prefixed_id
from autoflow.models.automation import (
    AutomationAssignment,
    AutomationExecution,
    AutomationExecutionStep,
    AutomationNotification,
    AutomationRule,
    AutomationWorkflowRun,
)
from autoflow.schemas.automation import (
    Execution,
    ExecutionContext,
    ExecutionStatus,
    ExecutionStep,
    MetricsPeriod,
    Rule,
)


def _threaded(func):
    @functools.wraps(func)
    async def wrapper(*args, **kwargs):
        return await asyncio.to_thread(func, *args, **kwargs)

    return wrapper


def _utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        # SQLite drops the offset; everything is written as UTC.
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _day_bounds(day: date) -> tuple[datetime, datetime]:
    start = datetime.combine(day, time.min, tzinfo=timezone.utc)
    return start, start + timedelta(days=1)


class SqlRuleStore:
    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    @_threaded
    def get(self, rule_id: str) -> Optional[Rule]:
        with self.session_factory() as db:
            row = db.get(AutomationRule, rule_id)
            return _rule_from_row(row) if row else None

    @_threaded
    def list(self, tenant_id: Optional[str] = None) -> List[Rule]:
        stmt = select(AutomationRule).order_by(AutomationRule.created_at.asc(), AutomationRule.id.asc())
        if tenant_id is not None:
            stmt = stmt.where(AutomationRule.tenant_id == tenant_id)
        with self.session_factory() as db:
            return [_rule_from_row(row) for row in db.execute(stmt).scalars().all()]

    @_threaded
    def create(self, rule: Rule) -> Rule:
        with self.session_factory() as db:
            if db.get(AutomationRule, rule.id) is not None:
                raise ValueError(f"Automation rule '{rule.id}' already exists")
            row = AutomationRule(id=rule.id)
            _apply_rule(row, rule)
            db.add(row)
            db.commit()
        return rule

    @_threaded
    def update(self, rule: Rule) -> Rule:
        with self.session_factory() as db:
            row = db.get(AutomationRule, rule.id)
            if row is None:
                raise KeyError(rule.id)
            _apply_rule(row, rule)
            db.commit()
        return rule


def _apply_rule(row: AutomationRule, rule: Rule) -> None:
    payload = rule.model_dump(mode="json")
    row.tenant_id = rule.tenant_id
    row.name = rule.name
    row.description = rule.description
    row.priority = rule.priority
    row.is_active = rule.is_active
    row.triggers_json = payload["triggers"]
    row.conditions_json = payload["conditions"]
    row.actions_json = payload["actions"]
    row.settings_json = payload["settings"]
    row.metadata_json = payload["metadata"]
    row.created_at = _utc(rule.created_at)
    row.updated_at = _utc(rule.updated_at)


def _rule_from_row(row: AutomationRule) -> Rule:
    return Rule.model_validate(
        {
            "id": row.id,
            "tenant_id": row.tenant_id,
            "name": row.name,
            "description": row.description,
            "priority": row.priority,
            "is_active": row.is_active,
            "triggers": row.triggers_json or [],
            "conditions": row.conditions_json or [],
            "actions": row.actions_json or [],
            "settings": row.settings_json or {},
            "metadata": row.metadata_json or {},
            "created_at": _utc(row.created_at),
            "updated_at": _utc(row.updated_at),
        }
    )


class SqlExecutionStore:
    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    @_threaded
    def create(self, execution: Execution) -> Execution:
        with self.session_factory() as db:
            row = AutomationExecution(id=execution.id)
            _apply_execution(row, execution)
            db.add(row)
            db.flush()
            _replace_steps(db, execution)
            db.commit()
        return execution

    @_threaded
    def update(self, execution: Execution) -> Execution:
        with self.session_factory() as db:
            row = db.get(AutomationExecution, execution.id)
            if row is None:
                raise KeyError(execution.id)
            _apply_execution(row, execution)
            _replace_steps(db, execution)
            db.commit()
        return execution

    @_threaded
    def get(self, execution_id: str) -> Optional[Execution]:
        with self.session_factory() as db:
            row = db.get(AutomationExecution, execution_id)
            if row is None:
                return None
            return _execution_from_row(row, _load_steps(db, [row.id]).get(row.id, []))

    @_threaded
    def list(
        self,
        tenant_id: str,
        period: Optional[MetricsPeriod] = None,
        *,
        rule_id: Optional[str] = None,
        status: Optional[ExecutionStatus] = None,
    ) -> List[Execution]:
        filters = [AutomationExecution.tenant_id == tenant_id]
        if period is not None:
            filters.append(AutomationExecution.triggered_at >= _utc(period.start))
            filters.append(AutomationExecution.triggered_at < _utc(period.end))
        if rule_id is not None:
            filters.append(AutomationExecution.rule_id == rule_id)
        if status is not None:
            filters.append(AutomationExecution.status == status)

        stmt = (
            select(AutomationExecution)
            .where(and_(*filters))
            .order_by(AutomationExecution.triggered_at.asc(), AutomationExecution.id.asc())
        )
        with self.session_factory() as db:
            rows = db.execute(stmt).scalars().all()
            steps = _load_steps(db, [row.id for row in rows])
            return [_execution_from_row(row, steps.get(row.id, [])) for row in rows]

    @_threaded
    def count_executions(self, rule_id: str, day: date) -> int:
        start, end = _day_bounds(day)
        stmt = select(func.count(AutomationExecution.id)).where(
            AutomationExecution.rule_id == rule_id,
            AutomationExecution.triggered_at >= start,
            AutomationExecution.triggered_at < end,
        )
        with self.session_factory() as db:
            return int(db.execute(stmt).scalar_one() or 0)

    @_threaded
    def last_execution_at(self, rule_id: str) -> Optional[datetime]:
        stmt = select(func.max(AutomationExecution.started_at)).where(
            AutomationExecution.rule_id == rule_id,
            AutomationExecution.started_at.is_not(None),
        )
        with self.session_factory() as db:
            return _utc(db.execute(stmt).scalar_one_or_none())


def _apply_execution(row: AutomationExecution, execution: Execution) -> None:
    row.rule_id = execution.rule_id
    row.tenant_id = execution.tenant_id
    row.triggered_by = execution.triggered_by
    row.triggered_at = _utc(execution.triggered_at)
    row.status = execution.status
    row.started_at = _utc(execution.started_at)
    row.completed_at = _utc(execution.completed_at)
    row.duration_ms = execution.duration
    row.trigger_data_json = execution.model_dump(mode="json")["trigger_data"]
    row.context_json = execution.context.model_dump(mode="json")
    row.error_message = execution.error
    row.result_json = execution.model_dump(mode="json")["result"]


def _replace_steps(db: Session, execution: Execution) -> None:
    db.execute(delete(AutomationExecutionStep).where(AutomationExecutionStep.execution_id == execution.id))
    for index, step in enumerate(execution.steps, start=1):
        payload = step.model_dump(mode="json")
        db.add(
            AutomationExecutionStep(
                execution_id=execution.id,
                step_index=index,
                step_id=step.step_id,
                step_type=step.type,
                name=step.name,
                status=step.status,
                started_at=_utc(step.started_at),
                completed_at=_utc(step.completed_at),
                duration_ms=step.duration,
                input_json=payload["input"],
                output_json=payload["output"],
                error_message=step.error,
                attempts=step.attempts,
            )
        )


def _load_steps(db: Session, execution_ids: list[str]) -> dict[str, list[ExecutionStep]]:
    if not execution_ids:
        return {}
    stmt = (
        select(AutomationExecutionStep)
        .where(AutomationExecutionStep.execution_id.in_(execution_ids))
        .order_by(AutomationExecutionStep.execution_id.asc(), AutomationExecutionStep.step_index.asc())
    )
    grouped: dict[str, list[ExecutionStep]] = {}
    for row in db.execute(stmt).scalars().all():
        grouped.setdefault(row.execution_id, []).append(
            ExecutionStep(
                step_id=row.step_id,
                type=row.step_type,
                name=row.name,
                status=row.status,
                started_at=_utc(row.started_at),
                completed_at=_utc(row.completed_at),
                duration=row.duration_ms,
                input=row.input_json,
                output=row.output_json,
                error=row.error_message,
                attempts=row.attempts,
            )
        )
    return grouped


def _execution_from_row(row: AutomationExecution, steps: list[ExecutionStep]) -> Execution:
    return Execution(
        id=row.id,
        rule_id=row.rule_id,
        tenant_id=row.tenant_id,
        triggered_by=row.triggered_by,
        triggered_at=_utc(row.triggered_at),
        status=row.status,
        started_at=_utc(row.started_at),
        completed_at=_utc(row.completed_at),
        duration=row.duration_ms,
        trigger_data=row.trigger_data_json or {},
        context=ExecutionContext.model_validate(row.context_json or {}),
        steps=steps,
        error=row.error_message,
        result=row.result_json,
    )


class SqlNotificationSender:
    """Stores in-app notifications; other channels are recorded for delivery workers."""

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    @_threaded
    def send(
        self,
        user_id: str,
        title: str,
        message: str,
        data: dict[str, Any],
        channels: list[str],
    ) -> dict[str, Any]:
        notification_id = generate_prefixed_id("ntf")
        with self.session_factory() as db:
            db.add(
                AutomationNotification(
                    id=notification_id,
                    user_id=user_id,
                    title=title[:255],
                    message=message,
                    data_json=data,
                    channels_json=channels,
                )
            )
            db.commit()
        return {"notification_id": notification_id}


class SqlAssignmentStore:
    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    @_threaded
    def assign(
        self,
        entity_id: str,
        assignees: list[str],
        *,
        assignment_type: str,
        priority: str,
        due_date: datetime | None,
    ) -> dict[str, Any]:
        assignment_ids: list[str] = []
        with self.session_factory() as db:
            for assignee in assignees:
                assignment_id = generate_prefixed_id("asg")
                db.add(
                    AutomationAssignment(
                        id=assignment_id,
                        entity_id=entity_id,
                        assignment_type=assignment_type,
                        assignee_user_id=assignee,
                        priority=priority,
                        due_at=_utc(due_date),
                    )
                )
                assignment_ids.append(assignment_id)
            db.commit()
        return {"assignment_ids": assignment_ids}


class SqlWorkflowStore:
    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    @_threaded
    def start(self, workflow_id: str, data: dict[str, Any], assignees: list[str]) -> dict[str, Any]:
        run_id = generate_prefixed_id("wfr")
        with self.session_factory() as db:
            db.add(
                AutomationWorkflowRun(
                    id=run_id,
                    workflow_id=workflow_id,
                    data_json=data,
                    assignees_json=assignees,
                )
            )
            db.commit()
        return {"workflow_run_id": run_id}


class SqlDataStore:
    """Generic row operations over an allow list of existing tables."""

    def __init__(self, engine: Engine, allowed_tables: list[str]):
        self.engine = engine
        self.allowed_tables = {name.strip() for name in allowed_tables if name.strip()}
        self._metadata = MetaData()
        self._tables: dict[str, Table] = {}

    def _table(self, name: str) -> Table:
        if name not in self.allowed_tables:
            raise ValueError(f"Table '{name}' is not enabled for database actions")
        if name not in self._tables:
            self._tables[name] = Table(name, self._metadata, autoload_with=self.engine)
        return self._tables[name]

    def _where(self, table: Table, conditions: dict[str, Any]) -> list[Any]:
        clauses = []
        for column, value in conditions.items():
            if column not in table.c:
                raise ValueError(f"Unknown column '{column}' on table '{table.name}'")
            clauses.append(table.c[column] == value)
        return clauses

    def _values(self, table: Table, data: dict[str, Any]) -> dict[str, Any]:
        unknown = sorted(set(data) - set(table.c.keys()))
        if unknown:
            raise ValueError(f"Unknown columns on table '{table.name}': {', '.join(unknown)}")
        return data

    @_threaded
    def insert(self, table: str, data: dict[str, Any]) -> dict[str, Any]:
        target = self._table(table)
        with self.engine.begin() as conn:
            result = conn.execute(insert(target).values(**self._values(target, data)))
        return {"affected_rows": result.rowcount or 0}

    @_threaded
    def update(self, table: str, data: dict[str, Any], conditions: dict[str, Any]) -> dict[str, Any]:
        target = self._table(table)
        if not conditions:
            raise ValueError("Database update requires at least one condition")
        stmt = update(target).where(*self._where(target, conditions)).values(**self._values(target, data))
        with self.engine.begin() as conn:
            result = conn.execute(stmt)
        return {"affected_rows": result.rowcount or 0}

    @_threaded
    def delete(self, table: str, conditions: dict[str, Any]) -> dict[str, Any]:
        target = self._table(table)
        if not conditions:
            raise ValueError("Database delete requires at least one condition")
        with self.engine.begin() as conn:
            result = conn.execute(delete(target).where(*self._where(target, conditions)))
        return {"affected_rows": result.rowcount or 0}

    @_threaded
    def select(self, table: str, conditions: dict[str, Any]) -> dict[str, Any]:
        target = self._table(table)
        stmt = select(target).where(*self._where(target, conditions)).limit(500)
        with self.engine.connect() as conn:
            rows = [dict(row) for row in conn.execute(stmt).mappings().all()]
        return {"rows": rows, "count": len(rows)}
