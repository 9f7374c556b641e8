"""Execution orchestrator.

``execute_rule`` walks a fixed pipeline: load the rule, consult the rate
limiter, open a ``running`` execution, evaluate conditions, run the enabled
actions in ``order`` and persist the final record. Action failures end up on
the execution's steps; only lookup and rate-limit errors reach the caller.
"""
import asyncio
import logging
from datetime import datetime, timedelta
from threading import Lock
from typing import Any, Callable

from pydantic import BaseModel

from autoflow.core.errors import (
    ActionExecutionError,
    ExecutionNotFound,
    RateLimitExceeded,
    RuleInactive,
    RuleNotFound,
    UnknownActionType,
)
from autoflow.core.id_utils import generate_prefixed_id
from autoflow.core.observability import log_event
from autoflow.schemas.automation import (
    AutomationMetrics,
    Execution,
    ExecutionContext,
    ExecutionStatus,
    ExecutionStep,
    MetricsPeriod,
    Rule,
    RuleCreate,
    RuleDefinition,
    utcnow,
)
from autoflow.services.actions import ActionRunner
from autoflow.services.conditions import build_evaluation_data, evaluate_conditions
from autoflow.services.metrics import compute_metrics
from autoflow.services.rate_limit import RuleRateLimiter
from autoflow.services.stores import ExecutionStore, RuleStore
from autoflow.services.templates import build_template_rule
from autoflow.services.triggers import ConditionSource, Scheduler, TriggerRegistry


logger = logging.getLogger("autoflow.engine")

DEFAULT_METRICS_WINDOW = timedelta(days=30)


class AutomationEngine:
    def __init__(
        self,
        rule_store: RuleStore,
        execution_store: ExecutionStore,
        action_runner: ActionRunner,
        scheduler: Scheduler | None = None,
        *,
        clock: Callable[[], datetime] = utcnow,
        condition_source: ConditionSource | None = None,
    ):
        self.rule_store = rule_store
        self.execution_store = execution_store
        self.action_runner = action_runner
        self.clock = clock
        self.rate_limiter = RuleRateLimiter(execution_store, clock=clock)
        self.triggers = TriggerRegistry(
            scheduler or Scheduler(),
            self.execute_rule,
            clock=clock,
            condition_source=condition_source,
        )
        self._in_flight: dict[str, Execution] = {}
        self._in_flight_lock = Lock()
        self._late_phases: set[asyncio.Task] = set()

    # Rules

    async def create_rule(self, rule_in: RuleCreate) -> Rule:
        now = self.clock()
        rule = Rule.model_validate(
            {
                **rule_in.model_dump(),
                "id": generate_prefixed_id("rule"),
                "created_at": now,
                "updated_at": now,
            }
        )
        await self.rule_store.create(rule)
        self.triggers.register_rule(rule)
        log_event(logger, "rule.created", rule_id=rule.id, tenant_id=rule.tenant_id, name=rule.name)
        return rule

    async def get_rule(self, rule_id: str, tenant_id: str | None = None) -> Rule:
        rule = await self.rule_store.get(rule_id)
        if rule is None or (tenant_id is not None and rule.tenant_id != tenant_id):
            raise RuleNotFound(rule_id)
        return rule

    async def list_rules(self, tenant_id: str) -> list[Rule]:
        rules = await self.rule_store.list(tenant_id)
        return sorted(rules, key=lambda rule: (-rule.priority, rule.created_at))

    async def update_rule(self, rule_id: str, definition: RuleDefinition, tenant_id: str | None = None) -> Rule:
        existing = await self.get_rule(rule_id, tenant_id)
        metadata = existing.metadata.model_copy(
            update={"category": definition.metadata.category, "tags": list(definition.metadata.tags)}
        )
        rule = Rule.model_validate(
            {
                **definition.model_dump(),
                "metadata": metadata.model_dump(),
                "tenant_id": existing.tenant_id,
                "id": existing.id,
                "created_at": existing.created_at,
                "updated_at": self.clock(),
            }
        )
        await self.rule_store.update(rule)
        self.triggers.register_rule(rule)
        log_event(logger, "rule.updated", rule_id=rule.id, tenant_id=rule.tenant_id)
        return rule

    async def deactivate_rule(self, rule_id: str, tenant_id: str | None = None) -> Rule:
        rule = await self.get_rule(rule_id, tenant_id)
        rule.is_active = False
        rule.updated_at = self.clock()
        await self.rule_store.update(rule)
        self.triggers.unregister_rule(rule.id)
        log_event(logger, "rule.deactivated", rule_id=rule.id, tenant_id=rule.tenant_id)
        return rule

    async def create_rule_from_template(
        self,
        template_name: str,
        config: dict[str, Any] | None,
        tenant_id: str,
        created_by: str = "system",
    ) -> Rule:
        rule_in = build_template_rule(template_name, config, tenant_id=tenant_id, created_by=created_by)
        return await self.create_rule(rule_in)

    # Execution

    async def execute_rule(
        self,
        rule_id: str,
        trigger_data: dict[str, Any] | None = None,
        context: ExecutionContext | None = None,
        triggered_by: str | None = None,
    ) -> str:
        rule = await self.rule_store.get(rule_id)
        if rule is None:
            raise RuleNotFound(rule_id)
        if not rule.is_active:
            raise RuleInactive(rule_id)

        trigger_data = dict(trigger_data or {})
        context = context or ExecutionContext()
        triggered_by = triggered_by or str(context.metadata.get("triggered_by") or "manual")
        now = self.clock()

        execution = Execution(
            id=generate_prefixed_id("exec"),
            rule_id=rule.id,
            tenant_id=rule.tenant_id,
            triggered_by=triggered_by,
            triggered_at=now,
            trigger_data=trigger_data,
            context=context,
        )

        blocked_reason = await self.rate_limiter.check(rule)
        if blocked_reason:
            execution.transition("failed", at=now, error=blocked_reason)
            await self.execution_store.create(execution)
            log_event(
                logger,
                "execution.rate_limited",
                level=logging.WARNING,
                execution_id=execution.id,
                rule_id=rule.id,
                reason=blocked_reason,
            )
            raise RateLimitExceeded(rule.id, blocked_reason, execution_id=execution.id)

        execution.transition("running", at=now)
        await self.execution_store.create(execution)
        with self._in_flight_lock:
            self._in_flight[execution.id] = execution

        try:
            data = build_evaluation_data(trigger_data, context)
            if not evaluate_conditions(rule.conditions, data):
                execution.result = {"skipped": True, "reason": "Conditions not met"}
                execution.transition("completed", at=self.clock())
            else:
                await self._run_action_phase(rule, execution, trigger_data, context)
                if execution.transition("completed", at=self.clock()):
                    execution.result = _summarize_steps(execution)
        except Exception as exc:  # noqa: BLE001
            execution.transition("failed", at=self.clock(), error=str(exc)[:500] or type(exc).__name__)
            await self.execution_store.update(execution)
            log_event(
                logger,
                "execution.crashed",
                level=logging.ERROR,
                execution_id=execution.id,
                rule_id=rule.id,
                error=execution.error,
            )
            raise
        finally:
            with self._in_flight_lock:
                self._in_flight.pop(execution.id, None)

        await self.execution_store.update(execution)
        await self._record_outcome(rule.id, execution)
        log_event(
            logger,
            f"execution.{execution.status}",
            level=logging.INFO if execution.status == "completed" else logging.WARNING,
            execution_id=execution.id,
            rule_id=rule.id,
            triggered_by=triggered_by,
            duration_ms=execution.duration,
            steps=len(execution.steps),
            error=execution.error,
        )
        return execution.id

    async def cancel_execution(self, execution_id: str, tenant_id: str | None = None) -> Execution:
        with self._in_flight_lock:
            execution = self._in_flight.get(execution_id)
        if execution is None:
            return await self.get_execution(execution_id, tenant_id)
        if tenant_id is not None and execution.tenant_id != tenant_id:
            raise ExecutionNotFound(execution_id)

        if execution.transition("cancelled", at=self.clock(), error="Execution cancelled"):
            await self.execution_store.update(execution)
            log_event(logger, "execution.cancelled", execution_id=execution.id, rule_id=execution.rule_id)
        return execution.model_copy(deep=True)

    async def _run_action_phase(
        self,
        rule: Rule,
        execution: Execution,
        trigger_data: dict[str, Any],
        context: ExecutionContext,
    ) -> None:
        timeout = rule.settings.timeout_seconds
        if timeout <= 0:
            await self._run_actions(rule, execution, trigger_data, context)
            return

        phase = asyncio.ensure_future(self._run_actions(rule, execution, trigger_data, context))
        done, _ = await asyncio.wait({phase}, timeout=timeout)
        if phase in done:
            phase.result()
            return

        # The running action is left to finish; its step lands on the stored record later.
        execution.transition("timeout", at=self.clock(), error=f"Execution timed out after {timeout}s")
        late = asyncio.ensure_future(self._persist_after(phase, execution))
        self._late_phases.add(late)
        late.add_done_callback(self._late_phases.discard)

    async def _persist_after(self, phase: asyncio.Future, execution: Execution) -> None:
        try:
            await phase
        except Exception as exc:  # noqa: BLE001
            log_event(logger, "execution.late_phase_failed", level=logging.ERROR, execution_id=execution.id, error=str(exc))
        await self.execution_store.update(execution)

    async def _run_actions(
        self,
        rule: Rule,
        execution: Execution,
        trigger_data: dict[str, Any],
        context: ExecutionContext,
    ) -> None:
        actions = rule.enabled_actions()

        if rule.settings.run_in_parallel:
            outcomes = await asyncio.gather(
                *(self._run_step(rule, execution, action, trigger_data, context) for action in actions)
            )
            for action, succeeded in zip(actions, outcomes):
                if not succeeded and not action.continue_on_error:
                    execution.transition("failed", at=self.clock(), error=f"Action failed: {_action_name(action)}")
                    break
            return

        for action in actions:
            if execution.is_terminal:
                break
            succeeded = await self._run_step(rule, execution, action, trigger_data, context)
            if not succeeded and not action.continue_on_error:
                execution.transition("failed", at=self.clock(), error=f"Action failed: {_action_name(action)}")
                break

    async def _run_step(
        self,
        rule: Rule,
        execution: Execution,
        action: Any,
        trigger_data: dict[str, Any],
        context: ExecutionContext,
    ) -> bool:
        step = ExecutionStep(
            step_id=action.id,
            type="action",
            name=_action_name(action),
            status="running",
            started_at=self.clock(),
            input=_step_input(action),
        )
        execution.steps.append(step)
        max_attempts = 1 + rule.settings.retry_attempts

        while True:
            step.attempts += 1
            try:
                output = await self.action_runner.run(action, trigger_data, context)
            except UnknownActionType as exc:
                _finish_step(step, "failed", self.clock(), error=exc.message)
                return False
            except ActionExecutionError as exc:
                if step.attempts < max_attempts and not execution.is_terminal:
                    log_event(
                        logger,
                        "action.retry",
                        level=logging.WARNING,
                        execution_id=execution.id,
                        step_id=step.step_id,
                        attempt=step.attempts,
                        error=exc.message,
                    )
                    continue
                _finish_step(step, "failed", self.clock(), error=exc.message)
                return False
            _finish_step(step, "completed", self.clock(), output=output)
            return True

    async def _record_outcome(self, rule_id: str, execution: Execution) -> None:
        rule = await self.rule_store.get(rule_id)
        if rule is None:
            return
        metadata = rule.metadata
        previous = metadata.execution_count
        count = previous + 1
        success = 1.0 if execution.status == "completed" else 0.0
        metadata.success_rate = round((metadata.success_rate * previous + success) / count, 4)
        metadata.avg_execution_time = round(
            (metadata.avg_execution_time * previous + (execution.duration or 0.0)) / count, 2
        )
        metadata.execution_count = count
        metadata.last_executed = execution.triggered_at
        await self.rule_store.update(rule)

    # Trigger surface

    async def trigger_event(
        self,
        event_type: str,
        data: dict[str, Any] | None = None,
        context: ExecutionContext | None = None,
    ) -> list[str]:
        return await self.triggers.dispatch_event(event_type, dict(data or {}), context)

    async def handle_webhook_trigger(
        self,
        webhook_id: str,
        data: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> list[str]:
        return await self.triggers.dispatch_webhook(webhook_id, dict(data or {}), headers)

    async def setup_scheduled_triggers(self) -> int:
        registered = 0
        for rule in await self.rule_store.list():
            self.triggers.register_rule(rule)
            registered += int(rule.is_active)
        log_event(logger, "triggers.registered", rules=registered)
        return registered

    async def tick(self, now: datetime | None = None) -> list[str]:
        return await self.triggers.tick(now)

    async def run_scheduler(self, poll_seconds: float) -> None:
        await self.triggers.run_forever(poll_seconds)

    # Queries

    async def get_execution(self, execution_id: str, tenant_id: str | None = None) -> Execution:
        execution = await self.execution_store.get(execution_id)
        if execution is None or (tenant_id is not None and execution.tenant_id != tenant_id):
            raise ExecutionNotFound(execution_id)
        return execution

    async def list_executions(
        self,
        tenant_id: str,
        *,
        rule_id: str | None = None,
        status: ExecutionStatus | None = None,
        period: MetricsPeriod | None = None,
    ) -> list[Execution]:
        rows = await self.execution_store.list(tenant_id, period, rule_id=rule_id, status=status)
        return list(reversed(rows))

    async def get_metrics(self, tenant_id: str, period: MetricsPeriod | None = None) -> AutomationMetrics:
        if period is None:
            end = self.clock()
            period = MetricsPeriod(start=end - DEFAULT_METRICS_WINDOW, end=end + timedelta(seconds=1))
        rules = await self.rule_store.list(tenant_id)
        executions = await self.execution_store.list(tenant_id, period)
        return compute_metrics(rules, executions, period)


def _action_name(action: Any) -> str:
    return getattr(action, "name", "") or str(getattr(action, "type", "action"))


def _step_input(action: Any) -> dict[str, Any]:
    config = getattr(action, "config", None)
    payload: dict[str, Any] = {"type": str(getattr(action, "type", ""))}
    if isinstance(config, BaseModel):
        payload["config"] = config.model_dump(mode="json")
    return payload


def _finish_step(
    step: ExecutionStep,
    status: str,
    at: datetime,
    *,
    output: dict[str, Any] | None = None,
    error: str | None = None,
) -> None:
    step.status = status
    step.completed_at = at
    started = step.started_at or at
    step.duration = max((at - started).total_seconds() * 1000, 0.0)
    step.output = output if isinstance(output, dict) else None
    step.error = error


def _summarize_steps(execution: Execution) -> dict[str, Any]:
    return {
        "steps_total": len(execution.steps),
        "steps_completed": sum(1 for step in execution.steps if step.status == "completed"),
        "steps_failed": sum(1 for step in execution.steps if step.status == "failed"),
    }
