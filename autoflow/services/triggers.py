"""Trigger dispatch: event and webhook indices plus the scheduled job table.

Scheduled triggers do not own OS timers. Each armed trigger is a
``ScheduledJob`` in a ``Scheduler`` table keyed by ``(rule_id, trigger_id)``;
``TriggerRegistry.tick`` fires whatever is due and ``run_forever`` drives
``tick`` from an asyncio task.
"""
import asyncio
import hmac
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from threading import Lock
from typing import Any, Awaitable, Callable

from apscheduler.triggers.cron import CronTrigger

from autoflow.core.errors import RateLimitExceeded, TriggerConfigError
from autoflow.core.observability import log_event
from autoflow.schemas.automation import (
    Condition,
    ConditionTrigger,
    EventTrigger,
    ExecutionContext,
    Rule,
    ScheduleTrigger,
    WebhookTrigger,
    utcnow,
)
from autoflow.services.actions import authentication_headers
from autoflow.services.conditions import evaluate_conditions


logger = logging.getLogger("autoflow.triggers")

_INTERVAL_RE = re.compile(r"^(\d+)([mhd])$")
_INTERVAL_UNITS = {"m": timedelta(minutes=1), "h": timedelta(hours=1), "d": timedelta(days=1)}
_REDACTED_HEADERS = {"authorization", "x-api-key", "cookie"}

ExecuteFn = Callable[[str, dict[str, Any], ExecutionContext, str], Awaitable[str]]
ConditionSource = Callable[[Rule, ConditionTrigger], Awaitable[dict[str, Any] | None]]


def parse_interval(expression: str) -> timedelta:
    match = _INTERVAL_RE.match((expression or "").strip())
    if not match:
        raise TriggerConfigError(f"Invalid interval expression '{expression}'; expected e.g. 5m, 1h, 1d")
    amount, unit = match.groups()
    if int(amount) <= 0:
        raise TriggerConfigError(f"Interval expression '{expression}' must be positive")
    return int(amount) * _INTERVAL_UNITS[unit]


def build_cron(expression: str, timezone_name: str) -> CronTrigger:
    name = (timezone_name or "UTC").strip()
    zone = timezone.utc if name.upper() == "UTC" else name
    try:
        return CronTrigger.from_crontab(expression.strip(), timezone=zone)
    except (ValueError, KeyError, TypeError) as exc:
        raise TriggerConfigError(f"Invalid cron expression '{expression}' ({timezone_name}): {exc}") from exc


def trigger_matches(trigger_event_type: str, event_type: str) -> bool:
    trigger = (trigger_event_type or "").strip().lower()
    event = (event_type or "").strip().lower()
    if not trigger or not event:
        return False
    if trigger == "*" or trigger == event:
        return True
    if "*" in trigger:
        pattern = "^" + re.escape(trigger).replace("\\*", ".*") + "$"
        return re.match(pattern, event) is not None
    return False


@dataclass
class ScheduledJob:
    rule_id: str
    trigger_id: str
    kind: str
    next_fire_at: datetime
    interval: timedelta | None = None
    cron: CronTrigger | None = None
    cancelled: bool = False

    @property
    def key(self) -> tuple[str, str]:
        return self.rule_id, self.trigger_id

    def cancel(self) -> None:
        self.cancelled = True

    def advance(self, now: datetime) -> None:
        # Missed slots are coalesced: a job fires at most once per tick.
        if self.cron is not None:
            upcoming = self.cron.get_next_fire_time(None, now + timedelta(microseconds=1))
            if upcoming is None:
                self.cancelled = True
                return
            self.next_fire_at = upcoming.astimezone(timezone.utc)
            return
        if self.interval is None:
            raise TriggerConfigError(
                f"Job {self.rule_id}/{self.trigger_id} has neither an interval nor a cron schedule"
            )
        steps = (now - self.next_fire_at) // self.interval + 1
        self.next_fire_at = self.next_fire_at + self.interval * steps


class Scheduler:
    """Table of armed jobs keyed by (rule_id, trigger_id)."""

    def __init__(self) -> None:
        self._jobs: dict[tuple[str, str], ScheduledJob] = {}
        self._lock = Lock()

    def arm(self, job: ScheduledJob) -> ScheduledJob:
        with self._lock:
            previous = self._jobs.pop(job.key, None)
            if previous:
                previous.cancel()
            self._jobs[job.key] = job
        return job

    def cancel(self, rule_id: str, trigger_id: str) -> bool:
        with self._lock:
            job = self._jobs.pop((rule_id, trigger_id), None)
        if job:
            job.cancel()
        return job is not None

    def cancel_rule(self, rule_id: str) -> int:
        with self._lock:
            keys = [key for key in self._jobs if key[0] == rule_id]
            jobs = [self._jobs.pop(key) for key in keys]
        for job in jobs:
            job.cancel()
        return len(jobs)

    def jobs(self) -> list[ScheduledJob]:
        with self._lock:
            return list(self._jobs.values())

    def due(self, now: datetime) -> list[ScheduledJob]:
        with self._lock:
            candidates = [job for job in self._jobs.values() if not job.cancelled and job.next_fire_at <= now]
            due: list[ScheduledJob] = []
            for job in candidates:
                try:
                    job.advance(now)
                except TriggerConfigError as exc:
                    job.cancel()
                    log_event(
                        logger,
                        "scheduler.job_invalid",
                        level=logging.ERROR,
                        rule_id=job.rule_id,
                        trigger_id=job.trigger_id,
                        error=str(exc),
                    )
                    continue
                due.append(job)
        return due


def build_schedule_job(rule_id: str, trigger: ScheduleTrigger, now: datetime) -> ScheduledJob:
    schedule = trigger.schedule
    if schedule.type == "interval":
        interval = parse_interval(schedule.expression)
        return ScheduledJob(
            rule_id=rule_id,
            trigger_id=trigger.id,
            kind="interval",
            next_fire_at=now + interval,
            interval=interval,
        )

    cron = build_cron(schedule.expression, schedule.timezone)
    first = cron.get_next_fire_time(None, now)
    if first is None:
        raise TriggerConfigError(f"Cron expression '{schedule.expression}' never fires")
    return ScheduledJob(
        rule_id=rule_id,
        trigger_id=trigger.id,
        kind="cron",
        next_fire_at=first.astimezone(timezone.utc),
        cron=cron,
    )


class TriggerRegistry:
    def __init__(
        self,
        scheduler: Scheduler,
        execute: ExecuteFn,
        *,
        clock: Callable[[], datetime] = utcnow,
        condition_source: ConditionSource | None = None,
    ):
        self.scheduler = scheduler
        self.execute = execute
        self.clock = clock
        self.condition_source = condition_source
        self._rules: dict[str, Rule] = {}
        self._event_index: dict[str, set[str]] = {}
        self._webhook_index: dict[str, set[str]] = {}
        self._lock = Lock()

    def register_rule(self, rule: Rule) -> None:
        self.unregister_rule(rule.id)
        if not rule.is_active:
            return

        with self._lock:
            self._rules[rule.id] = rule
            for trigger in rule.enabled_triggers():
                if isinstance(trigger, EventTrigger):
                    self._event_index.setdefault(trigger.event_type.strip().lower(), set()).add(rule.id)
                elif isinstance(trigger, WebhookTrigger):
                    self._webhook_index.setdefault(trigger.webhook_id, set()).add(rule.id)

        for trigger in rule.enabled_triggers():
            if isinstance(trigger, ScheduleTrigger):
                self._arm_schedule(rule, trigger)
            elif isinstance(trigger, ConditionTrigger):
                self._arm_condition(rule, trigger)

    def unregister_rule(self, rule_id: str) -> None:
        with self._lock:
            self._rules.pop(rule_id, None)
            for index in (self._event_index, self._webhook_index):
                for key in list(index):
                    index[key].discard(rule_id)
                    if not index[key]:
                        del index[key]
        self.scheduler.cancel_rule(rule_id)

    def registered_rule_ids(self) -> list[str]:
        with self._lock:
            return list(self._rules)

    async def dispatch_event(
        self,
        event_type: str,
        data: dict[str, Any],
        context: ExecutionContext | None = None,
    ) -> list[str]:
        normalized = (event_type or "").strip().lower()
        with self._lock:
            rule_ids: set[str] = set()
            for key, ids in self._event_index.items():
                if trigger_matches(key, normalized):
                    rule_ids.update(ids)
            candidates = [rule for rule_id, rule in self._rules.items() if rule_id in rule_ids]

        matched = [rule for rule in candidates if self._event_trigger_for(rule, normalized, data) is not None]
        triggered_by = f"event:{event_type}"
        base = context or ExecutionContext()
        run_context = base.model_copy(update={"metadata": {**base.metadata, "triggered_by": triggered_by}})
        return await self._dispatch(matched, data, run_context, triggered_by)

    async def dispatch_webhook(
        self,
        webhook_id: str,
        data: dict[str, Any],
        headers: dict[str, str] | None = None,
    ) -> list[str]:
        incoming = {key.lower(): value for key, value in (headers or {}).items()}
        with self._lock:
            rule_ids = self._webhook_index.get(webhook_id, set())
            candidates = [rule for rule_id, rule in self._rules.items() if rule_id in rule_ids]

        allowed: list[Rule] = []
        for rule in candidates:
            trigger = next(
                (
                    item
                    for item in rule.enabled_triggers()
                    if isinstance(item, WebhookTrigger) and item.webhook_id == webhook_id
                ),
                None,
            )
            if trigger is None:
                continue
            if not _webhook_authorized(trigger, incoming):
                log_event(
                    logger,
                    "webhook.unauthorized",
                    level=logging.WARNING,
                    rule_id=rule.id,
                    webhook_id=webhook_id,
                )
                continue
            allowed.append(rule)

        triggered_by = f"webhook:{webhook_id}"
        safe_headers = {key: value for key, value in incoming.items() if key not in _REDACTED_HEADERS}
        context = ExecutionContext(metadata={"triggered_by": triggered_by, "headers": safe_headers})
        return await self._dispatch(allowed, data, context, triggered_by)

    async def tick(self, now: datetime | None = None) -> list[str]:
        moment = now or self.clock()
        execution_ids: list[str] = []
        for job in self.scheduler.due(moment):
            with self._lock:
                rule = self._rules.get(job.rule_id)
            if rule is None:
                continue

            try:
                execution_ids.extend(await self._fire(job, rule))
            except Exception as exc:  # noqa: BLE001
                log_event(
                    logger,
                    "trigger.poll_failed",
                    level=logging.ERROR,
                    rule_id=rule.id,
                    trigger_id=job.trigger_id,
                    error=str(exc),
                )
        return execution_ids

    async def _fire(self, job: ScheduledJob, rule: Rule) -> list[str]:
        if job.kind == "condition":
            data = await self._poll_condition(rule, job.trigger_id)
            if data is None:
                return []
            triggered_by = f"condition:{job.trigger_id}"
        else:
            data = {}
            triggered_by = f"schedule:{job.trigger_id}"

        context = ExecutionContext(metadata={"triggered_by": triggered_by})
        return await self._dispatch([rule], data, context, triggered_by)

    async def run_forever(self, poll_seconds: float) -> None:
        while True:
            try:
                await self.tick()
            except Exception as exc:  # noqa: BLE001 - keep the scheduler loop alive
                log_event(logger, "scheduler.tick_failed", level=logging.ERROR, error=str(exc))
            await asyncio.sleep(poll_seconds)

    async def _dispatch(
        self,
        rules: list[Rule],
        data: dict[str, Any],
        context: ExecutionContext,
        triggered_by: str,
    ) -> list[str]:
        execution_ids: list[str] = []
        for rule in sorted(rules, key=lambda item: -item.priority):
            if not rule.is_active:
                continue
            try:
                execution_ids.append(await self.execute(rule.id, data, context, triggered_by))
            except RateLimitExceeded as exc:
                if exc.execution_id:
                    execution_ids.append(exc.execution_id)
                log_event(
                    logger,
                    "dispatch.rate_limited",
                    level=logging.WARNING,
                    rule_id=rule.id,
                    triggered_by=triggered_by,
                    reason=exc.message,
                )
            except Exception as exc:  # noqa: BLE001 - one rule must not block its siblings
                log_event(
                    logger,
                    "dispatch.rule_failed",
                    level=logging.ERROR,
                    rule_id=rule.id,
                    triggered_by=triggered_by,
                    error=str(exc),
                )
        return execution_ids

    def _event_trigger_for(self, rule: Rule, event_type: str, data: dict[str, Any]) -> EventTrigger | None:
        for trigger in rule.enabled_triggers():
            if not isinstance(trigger, EventTrigger):
                continue
            if trigger_matches(trigger.event_type, event_type) and _filters_match(trigger.filters, data):
                return trigger
        return None

    def _arm_schedule(self, rule: Rule, trigger: ScheduleTrigger) -> None:
        try:
            job = build_schedule_job(rule.id, trigger, self.clock())
        except TriggerConfigError as exc:
            log_event(
                logger,
                "trigger.invalid",
                level=logging.WARNING,
                rule_id=rule.id,
                trigger_id=trigger.id,
                error=exc.message,
            )
            return
        self.scheduler.arm(job)
        log_event(
            logger,
            "trigger.armed",
            rule_id=rule.id,
            trigger_id=trigger.id,
            kind=job.kind,
            expression=trigger.schedule.expression,
            next_fire_at=job.next_fire_at.isoformat(),
        )

    def _arm_condition(self, rule: Rule, trigger: ConditionTrigger) -> None:
        if self.condition_source is None:
            log_event(
                logger,
                "trigger.unsupported",
                level=logging.WARNING,
                rule_id=rule.id,
                trigger_id=trigger.id,
                reason="No condition source configured for polling triggers",
            )
            return
        interval = timedelta(minutes=trigger.condition.check_interval)
        self.scheduler.arm(
            ScheduledJob(
                rule_id=rule.id,
                trigger_id=trigger.id,
                kind="condition",
                next_fire_at=self.clock() + interval,
                interval=interval,
            )
        )

    async def _poll_condition(self, rule: Rule, trigger_id: str) -> dict[str, Any] | None:
        trigger = next(
            (item for item in rule.enabled_triggers() if isinstance(item, ConditionTrigger) and item.id == trigger_id),
            None,
        )
        if trigger is None or self.condition_source is None:
            return None
        data = await self.condition_source(rule, trigger)
        if data is None:
            return None
        check = Condition(
            field=trigger.condition.field,
            operator=trigger.condition.operator,
            value=trigger.condition.value,
        )
        return data if evaluate_conditions([check], data) else None


def _filters_match(filters: dict[str, Any], data: dict[str, Any]) -> bool:
    for path, expected in filters.items():
        check = Condition(field=path, operator="equals", value=expected)
        if not evaluate_conditions([check], data):
            return False
    return True


def _webhook_authorized(trigger: WebhookTrigger, incoming: dict[str, str]) -> bool:
    try:
        expected = authentication_headers(trigger.webhook.authentication)
    except ValueError:
        return False
    for name, value in expected.items():
        if not hmac.compare_digest(value.encode("utf-8"), incoming.get(name.lower(), "").encode("utf-8")):
            return False
    return True
