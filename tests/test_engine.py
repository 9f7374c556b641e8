import asyncio
from datetime import timedelta

import pytest

from autoflow.core.errors import RateLimitExceeded, RuleInactive, RuleNotFound, TemplateNotFound
from autoflow.schemas.automation import ExecutionContext, RuleDefinition
from autoflow.services.actions import ActionRunner
from autoflow.services.collaborators import ActionCollaborators
from autoflow.services.engine import AutomationEngine
from autoflow.services.stores import InMemoryExecutionStore, InMemoryRuleStore

from conftest import T0, custom_action, make_rule


async def _execution(engine, execution_id):
    return await engine.execution_store.get(execution_id)


@pytest.mark.asyncio
async def test_create_rule_assigns_id_and_timestamps(automation_engine):
    rule = await automation_engine.create_rule(make_rule(name="Welcome"))

    assert rule.id.startswith("rule_")
    assert rule.created_at == T0
    stored = await automation_engine.rule_store.get(rule.id)
    assert stored.name == "Welcome"


@pytest.mark.asyncio
async def test_execute_unknown_or_inactive_rule_raises_without_record(automation_engine):
    with pytest.raises(RuleNotFound):
        await automation_engine.execute_rule("rule_missing", {})

    rule = await automation_engine.create_rule(make_rule(is_active=False))
    with pytest.raises(RuleInactive):
        await automation_engine.execute_rule(rule.id, {})
    assert await automation_engine.execution_store.list("tenant-1") == []


@pytest.mark.asyncio
async def test_all_actions_succeed_marks_execution_completed(automation_engine, clock):
    rule = await automation_engine.create_rule(
        make_rule(actions=[custom_action("First", "one", order=1), custom_action("Second", "two", order=2)])
    )

    execution_id = await automation_engine.execute_rule(rule.id, {"x": 1})
    execution = await _execution(automation_engine, execution_id)

    assert execution.status == "completed"
    assert execution.triggered_by == "manual"
    assert [step.name for step in execution.steps] == ["First", "Second"]
    assert all(step.status == "completed" for step in execution.steps)
    assert execution.duration is not None and execution.duration >= 0
    assert execution.completed_at >= execution.started_at
    assert execution.result == {"steps_total": 2, "steps_completed": 2, "steps_failed": 0}


@pytest.mark.asyncio
async def test_actions_run_in_stable_order(automation_engine, fakes):
    rule = await automation_engine.create_rule(
        make_rule(
            actions=[
                custom_action("Late", "late", order=5),
                custom_action("Early-a", "early-a", order=1),
                custom_action("Early-b", "early-b", order=1),
                custom_action("Disabled", "off", order=0, enabled=False),
            ]
        )
    )

    await automation_engine.execute_rule(rule.id, {})

    assert fakes["custom"].calls == ["early-a", "early-b", "late"]


@pytest.mark.asyncio
async def test_false_conditions_complete_as_skipped_without_steps(automation_engine, fakes):
    rule = await automation_engine.create_rule(
        make_rule(
            conditions=[{"field": "size", "operator": "less_than", "value": 100}],
            actions=[custom_action("Never", "never")],
        )
    )

    execution_id = await automation_engine.execute_rule(rule.id, {"size": 500})
    execution = await _execution(automation_engine, execution_id)

    assert execution.status == "completed"
    assert execution.steps == []
    assert execution.result == {"skipped": True, "reason": "Conditions not met"}
    assert fakes["custom"].calls == []


@pytest.mark.asyncio
async def test_failure_halts_following_actions(automation_engine, fakes):
    rule = await automation_engine.create_rule(
        make_rule(
            actions=[
                custom_action("Ok", "ok", order=1),
                custom_action("Breaks", "fail", order=2),
                custom_action("Never", "never", order=3),
            ]
        )
    )

    execution_id = await automation_engine.execute_rule(rule.id, {})
    execution = await _execution(automation_engine, execution_id)

    assert execution.status == "failed"
    assert execution.error == "Action failed: Breaks"
    assert [step.status for step in execution.steps] == ["completed", "failed"]
    assert "database write rejected" in execution.steps[1].error
    assert execution.completed_at is not None
    assert fakes["custom"].calls == ["ok", "fail"]


@pytest.mark.asyncio
async def test_continue_on_error_keeps_going(automation_engine, fakes):
    rule = await automation_engine.create_rule(
        make_rule(
            actions=[
                custom_action("Soft", "fail", order=1, continue_on_error=True),
                custom_action("After", "after", order=2),
            ]
        )
    )

    execution_id = await automation_engine.execute_rule(rule.id, {})
    execution = await _execution(automation_engine, execution_id)

    assert execution.status == "completed"
    assert [step.status for step in execution.steps] == ["failed", "completed"]
    assert fakes["custom"].calls == ["fail", "after"]


@pytest.mark.asyncio
async def test_retry_attempts_recover_flaky_action(automation_engine, fakes):
    rule = await automation_engine.create_rule(
        make_rule(actions=[custom_action("Flaky", "flaky:2")], settings={"retry_attempts": 2})
    )

    execution_id = await automation_engine.execute_rule(rule.id, {})
    execution = await _execution(automation_engine, execution_id)

    assert execution.status == "completed"
    assert execution.steps[0].attempts == 3


@pytest.mark.asyncio
async def test_retry_budget_exhausted_fails_step(automation_engine):
    rule = await automation_engine.create_rule(
        make_rule(actions=[custom_action("Flaky", "flaky:3")], settings={"retry_attempts": 1})
    )

    execution_id = await automation_engine.execute_rule(rule.id, {})
    execution = await _execution(automation_engine, execution_id)

    assert execution.status == "failed"
    assert execution.steps[0].attempts == 2
    assert execution.steps[0].error == "flaky failure 2"


@pytest.mark.asyncio
async def test_parallel_mode_lets_started_actions_finish(automation_engine, fakes):
    rule = await automation_engine.create_rule(
        make_rule(
            actions=[
                custom_action("Breaks", "fail", order=1),
                custom_action("Slow", "sleep:0.01", order=2),
            ],
            settings={"run_in_parallel": True},
        )
    )

    execution_id = await automation_engine.execute_rule(rule.id, {})
    execution = await _execution(automation_engine, execution_id)

    assert execution.status == "failed"
    assert execution.error == "Action failed: Breaks"
    assert [step.status for step in execution.steps] == ["failed", "completed"]
    assert sorted(fakes["custom"].calls) == ["fail", "sleep:0.01"]


@pytest.mark.asyncio
async def test_timeout_marks_execution_and_stops_new_steps(automation_engine, fakes):
    rule = await automation_engine.create_rule(
        make_rule(
            actions=[custom_action("Slow", "sleep:1.5", order=1), custom_action("Never", "never", order=2)],
            settings={"timeout_seconds": 1},
        )
    )

    execution_id = await automation_engine.execute_rule(rule.id, {})
    execution = await _execution(automation_engine, execution_id)

    assert execution.status == "timeout"
    assert "timed out" in execution.error
    assert [step.name for step in execution.steps] == ["Slow"]

    await asyncio.sleep(1.0)
    execution = await _execution(automation_engine, execution_id)
    assert execution.status == "timeout"
    assert execution.steps[0].status == "completed"
    assert "never" not in fakes["custom"].calls


@pytest.mark.asyncio
async def test_cancel_execution_stops_further_steps(automation_engine, fakes):
    rule = await automation_engine.create_rule(
        make_rule(actions=[custom_action("Blocks", "block", order=1), custom_action("Never", "never", order=2)])
    )

    task = asyncio.create_task(automation_engine.execute_rule(rule.id, {}))
    while not fakes["custom"].calls:
        await asyncio.sleep(0)
    [running] = await automation_engine.execution_store.list("tenant-1")

    cancelled = await automation_engine.cancel_execution(running.id)
    assert cancelled.status == "cancelled"

    fakes["custom"].release.set()
    execution_id = await task
    execution = await _execution(automation_engine, execution_id)

    assert execution.status == "cancelled"
    assert [step.name for step in execution.steps] == ["Blocks"]
    assert fakes["custom"].calls == ["block"]


@pytest.mark.asyncio
async def test_cancel_finished_execution_is_a_no_op(automation_engine):
    rule = await automation_engine.create_rule(make_rule(actions=[custom_action("Ok", "ok")]))
    execution_id = await automation_engine.execute_rule(rule.id, {})

    execution = await automation_engine.cancel_execution(execution_id)
    assert execution.status == "completed"


@pytest.mark.asyncio
async def test_rate_limit_records_failed_execution_and_raises(automation_engine):
    rule = await automation_engine.create_rule(make_rule(settings={"max_executions_per_day": 2}))

    await automation_engine.execute_rule(rule.id, {})
    await automation_engine.execute_rule(rule.id, {})
    with pytest.raises(RateLimitExceeded) as exc_info:
        await automation_engine.execute_rule(rule.id, {})

    blocked = await _execution(automation_engine, exc_info.value.execution_id)
    assert blocked.status == "failed"
    assert blocked.error == "Rate limit exceeded"
    assert blocked.steps == []


@pytest.mark.asyncio
async def test_rule_metadata_tracks_outcomes(automation_engine):
    rule = await automation_engine.create_rule(make_rule(actions=[custom_action("Ok", "ok")]))

    await automation_engine.execute_rule(rule.id, {})
    await automation_engine.execute_rule(rule.id, {})

    stored = await automation_engine.rule_store.get(rule.id)
    assert stored.metadata.execution_count == 2
    assert stored.metadata.last_executed == T0
    assert stored.metadata.success_rate == 1.0


@pytest.mark.asyncio
async def test_metadata_success_rate_counts_failures(automation_engine):
    rule = await automation_engine.create_rule(make_rule(actions=[custom_action("Breaks", "fail")]))
    ok_rule = await automation_engine.create_rule(make_rule(actions=[custom_action("Ok", "ok")]))

    await automation_engine.execute_rule(rule.id, {})
    await automation_engine.execute_rule(ok_rule.id, {})

    assert (await automation_engine.rule_store.get(rule.id)).metadata.success_rate == 0.0
    assert (await automation_engine.rule_store.get(ok_rule.id)).metadata.success_rate == 1.0


@pytest.mark.asyncio
async def test_file_uploaded_event_assigns_reviewer(automation_engine, fakes):
    rule = await automation_engine.create_rule(
        make_rule(
            triggers=[{"type": "event", "event_type": "file.uploaded"}],
            actions=[
                {
                    "type": "assignment",
                    "name": "Assign to reviewer",
                    "order": 1,
                    "config": {"assign_to": "reviewer-1", "entity_id": "{{fileId}}"},
                }
            ],
        )
    )

    execution_ids = await automation_engine.trigger_event(
        "file.uploaded",
        {"fileId": "f1"},
        ExecutionContext(user_id="u1", entity_type="file", entity_id="f1"),
    )

    assert len(execution_ids) == 1
    execution = await _execution(automation_engine, execution_ids[0])
    assert execution.rule_id == rule.id
    assert execution.status == "completed"
    assert execution.triggered_by == "event:file.uploaded"
    assert execution.steps[0].output["assigned"] == 1
    assert fakes["assignments"].assignments[0]["entity_id"] == "f1"


@pytest.mark.asyncio
async def test_interval_schedule_fires_twice(automation_engine, clock):
    rule = await automation_engine.create_rule(
        make_rule(
            triggers=[{"id": "every-5", "type": "schedule", "schedule": {"type": "interval", "expression": "5m"}}],
            actions=[custom_action("Tick", "tick")],
        )
    )

    first = await automation_engine.tick(T0 + timedelta(minutes=5))
    second = await automation_engine.tick(T0 + timedelta(minutes=10))

    executions = await automation_engine.list_executions("tenant-1", rule_id=rule.id)
    assert len(first) == 1 and len(second) == 1
    assert len(executions) == 2
    assert all(item.triggered_by == "schedule:every-5" for item in executions)


@pytest.mark.asyncio
async def test_deactivate_rule_unregisters_triggers(automation_engine):
    rule = await automation_engine.create_rule(make_rule(triggers=[{"type": "event", "event_type": "ping"}]))

    await automation_engine.deactivate_rule(rule.id)

    assert await automation_engine.trigger_event("ping", {}) == []
    assert (await automation_engine.rule_store.get(rule.id)).is_active is False


@pytest.mark.asyncio
async def test_update_rule_reindexes_triggers_and_keeps_stats(automation_engine):
    rule = await automation_engine.create_rule(
        make_rule(triggers=[{"type": "event", "event_type": "old"}], actions=[custom_action("Ok", "ok")])
    )
    await automation_engine.trigger_event("old", {})

    definition = RuleDefinition.model_validate(
        {"name": "Renamed", "triggers": [{"type": "event", "event_type": "new"}], "actions": []}
    )
    updated = await automation_engine.update_rule(rule.id, definition)

    assert updated.name == "Renamed"
    assert updated.metadata.execution_count == 1
    assert await automation_engine.trigger_event("old", {}) == []
    assert len(await automation_engine.trigger_event("new", {})) == 1


@pytest.mark.asyncio
async def test_setup_scheduled_triggers_registers_stored_rules(clock, fakes):
    rules = InMemoryRuleStore()
    seeding = AutomationEngine(rules, InMemoryExecutionStore(), ActionRunner(), clock=clock)
    await seeding.create_rule(make_rule(triggers=[{"type": "event", "event_type": "ping"}]))
    await seeding.create_rule(make_rule(is_active=False, triggers=[{"type": "event", "event_type": "ping"}]))

    restarted = AutomationEngine(rules, InMemoryExecutionStore(), ActionRunner(ActionCollaborators(**fakes)), clock=clock)
    assert await restarted.trigger_event("ping", {}) == []
    assert await restarted.setup_scheduled_triggers() == 1
    assert len(await restarted.trigger_event("ping", {})) == 1


@pytest.mark.asyncio
async def test_create_rule_from_template(automation_engine, fakes):
    rule = await automation_engine.create_rule_from_template(
        "file_auto_assign", {"reviewer_id": "reviewer-9"}, "tenant-1", "admin-1"
    )

    assert rule.name == "Auto-assign Files"
    assert rule.metadata.created_by == "admin-1"
    assert rule.settings.max_executions_per_day == 100
    assert rule.settings.run_in_parallel is True

    [execution_id] = await automation_engine.trigger_event("file.uploaded", {"fileId": "f7"})
    execution = await _execution(automation_engine, execution_id)
    assert execution.status == "completed"
    assert fakes["assignments"].assignments[0] == {
        "entity_id": "f7",
        "assignees": ["reviewer-9"],
        "assignment_type": "file",
        "priority": "medium",
        "due_date": None,
    }


@pytest.mark.asyncio
async def test_unknown_template_lists_available(automation_engine):
    with pytest.raises(TemplateNotFound, match="file_auto_assign"):
        await automation_engine.create_rule_from_template("nope", {}, "tenant-1", "admin-1")
