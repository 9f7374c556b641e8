from datetime import datetime, timedelta, timezone
from typing import Any

from fastapi import APIRouter, Body, Depends, HTTPException, Query, Request

from autoflow.core.api_docs import error_responses
from autoflow.core.deps import get_engine, get_tenant_id
from autoflow.schemas.automation import (
    AutomationMetrics,
    DispatchOut,
    EventTriggerIn,
    ExecuteRuleIn,
    Execution,
    ExecutionListOut,
    ExecutionStatus,
    MetricsPeriod,
    Rule,
    RuleCreate,
    RuleDefinition,
    RuleListOut,
    TemplateRuleIn,
)
from autoflow.schemas.common import paginate
from autoflow.services.engine import AutomationEngine

router = APIRouter(prefix="/automations", tags=["automation"])


@router.post(
    "/rules",
    response_model=Rule,
    status_code=201,
    summary="Create automation rule",
    responses=error_responses(400, 422, 500),
)
async def create_rule(
    payload: RuleDefinition,
    tenant_id: str = Depends(get_tenant_id),
    engine: AutomationEngine = Depends(get_engine),
):
    rule_in = RuleCreate.model_validate({**payload.model_dump(), "tenant_id": tenant_id})
    return await engine.create_rule(rule_in)


@router.get(
    "/rules",
    response_model=RuleListOut,
    summary="List automation rules",
    responses=error_responses(400, 500),
)
async def list_rules(
    is_active: bool | None = Query(default=None),
    tenant_id: str = Depends(get_tenant_id),
    engine: AutomationEngine = Depends(get_engine),
):
    rules = await engine.list_rules(tenant_id)
    if is_active is not None:
        rules = [rule for rule in rules if rule.is_active == is_active]
    return RuleListOut(items=rules)


@router.get(
    "/rules/{rule_id}",
    response_model=Rule,
    summary="Get automation rule",
    responses=error_responses(400, 404, 500),
)
async def get_rule(
    rule_id: str,
    tenant_id: str = Depends(get_tenant_id),
    engine: AutomationEngine = Depends(get_engine),
):
    return await engine.get_rule(rule_id, tenant_id)


@router.put(
    "/rules/{rule_id}",
    response_model=Rule,
    summary="Replace automation rule definition",
    responses=error_responses(400, 404, 422, 500),
)
async def update_rule(
    rule_id: str,
    payload: RuleDefinition,
    tenant_id: str = Depends(get_tenant_id),
    engine: AutomationEngine = Depends(get_engine),
):
    return await engine.update_rule(rule_id, payload, tenant_id)


@router.post(
    "/rules/{rule_id}/deactivate",
    response_model=Rule,
    summary="Deactivate automation rule",
    responses=error_responses(400, 404, 500),
)
async def deactivate_rule(
    rule_id: str,
    tenant_id: str = Depends(get_tenant_id),
    engine: AutomationEngine = Depends(get_engine),
):
    return await engine.deactivate_rule(rule_id, tenant_id)


@router.post(
    "/templates/{template_name}",
    response_model=Rule,
    status_code=201,
    summary="Create rule from template",
    responses=error_responses(400, 404, 422, 500),
)
async def create_rule_from_template(
    template_name: str,
    payload: TemplateRuleIn,
    tenant_id: str = Depends(get_tenant_id),
    engine: AutomationEngine = Depends(get_engine),
):
    return await engine.create_rule_from_template(template_name, payload.config, tenant_id, payload.created_by)


@router.post(
    "/rules/{rule_id}/execute",
    response_model=Execution,
    summary="Execute automation rule manually",
    responses=error_responses(400, 404, 409, 422, 429, 500),
)
async def execute_rule(
    rule_id: str,
    payload: ExecuteRuleIn,
    tenant_id: str = Depends(get_tenant_id),
    engine: AutomationEngine = Depends(get_engine),
):
    await engine.get_rule(rule_id, tenant_id)
    execution_id = await engine.execute_rule(rule_id, payload.trigger_data, payload.context, triggered_by="manual")
    return await engine.get_execution(execution_id, tenant_id)


@router.post(
    "/events",
    response_model=DispatchOut,
    summary="Dispatch event to matching rules",
    responses=error_responses(400, 422, 500),
)
async def trigger_event(
    payload: EventTriggerIn,
    tenant_id: str = Depends(get_tenant_id),
    engine: AutomationEngine = Depends(get_engine),
):
    context = payload.context.model_copy(update={"metadata": {**payload.context.metadata, "tenant_id": tenant_id}})
    execution_ids = await engine.trigger_event(payload.event_type, payload.data, context)
    return DispatchOut(execution_ids=execution_ids)


@router.post(
    "/webhooks/{webhook_id}",
    response_model=DispatchOut,
    summary="Receive inbound webhook",
    responses=error_responses(422, 500),
)
async def receive_webhook(
    webhook_id: str,
    request: Request,
    payload: dict[str, Any] | None = Body(default=None),
    engine: AutomationEngine = Depends(get_engine),
):
    execution_ids = await engine.handle_webhook_trigger(webhook_id, payload or {}, dict(request.headers))
    return DispatchOut(execution_ids=execution_ids)


@router.get(
    "/executions",
    response_model=ExecutionListOut,
    summary="List automation executions",
    responses=error_responses(400, 422, 500),
)
async def list_executions(
    rule_id: str | None = Query(default=None),
    status: ExecutionStatus | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    tenant_id: str = Depends(get_tenant_id),
    engine: AutomationEngine = Depends(get_engine),
):
    rows = await engine.list_executions(tenant_id, rule_id=rule_id, status=status)
    page, meta = paginate(rows, limit=limit, offset=offset)
    return ExecutionListOut(
        items=page,
        pagination=meta,
        rule_id=rule_id,
        status=status,
    )


@router.get(
    "/executions/{execution_id}",
    response_model=Execution,
    summary="Get automation execution",
    responses=error_responses(400, 404, 500),
)
async def get_execution(
    execution_id: str,
    tenant_id: str = Depends(get_tenant_id),
    engine: AutomationEngine = Depends(get_engine),
):
    return await engine.get_execution(execution_id, tenant_id)


@router.post(
    "/executions/{execution_id}/cancel",
    response_model=Execution,
    summary="Cancel in-flight execution",
    responses=error_responses(400, 404, 500),
)
async def cancel_execution(
    execution_id: str,
    tenant_id: str = Depends(get_tenant_id),
    engine: AutomationEngine = Depends(get_engine),
):
    return await engine.cancel_execution(execution_id, tenant_id)


@router.get(
    "/metrics",
    response_model=AutomationMetrics,
    summary="Automation metrics for a period",
    responses=error_responses(400, 422, 500),
)
async def get_metrics(
    start: datetime | None = Query(default=None),
    end: datetime | None = Query(default=None),
    tenant_id: str = Depends(get_tenant_id),
    engine: AutomationEngine = Depends(get_engine),
):
    period = None
    if start is not None or end is not None:
        resolved_end = _as_utc(end) if end else engine.clock()
        resolved_start = _as_utc(start) if start else resolved_end - timedelta(days=30)
        if resolved_end < resolved_start:
            raise HTTPException(status_code=422, detail="end must not precede start")
        period = MetricsPeriod(start=resolved_start, end=resolved_end)
    return await engine.get_metrics(tenant_id, period)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value
