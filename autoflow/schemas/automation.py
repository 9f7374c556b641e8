from datetime import date as calendar_date, datetime, timezone
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator

from autoflow.core.id_utils import generate_shortuuid
from autoflow.schemas.common import PaginationMeta


ConditionOperator = Literal[
    "equals",
    "not_equals",
    "greater_than",
    "less_than",
    "contains",
    "starts_with",
    "ends_with",
    "in",
    "not_in",
    "exists",
    "not_exists",
]
LogicalOperator = Literal["and", "or"]
ActionType = Literal[
    "notification",
    "email",
    "webhook",
    "database",
    "file_operation",
    "workflow",
    "assignment",
    "custom",
]
HttpMethod = Literal["GET", "POST", "PUT", "DELETE", "PATCH"]
RuleCategory = Literal["qc", "files", "projects", "users", "system", "custom"]
ExecutionStatus = Literal["pending", "running", "completed", "failed", "cancelled", "timeout"]
StepStatus = Literal["pending", "running", "completed", "failed", "skipped"]

TERMINAL_EXECUTION_STATUSES = frozenset({"completed", "failed", "cancelled", "timeout"})


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class HttpAuthentication(BaseModel):
    type: Literal["bearer", "basic", "api_key"]
    credentials: dict[str, str] = Field(default_factory=dict)


# Triggers


class _TriggerBase(BaseModel):
    id: str = Field(default_factory=generate_shortuuid)
    name: str = ""
    enabled: bool = True
    filters: dict[str, Any] = Field(default_factory=dict)


class EventTrigger(_TriggerBase):
    type: Literal["event"] = "event"
    event_type: str = Field(min_length=1, max_length=120)


class ScheduleConfig(BaseModel):
    type: Literal["cron", "interval"]
    expression: str = Field(min_length=1, max_length=120)
    timezone: str = "UTC"


class ScheduleTrigger(_TriggerBase):
    type: Literal["schedule"] = "schedule"
    schedule: ScheduleConfig


class WebhookTriggerConfig(BaseModel):
    webhook_id: str | None = None
    url: str | None = None
    method: HttpMethod = "POST"
    headers: dict[str, str] = Field(default_factory=dict)
    authentication: HttpAuthentication | None = None


class WebhookTrigger(_TriggerBase):
    type: Literal["webhook"] = "webhook"
    webhook: WebhookTriggerConfig = Field(default_factory=WebhookTriggerConfig)

    @property
    def webhook_id(self) -> str:
        return self.webhook.webhook_id or self.id


class PollingCondition(BaseModel):
    field: str = Field(min_length=1, max_length=200)
    operator: ConditionOperator = "equals"
    value: Any = None
    check_interval: int = Field(default=5, ge=1, description="Minutes between checks")


class ConditionTrigger(_TriggerBase):
    type: Literal["condition"] = "condition"
    condition: PollingCondition


class ManualTrigger(_TriggerBase):
    type: Literal["manual"] = "manual"


Trigger = Annotated[
    Union[EventTrigger, ScheduleTrigger, WebhookTrigger, ConditionTrigger, ManualTrigger],
    Field(discriminator="type"),
]


class Condition(BaseModel):
    id: str = Field(default_factory=generate_shortuuid)
    field: str = Field(min_length=1, max_length=200)
    operator: ConditionOperator = "equals"
    value: Any = None
    logical_operator: LogicalOperator = "and"
    group: str | None = None


# Actions


class _ActionBase(BaseModel):
    id: str = Field(default_factory=generate_shortuuid)
    name: str = ""
    order: int = 0
    enabled: bool = True
    continue_on_error: bool = False


class NotificationConfig(BaseModel):
    type: Literal["email", "sms", "push", "slack", "in_app"] = "in_app"
    recipients: list[str] = Field(min_length=1)
    template: str = Field(min_length=1)
    title: str | None = None
    variables: dict[str, str] = Field(default_factory=dict)


class NotificationAction(_ActionBase):
    type: Literal["notification"] = "notification"
    config: NotificationConfig


class EmailConfig(BaseModel):
    to: list[str] = Field(min_length=1)
    cc: list[str] = Field(default_factory=list)
    bcc: list[str] = Field(default_factory=list)
    subject: str
    body: str
    attachments: list[str] = Field(default_factory=list)


class EmailAction(_ActionBase):
    type: Literal["email"] = "email"
    config: EmailConfig


class WebhookActionConfig(BaseModel):
    url: str = Field(min_length=1)
    method: HttpMethod = "POST"
    headers: dict[str, str] = Field(default_factory=dict)
    body: str | None = None
    authentication: HttpAuthentication | None = None


class WebhookAction(_ActionBase):
    type: Literal["webhook"] = "webhook"
    config: WebhookActionConfig


class DatabaseConfig(BaseModel):
    operation: Literal["insert", "update", "delete", "select"]
    table: str = Field(min_length=1, max_length=120)
    data: dict[str, Any] = Field(default_factory=dict)
    conditions: dict[str, Any] = Field(default_factory=dict)


class DatabaseAction(_ActionBase):
    type: Literal["database"] = "database"
    config: DatabaseConfig


class FileConfig(BaseModel):
    operation: Literal["move", "copy", "delete", "rename"]
    source: str = Field(min_length=1)
    destination: str | None = None
    options: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def validate_destination(self) -> "FileConfig":
        if self.operation != "delete" and not self.destination:
            raise ValueError(f"File {self.operation} requires a destination")
        return self


class FileAction(_ActionBase):
    type: Literal["file_operation"] = "file_operation"
    config: FileConfig


class WorkflowConfig(BaseModel):
    workflow_id: str = Field(min_length=1)
    data: dict[str, Any] = Field(default_factory=dict)
    assign_to: list[str] = Field(default_factory=list)


class WorkflowAction(_ActionBase):
    type: Literal["workflow"] = "workflow"
    config: WorkflowConfig


class AssignmentConfig(BaseModel):
    assign_to: str | list[str]
    assignment_type: Literal["file", "project", "qc_review", "form"] = "file"
    entity_id: str = Field(min_length=1)
    priority: Literal["low", "medium", "high", "urgent"] = "medium"
    due_date: datetime | None = None

    @property
    def assignees(self) -> list[str]:
        if isinstance(self.assign_to, str):
            return [self.assign_to]
        return list(self.assign_to)


class AssignmentAction(_ActionBase):
    type: Literal["assignment"] = "assignment"
    config: AssignmentConfig


class CustomConfig(BaseModel):
    script: str = Field(min_length=1)
    language: Literal["javascript", "python", "bash"] = "python"
    parameters: dict[str, Any] = Field(default_factory=dict)


class CustomAction(_ActionBase):
    type: Literal["custom"] = "custom"
    config: CustomConfig


Action = Annotated[
    Union[
        NotificationAction,
        EmailAction,
        WebhookAction,
        DatabaseAction,
        FileAction,
        WorkflowAction,
        AssignmentAction,
        CustomAction,
    ],
    Field(discriminator="type"),
]


# Rules


class RuleSettings(BaseModel):
    max_executions_per_day: int = Field(default=1000, ge=1)
    cooldown_period: int = Field(default=0, ge=0, description="Minutes between executions")
    retry_attempts: int = Field(default=0, ge=0, le=10)
    timeout_seconds: int = Field(default=0, ge=0, le=86_400)
    run_in_parallel: bool = False


class RuleMetadata(BaseModel):
    created_by: str = "system"
    category: RuleCategory = "custom"
    tags: list[str] = Field(default_factory=list)
    last_executed: datetime | None = None
    execution_count: int = 0
    success_rate: float = 0.0
    avg_execution_time: float = 0.0


class RuleDefinition(BaseModel):
    name: str = Field(min_length=2, max_length=120)
    description: str = Field(default="", max_length=255)
    priority: int = 0
    is_active: bool = True
    triggers: list[Trigger] = Field(default_factory=list)
    conditions: list[Condition] = Field(default_factory=list)
    actions: list[Action] = Field(default_factory=list)
    settings: RuleSettings = Field(default_factory=RuleSettings)
    metadata: RuleMetadata = Field(default_factory=RuleMetadata)

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "name": "Auto-assign uploaded files",
                "priority": 1,
                "triggers": [{"type": "event", "event_type": "file.uploaded"}],
                "conditions": [{"field": "size", "operator": "less_than", "value": 1048576}],
                "actions": [
                    {
                        "type": "assignment",
                        "name": "Assign to reviewer",
                        "order": 1,
                        "config": {"assign_to": "user-1", "entity_id": "{{fileId}}"},
                    }
                ],
            }
        }
    )


class RuleCreate(RuleDefinition):
    tenant_id: str = Field(min_length=1, max_length=64)


class Rule(RuleCreate):
    id: str
    created_at: datetime
    updated_at: datetime

    def enabled_triggers(self) -> list[Any]:
        return [trigger for trigger in self.triggers if trigger.enabled]

    def enabled_actions(self) -> list[Any]:
        # sorted() is stable, so equal orders keep list position
        return sorted((action for action in self.actions if action.enabled), key=lambda item: item.order)


# Executions


class ExecutionContext(BaseModel):
    user_id: str | None = None
    entity_type: str | None = None
    entity_id: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class ExecutionStep(BaseModel):
    step_id: str
    type: Literal["condition", "action"] = "action"
    name: str
    status: StepStatus = "pending"
    started_at: datetime | None = None
    completed_at: datetime | None = None
    duration: float | None = None
    input: dict[str, Any] | None = None
    output: dict[str, Any] | None = None
    error: str | None = None
    attempts: int = 0


class Execution(BaseModel):
    id: str
    rule_id: str
    tenant_id: str
    triggered_by: str = "manual"
    triggered_at: datetime
    status: ExecutionStatus = "pending"
    started_at: datetime | None = None
    completed_at: datetime | None = None
    duration: float | None = None
    trigger_data: dict[str, Any] = Field(default_factory=dict)
    context: ExecutionContext = Field(default_factory=ExecutionContext)
    steps: list[ExecutionStep] = Field(default_factory=list)
    error: str | None = None
    result: dict[str, Any] | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_EXECUTION_STATUSES

    @property
    def was_skipped(self) -> bool:
        return self.status == "completed" and bool((self.result or {}).get("skipped"))

    def transition(
        self,
        status: ExecutionStatus,
        *,
        at: datetime | None = None,
        error: str | None = None,
    ) -> bool:
        """Move to ``status`` unless the execution already reached a terminal state.

        Terminal transitions stamp ``completed_at`` and ``duration`` (ms) together.
        Returns False when the transition was refused.
        """
        if self.is_terminal:
            return False
        self.status = status
        if status == "running" and self.started_at is None:
            self.started_at = at or utcnow()
        if status in TERMINAL_EXECUTION_STATUSES:
            self.completed_at = at or utcnow()
            started = self.started_at or self.completed_at
            self.duration = max((self.completed_at - started).total_seconds() * 1000, 0.0)
        if error is not None:
            self.error = error
        return True


# Metrics


class MetricsPeriod(BaseModel):
    start: datetime
    end: datetime

    @model_validator(mode="after")
    def validate_range(self) -> "MetricsPeriod":
        if self.end < self.start:
            raise ValueError("Metrics period end must not precede start")
        return self

    def contains(self, moment: datetime) -> bool:
        return self.start <= moment < self.end


class TopRule(BaseModel):
    rule_id: str
    name: str
    executions: int
    success_rate: float


class ExecutionTrend(BaseModel):
    date: calendar_date
    executions: int
    successes: int
    failures: int


class ErrorCategory(BaseModel):
    error_type: Literal["Timeout", "Network", "Permission", "Validation", "Database", "Other"]
    count: int
    percentage: int


class AutomationMetrics(BaseModel):
    total_rules: int
    active_rules: int
    total_executions: int
    successful_executions: int
    failed_executions: int
    skipped_executions: int
    avg_execution_time: float
    top_rules: list[TopRule]
    execution_trends: list[ExecutionTrend]
    error_analysis: list[ErrorCategory]


# API payloads


class EventTriggerIn(BaseModel):
    event_type: str = Field(min_length=1, max_length=120)
    data: dict[str, Any] = Field(default_factory=dict)
    context: ExecutionContext = Field(default_factory=ExecutionContext)

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "event_type": "file.uploaded",
                "data": {"fileId": "f1"},
                "context": {"user_id": "u1", "entity_type": "file", "entity_id": "f1"},
            }
        }
    )


class ExecuteRuleIn(BaseModel):
    trigger_data: dict[str, Any] = Field(default_factory=dict)
    context: ExecutionContext = Field(default_factory=ExecutionContext)


class TemplateRuleIn(BaseModel):
    config: dict[str, Any] = Field(default_factory=dict)
    created_by: str = Field(default="system", min_length=1, max_length=64)


class DispatchOut(BaseModel):
    execution_ids: list[str]


class RuleListOut(BaseModel):
    items: list[Rule]


class ExecutionListOut(BaseModel):
    items: list[Execution]
    pagination: PaginationMeta
    rule_id: str | None = None
    status: ExecutionStatus | None = None
