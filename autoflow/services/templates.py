import json
from typing import Any, Callable

from autoflow.core.errors import AutomationError, TemplateNotFound
from autoflow.schemas.automation import RuleCreate


TemplateBuilder = Callable[[dict[str, Any]], dict[str, Any]]


def _required(config: dict[str, Any], key: str, template_name: str) -> Any:
    value = config.get(key)
    if value in (None, "", []):
        raise AutomationError(f"Template '{template_name}' requires config key '{key}'")
    return value


def _file_auto_assign(config: dict[str, Any]) -> dict[str, Any]:
    reviewer = _required(config, "reviewer_id", "file_auto_assign")
    return {
        "name": "Auto-assign Files",
        "description": "Automatically assign new files to reviewers based on criteria",
        "priority": 1,
        "triggers": [
            {"id": "trigger_1", "type": "event", "name": "File Uploaded", "event_type": "file.uploaded"},
        ],
        "conditions": [],
        "actions": [
            {
                "id": "action_1",
                "type": "assignment",
                "name": "Assign to Reviewer",
                "order": 1,
                "config": {
                    "assign_to": reviewer,
                    "assignment_type": "file",
                    "entity_id": "{{fileId}}",
                    "priority": config.get("priority", "medium"),
                },
            }
        ],
        "settings": {
            "max_executions_per_day": 100,
            "cooldown_period": 5,
            "retry_attempts": 3,
            "timeout_seconds": 30,
            "run_in_parallel": True,
        },
        "metadata": {"category": "files", "tags": ["files", "assignment"]},
    }


def _qc_failure_alert(config: dict[str, Any]) -> dict[str, Any]:
    recipients = _required(config, "recipients", "qc_failure_alert")
    if isinstance(recipients, str):
        recipients = [recipients]
    threshold = config.get("score_threshold", 70)
    return {
        "name": "QC Failure Alert",
        "description": "Notify the QC leads when a review scores below the threshold.",
        "priority": 5,
        "triggers": [
            {"id": "trigger_1", "type": "event", "name": "QC Completed", "event_type": "qc.completed"},
        ],
        "conditions": [
            {"field": "score", "operator": "less_than", "value": threshold},
        ],
        "actions": [
            {
                "id": "action_1",
                "type": "notification",
                "name": "Alert QC Leads",
                "order": 1,
                "config": {
                    "type": config.get("channel", "in_app"),
                    "recipients": recipients,
                    "title": "QC failure on {{fileId}}",
                    "template": "File {{fileId}} scored {{score}} (threshold %s)." % threshold,
                },
            }
        ],
        "settings": {"max_executions_per_day": 500, "retry_attempts": 1},
        "metadata": {"category": "qc", "tags": ["qc", "alert"]},
    }


def _daily_digest(config: dict[str, Any]) -> dict[str, Any]:
    recipients = _required(config, "recipients", "daily_digest")
    if isinstance(recipients, str):
        recipients = [recipients]
    return {
        "name": "Daily Automation Digest",
        "description": "Email a daily summary to the listed recipients.",
        "priority": 0,
        "triggers": [
            {
                "id": "trigger_1",
                "type": "schedule",
                "name": "Every day",
                "schedule": {"type": "interval", "expression": config.get("interval", "1d")},
            }
        ],
        "conditions": [],
        "actions": [
            {
                "id": "action_1",
                "type": "email",
                "name": "Send Digest",
                "order": 1,
                "config": {
                    "to": recipients,
                    "subject": config.get("subject", "Daily automation digest"),
                    "body": config.get("body", "Your daily automation digest is ready."),
                },
            }
        ],
        "settings": {"max_executions_per_day": 5},
        "metadata": {"category": "system", "tags": ["digest"]},
    }


_RULE_TEMPLATE_LIBRARY: dict[str, TemplateBuilder] = {
    "file_auto_assign": _file_auto_assign,
    "qc_failure_alert": _qc_failure_alert,
    "daily_digest": _daily_digest,
}


def list_rule_templates() -> list[str]:
    return sorted(_RULE_TEMPLATE_LIBRARY)


def build_template_rule(
    template_name: str,
    config: dict[str, Any] | None,
    *,
    tenant_id: str,
    created_by: str,
) -> RuleCreate:
    normalized = (template_name or "").strip().lower()
    builder = _RULE_TEMPLATE_LIBRARY.get(normalized)
    if builder is None:
        available = ", ".join(list_rule_templates())
        raise TemplateNotFound(f"Unknown template '{template_name}'. Available: {available}")

    payload = builder(json.loads(json.dumps(config or {}, default=str)))
    payload["tenant_id"] = tenant_id
    payload["metadata"] = {**payload.get("metadata", {}), "created_by": created_by}
    return RuleCreate.model_validate(payload)
