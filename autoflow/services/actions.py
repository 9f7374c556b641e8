import base64
import json
from typing import Any, Awaitable, Callable, TypeVar

import httpx

from autoflow.core.errors import ActionExecutionError, UnknownActionType
from autoflow.schemas.automation import (
    ActionType,
    AssignmentConfig,
    CustomConfig,
    DatabaseConfig,
    EmailConfig,
    ExecutionContext,
    FileConfig,
    HttpAuthentication,
    NotificationConfig,
    WebhookActionConfig,
    WorkflowConfig,
)
from autoflow.services.collaborators import ActionCollaborators
from autoflow.services.conditions import build_evaluation_data, render_template, render_value


T = TypeVar("T")
ActionHandler = Callable[[Any, dict[str, Any], dict[str, Any], ExecutionContext], Awaitable[dict[str, Any]]]


def authentication_headers(authentication: HttpAuthentication | None) -> dict[str, str]:
    if authentication is None:
        return {}
    credentials = authentication.credentials
    if authentication.type == "bearer":
        token = credentials.get("token")
        if not token:
            raise ValueError("Bearer authentication requires a token credential")
        return {"Authorization": f"Bearer {token}"}
    if authentication.type == "basic":
        username = credentials.get("username")
        if not username:
            raise ValueError("Basic authentication requires a username credential")
        raw = f"{username}:{credentials.get('password', '')}".encode("utf-8")
        return {"Authorization": f"Basic {base64.b64encode(raw).decode('ascii')}"}
    key = credentials.get("key")
    if not key:
        raise ValueError("API key authentication requires a key credential")
    return {credentials.get("header") or "X-API-Key": key}


class ActionRunner:
    def __init__(
        self,
        collaborators: ActionCollaborators | None = None,
        *,
        http_client: httpx.AsyncClient | None = None,
        webhook_timeout_seconds: float = 30.0,
    ):
        self.collaborators = collaborators or ActionCollaborators()
        self.http_client = http_client
        self.webhook_timeout_seconds = webhook_timeout_seconds
        self._handlers: dict[ActionType, ActionHandler] = {
            "notification": self._run_notification,
            "email": self._run_email,
            "webhook": self._run_webhook,
            "database": self._run_database,
            "file_operation": self._run_file_operation,
            "workflow": self._run_workflow,
            "assignment": self._run_assignment,
            "custom": self._run_custom,
        }

    async def run(
        self,
        action: Any,
        trigger_data: dict[str, Any],
        context: ExecutionContext,
    ) -> dict[str, Any]:
        handler = self._handlers.get(action.type)
        if handler is None:
            raise UnknownActionType(str(action.type))

        data = build_evaluation_data(trigger_data, context)
        try:
            return await handler(action.config, data, trigger_data, context)
        except ActionExecutionError:
            raise
        except Exception as exc:  # noqa: BLE001 - collaborator failures are recorded on the step
            raise ActionExecutionError(_short_error(exc)) from exc

    async def _run_notification(
        self,
        config: NotificationConfig,
        data: dict[str, Any],
        trigger_data: dict[str, Any],
        context: ExecutionContext,
    ) -> dict[str, Any]:
        sender = _require(self.collaborators.notifications, "notification sender")
        scope = {**data, **config.variables}
        message = render_template(config.template, scope)
        title = render_template(config.title, scope) if config.title else message
        recipients = [render_template(item, scope) for item in config.recipients]
        for recipient in recipients:
            await sender.send(recipient, title, message, dict(trigger_data), [config.type])
        return {"sent": len(recipients), "recipients": recipients, "channel": config.type}

    async def _run_email(
        self,
        config: EmailConfig,
        data: dict[str, Any],
        trigger_data: dict[str, Any],
        context: ExecutionContext,
    ) -> dict[str, Any]:
        sender = _require(self.collaborators.email, "email sender")
        to = [render_template(item, data) for item in config.to]
        subject = render_template(config.subject, data)
        body = render_template(config.body, data)
        result = await sender.send(
            to,
            subject,
            body,
            cc=[render_template(item, data) for item in config.cc],
            bcc=[render_template(item, data) for item in config.bcc],
        )
        return {**(result or {}), "sent": True, "to": to, "subject": subject}

    async def _run_webhook(
        self,
        config: WebhookActionConfig,
        data: dict[str, Any],
        trigger_data: dict[str, Any],
        context: ExecutionContext,
    ) -> dict[str, Any]:
        if config.body:
            body = render_template(config.body, data)
        else:
            body = json.dumps({"trigger_data": trigger_data, "context": context.model_dump()}, default=str)
        headers = {"Content-Type": "application/json"}
        headers.update({key: render_template(value, data) for key, value in config.headers.items()})
        headers.update(authentication_headers(config.authentication))
        url = render_template(config.url, data)

        try:
            if self.http_client is not None:
                response = await self._send_webhook(self.http_client, config.method, url, headers, body)
            else:
                async with httpx.AsyncClient(timeout=self.webhook_timeout_seconds) as client:
                    response = await self._send_webhook(client, config.method, url, headers, body)
        except httpx.TimeoutException as exc:
            raise ActionExecutionError(f"Webhook timeout calling {url}: {exc}") from exc
        except httpx.TransportError as exc:
            raise ActionExecutionError(f"Webhook network error calling {url}: {exc}") from exc

        if response.status_code in (401, 403):
            raise ActionExecutionError(f"Webhook unauthorized: {url} returned HTTP {response.status_code}")
        if response.is_error:
            raise ActionExecutionError(f"Webhook {url} returned HTTP {response.status_code}")

        try:
            parsed = response.json()
        except ValueError:
            return {"status_code": response.status_code, "body": response.text[:2000]}
        if isinstance(parsed, dict):
            return parsed
        return {"status_code": response.status_code, "data": parsed}

    async def _send_webhook(
        self,
        client: httpx.AsyncClient,
        method: str,
        url: str,
        headers: dict[str, str],
        body: str,
    ) -> httpx.Response:
        return await client.request(
            method,
            url,
            headers=headers,
            content=body if method != "GET" else None,
            timeout=self.webhook_timeout_seconds,
        )

    async def _run_database(
        self,
        config: DatabaseConfig,
        data: dict[str, Any],
        trigger_data: dict[str, Any],
        context: ExecutionContext,
    ) -> dict[str, Any]:
        store = _require(self.collaborators.data, "data store")
        values = render_value(config.data, data)
        conditions = render_value(config.conditions, data)
        if config.operation == "insert":
            result = await store.insert(config.table, values)
        elif config.operation == "update":
            result = await store.update(config.table, values, conditions)
        elif config.operation == "delete":
            result = await store.delete(config.table, conditions)
        else:
            result = await store.select(config.table, conditions)
        return {**result, "operation": config.operation, "table": config.table}

    async def _run_file_operation(
        self,
        config: FileConfig,
        data: dict[str, Any],
        trigger_data: dict[str, Any],
        context: ExecutionContext,
    ) -> dict[str, Any]:
        store = _require(self.collaborators.files, "file store")
        source = render_template(config.source, data)
        destination = render_template(config.destination, data) if config.destination else None
        if config.operation == "delete":
            result = await store.delete(source)
        elif config.operation == "move":
            result = await store.move(source, destination)
        elif config.operation == "copy":
            result = await store.copy(source, destination)
        else:
            result = await store.rename(source, destination)
        return {**result, "operation": config.operation, "source": source, "destination": destination}

    async def _run_workflow(
        self,
        config: WorkflowConfig,
        data: dict[str, Any],
        trigger_data: dict[str, Any],
        context: ExecutionContext,
    ) -> dict[str, Any]:
        store = _require(self.collaborators.workflows, "workflow store")
        workflow_data = {**render_value(config.data, data), **trigger_data}
        assignees = [render_template(item, data) for item in config.assign_to]
        result = await store.start(config.workflow_id, workflow_data, assignees)
        return {**result, "workflow_id": config.workflow_id, "started": True}

    async def _run_assignment(
        self,
        config: AssignmentConfig,
        data: dict[str, Any],
        trigger_data: dict[str, Any],
        context: ExecutionContext,
    ) -> dict[str, Any]:
        store = _require(self.collaborators.assignments, "assignment store")
        entity_id = render_template(config.entity_id, data)
        assignees = [render_template(item, data) for item in config.assignees]
        result = await store.assign(
            entity_id,
            assignees,
            assignment_type=config.assignment_type,
            priority=config.priority,
            due_date=config.due_date,
        )
        return {
            **result,
            "assigned": len(assignees),
            "assignees": assignees,
            "entity_id": entity_id,
            "assignment_type": config.assignment_type,
        }

    async def _run_custom(
        self,
        config: CustomConfig,
        data: dict[str, Any],
        trigger_data: dict[str, Any],
        context: ExecutionContext,
    ) -> dict[str, Any]:
        invoker = _require(self.collaborators.custom, "custom action invoker")
        result = await invoker.invoke(config.script, config.language, render_value(config.parameters, data))
        return result or {"success": True}


def _require(collaborator: T | None, name: str) -> T:
    if collaborator is None:
        raise ActionExecutionError(f"No {name} configured")
    return collaborator


def _short_error(value: Exception | str) -> str:
    text = str(value).strip() or f"{type(value).__name__} raised by action"
    return text[:500]
