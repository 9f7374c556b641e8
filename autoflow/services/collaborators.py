from dataclasses import dataclass
from datetime import datetime
from typing import Any, Protocol


class NotificationSender(Protocol):
    async def send(
        self,
        user_id: str,
        title: str,
        message: str,
        data: dict[str, Any],
        channels: list[str],
    ) -> dict[str, Any] | None:
        ...


class EmailSender(Protocol):
    async def send(
        self,
        to: list[str],
        subject: str,
        body: str,
        *,
        cc: list[str] | None = None,
        bcc: list[str] | None = None,
    ) -> dict[str, Any] | None:
        ...


class DataStore(Protocol):
    async def insert(self, table: str, data: dict[str, Any]) -> dict[str, Any]:
        ...

    async def update(self, table: str, data: dict[str, Any], conditions: dict[str, Any]) -> dict[str, Any]:
        ...

    async def delete(self, table: str, conditions: dict[str, Any]) -> dict[str, Any]:
        ...

    async def select(self, table: str, conditions: dict[str, Any]) -> dict[str, Any]:
        ...


class FileStore(Protocol):
    async def move(self, source: str, destination: str) -> dict[str, Any]:
        ...

    async def copy(self, source: str, destination: str) -> dict[str, Any]:
        ...

    async def delete(self, source: str) -> dict[str, Any]:
        ...

    async def rename(self, source: str, destination: str) -> dict[str, Any]:
        ...


class WorkflowStore(Protocol):
    async def start(self, workflow_id: str, data: dict[str, Any], assignees: list[str]) -> dict[str, Any]:
        ...


class AssignmentStore(Protocol):
    async def assign(
        self,
        entity_id: str,
        assignees: list[str],
        *,
        assignment_type: str,
        priority: str,
        due_date: datetime | None,
    ) -> dict[str, Any]:
        ...


class CustomActionInvoker(Protocol):
    async def invoke(self, script: str, language: str, parameters: dict[str, Any]) -> dict[str, Any]:
        ...


@dataclass
class ActionCollaborators:
    notifications: NotificationSender | None = None
    email: EmailSender | None = None
    data: DataStore | None = None
    files: FileStore | None = None
    workflows: WorkflowStore | None = None
    assignments: AssignmentStore | None = None
    custom: CustomActionInvoker | None = None
