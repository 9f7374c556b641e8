import asyncio
import os
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("SCHEDULER_ENABLED", "false")

import autoflow.models  # noqa: F401
from autoflow.core.deps import get_engine
from autoflow.db.base import Base
from autoflow.main import app
from autoflow.schemas.automation import RuleCreate
from autoflow.services.actions import ActionRunner
from autoflow.services.collaborators import ActionCollaborators
from autoflow.services.engine import AutomationEngine
from autoflow.services.stores import InMemoryExecutionStore, InMemoryRuleStore


T0 = datetime(2024, 3, 4, 9, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingNotificationSender:
    def __init__(self):
        self.sent: list[dict] = []

    async def send(self, user_id, title, message, data, channels):
        self.sent.append({"user_id": user_id, "title": title, "message": message, "data": data, "channels": channels})
        return {"notification_id": f"ntf_{len(self.sent)}"}


class RecordingEmailSender:
    def __init__(self):
        self.sent: list[dict] = []

    async def send(self, to, subject, body, *, cc=None, bcc=None):
        self.sent.append({"to": to, "subject": subject, "body": body, "cc": cc, "bcc": bcc})
        return {"delivery_status": "sent"}


class RecordingAssignmentStore:
    def __init__(self):
        self.assignments: list[dict] = []

    async def assign(self, entity_id, assignees, *, assignment_type, priority, due_date):
        self.assignments.append(
            {
                "entity_id": entity_id,
                "assignees": assignees,
                "assignment_type": assignment_type,
                "priority": priority,
                "due_date": due_date,
            }
        )
        return {"assignment_ids": [f"asg_{index}" for index, _ in enumerate(assignees)]}


class RecordingWorkflowStore:
    def __init__(self):
        self.started: list[dict] = []

    async def start(self, workflow_id, data, assignees):
        self.started.append({"workflow_id": workflow_id, "data": data, "assignees": assignees})
        return {"workflow_run_id": f"wfr_{len(self.started)}"}


class RecordingDataStore:
    def __init__(self):
        self.calls: list[tuple] = []

    async def insert(self, table, data):
        self.calls.append(("insert", table, data))
        return {"affected_rows": 1}

    async def update(self, table, data, conditions):
        self.calls.append(("update", table, data, conditions))
        return {"affected_rows": 1}

    async def delete(self, table, conditions):
        self.calls.append(("delete", table, conditions))
        return {"affected_rows": 1}

    async def select(self, table, conditions):
        self.calls.append(("select", table, conditions))
        return {"rows": [], "count": 0}


class ScriptedInvoker:
    """Custom-action invoker driven by the script name.

    ``fail`` raises, ``flaky:N`` fails N times then succeeds, ``sleep:S``
    sleeps S seconds, ``block`` waits for ``release`` to be set.
    """

    def __init__(self):
        self.calls: list[str] = []
        self.failures: dict[str, int] = {}
        self.release = asyncio.Event()

    async def invoke(self, script, language, parameters):
        self.calls.append(script)
        if script == "fail":
            raise RuntimeError("database write rejected")
        if script.startswith("flaky:"):
            budget = int(script.split(":", 1)[1])
            seen = self.failures.get(script, 0)
            if seen < budget:
                self.failures[script] = seen + 1
                raise RuntimeError(f"flaky failure {seen + 1}")
        if script.startswith("sleep:"):
            await asyncio.sleep(float(script.split(":", 1)[1]))
        if script == "block":
            await self.release.wait()
        return {"script": script, "parameters": parameters}


def make_rule(tenant_id: str = "tenant-1", **overrides) -> RuleCreate:
    payload = {
        "name": "Test rule",
        "tenant_id": tenant_id,
        "triggers": [{"type": "manual"}],
        "conditions": [],
        "actions": [],
    }
    payload.update(overrides)
    return RuleCreate.model_validate(payload)


def custom_action(name: str, script: str, *, order: int = 0, **extra) -> dict:
    return {"type": "custom", "name": name, "order": order, "config": {"script": script}, **extra}


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def fakes():
    return {
        "notifications": RecordingNotificationSender(),
        "email": RecordingEmailSender(),
        "assignments": RecordingAssignmentStore(),
        "workflows": RecordingWorkflowStore(),
        "data": RecordingDataStore(),
        "custom": ScriptedInvoker(),
    }


@pytest.fixture()
def automation_engine(clock, fakes):
    collaborators = ActionCollaborators(**fakes)
    return AutomationEngine(
        InMemoryRuleStore(),
        InMemoryExecutionStore(),
        ActionRunner(collaborators),
        clock=clock,
    )


@pytest.fixture()
def db_session_factory():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    session_local = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    Base.metadata.create_all(bind=engine)
    yield session_local
    Base.metadata.drop_all(bind=engine)


@pytest.fixture()
def test_context(fakes):
    collaborators = ActionCollaborators(**fakes)
    engine = AutomationEngine(InMemoryRuleStore(), InMemoryExecutionStore(), ActionRunner(collaborators))
    app.dependency_overrides[get_engine] = lambda: engine

    with TestClient(app) as client:
        yield client, engine

    app.dependency_overrides.clear()
