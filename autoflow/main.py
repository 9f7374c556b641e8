import asyncio
from contextlib import asynccontextmanager, suppress

from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from sqlalchemy import text

from autoflow.core.config import Settings, settings
from autoflow.core.errors import AutomationError
from autoflow.core.observability import (
    automation_exception_handler,
    http_exception_handler,
    log_event,
    logger,
    request_logging_middleware,
    setup_observability,
    unhandled_exception_handler,
    validation_exception_handler,
)
from autoflow.db.session import SessionLocal, engine, init_db
from autoflow.routers import automation
from autoflow.services.actions import ActionRunner
from autoflow.services.collaborators import ActionCollaborators
from autoflow.services.email_service import SmtpEmailSender
from autoflow.services.engine import AutomationEngine
from autoflow.services.file_store import LocalFileStore
from autoflow.services.sql_stores import (
    SqlAssignmentStore,
    SqlDataStore,
    SqlExecutionStore,
    SqlNotificationSender,
    SqlRuleStore,
    SqlWorkflowStore,
)


def build_automation_engine(config: Settings = settings) -> AutomationEngine:
    collaborators = ActionCollaborators(
        notifications=SqlNotificationSender(SessionLocal),
        email=SmtpEmailSender(config),
        data=SqlDataStore(engine, config.data_store_tables) if config.data_store_tables else None,
        files=LocalFileStore(config.file_store_root),
        workflows=SqlWorkflowStore(SessionLocal),
        assignments=SqlAssignmentStore(SessionLocal),
    )
    runner = ActionRunner(collaborators, webhook_timeout_seconds=config.webhook_timeout_seconds)
    return AutomationEngine(SqlRuleStore(SessionLocal), SqlExecutionStore(SessionLocal), runner)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    automation_engine = build_automation_engine()
    app.state.automation_engine = automation_engine
    await automation_engine.setup_scheduled_triggers()

    scheduler_task = None
    if settings.scheduler_enabled:
        scheduler_task = asyncio.create_task(automation_engine.run_scheduler(settings.scheduler_poll_seconds))
        log_event(logger, "scheduler.started", poll_seconds=settings.scheduler_poll_seconds)
    try:
        yield
    finally:
        if scheduler_task is not None:
            scheduler_task.cancel()
            with suppress(asyncio.CancelledError):
                await scheduler_task


app = FastAPI(
    title=settings.app_name,
    version="0.1.0",
    description=(
        "Rule-based automation engine.\n\n"
        "Every tenant-scoped endpoint expects an `X-Tenant-ID` header. "
        "Inbound webhooks are addressed by webhook id and authenticated per trigger."
    ),
    lifespan=lifespan,
    swagger_ui_parameters={
        "displayRequestDuration": True,
        "defaultModelsExpandDepth": 1,
    },
    openapi_tags=[
        {"name": "health", "description": "Service status and quick links."},
        {"name": "automation", "description": "Rules, triggers, executions, templates, and metrics."},
    ],
)

setup_observability()
app.middleware("http")(request_logging_middleware)
app.add_exception_handler(RequestValidationError, validation_exception_handler)
app.add_exception_handler(HTTPException, http_exception_handler)
app.add_exception_handler(AutomationError, automation_exception_handler)
app.add_exception_handler(Exception, unhandled_exception_handler)

app.include_router(automation.router)


@app.get("/", tags=["health"])
def root():
    return {
        "app": settings.app_name,
        "docs": "/docs",
        "health": "/health",
        "ready": "/ready",
    }


@app.get("/health", tags=["health"])
def health():
    return {"ok": True}


@app.get("/ready", tags=["health"])
def ready():
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
    except Exception:  # noqa: BLE001
        return {"ok": False}
    return {"ok": True}
