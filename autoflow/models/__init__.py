from autoflow.models.automation import (
    AutomationAssignment,
    AutomationExecution,
    AutomationExecutionStep,
    AutomationNotification,
    AutomationRule,
    AutomationWorkflowRun,
)

__all__ = [
    "AutomationAssignment",
    "AutomationExecution",
    "AutomationExecutionStep",
    "AutomationNotification",
    "AutomationRule",
    "AutomationWorkflowRun",
]
