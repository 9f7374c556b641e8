"""Error taxonomy for the automation engine.

Errors raised before an execution record exists (rule lookup, rate limiting)
propagate to the caller. Errors raised by actions are captured on the
execution step instead and never reach the dispatcher.
"""


class AutomationError(Exception):
    code = "automation_error"

    def __init__(self, message: str | None = None):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__


class RuleNotFound(AutomationError):
    code = "rule_not_found"

    def __init__(self, rule_id: str):
        super().__init__(f"Automation rule '{rule_id}' not found")
        self.rule_id = rule_id


class RuleInactive(AutomationError):
    code = "rule_inactive"

    def __init__(self, rule_id: str):
        super().__init__(f"Automation rule '{rule_id}' is inactive")
        self.rule_id = rule_id


class RateLimitExceeded(AutomationError):
    code = "rate_limit_exceeded"

    def __init__(self, rule_id: str, reason: str = "Rate limit exceeded", execution_id: str | None = None):
        super().__init__(reason)
        self.rule_id = rule_id
        self.execution_id = execution_id


class ConditionEvaluationError(AutomationError):
    code = "condition_evaluation_error"


class UnknownActionType(AutomationError):
    code = "unknown_action_type"

    def __init__(self, action_type: str):
        super().__init__(f"Unknown action type: {action_type}")
        self.action_type = action_type


class ActionExecutionError(AutomationError):
    code = "action_execution_error"


class TriggerConfigError(AutomationError):
    code = "trigger_config_error"


class TemplateNotFound(AutomationError):
    code = "template_not_found"


class ExecutionNotFound(AutomationError):
    code = "execution_not_found"

    def __init__(self, execution_id: str):
        super().__init__(f"Automation execution '{execution_id}' not found")
        self.execution_id = execution_id
