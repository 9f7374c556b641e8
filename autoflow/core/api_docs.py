from autoflow.schemas.common import ErrorOut


# status -> [(error code, message, example path)]
_ERROR_EXAMPLES: dict[int, list[tuple[str, str, str]]] = {
    400: [
        ("bad_request", "X-Tenant-ID header is required", "/automations/rules"),
        ("automation_error", "Template 'daily_digest' requires config key 'recipients'", "/automations/templates/daily_digest"),
    ],
    404: [
        ("rule_not_found", "Automation rule 'rule_123' not found", "/automations/rules/rule_123"),
        ("execution_not_found", "Automation execution 'exec_123' not found", "/automations/executions/exec_123"),
        ("template_not_found", "Unknown template 'nope'. Available: daily_digest", "/automations/templates/nope"),
    ],
    409: [("rule_inactive", "Automation rule 'rule_123' is inactive", "/automations/rules/rule_123/execute")],
    422: [("validation_error", "Validation failed", "/automations/rules")],
    429: [("rate_limit_exceeded", "Rate limit exceeded", "/automations/rules/rule_123/execute")],
    500: [("internal_error", "Internal server error", "/automations/events")],
}


def _example(code: str, message: str, path: str) -> dict:
    return {
        "error": {
            "code": code,
            "message": message,
            "request_id": "request-id",
            "path": path,
            "details": None,
        }
    }


def error_responses(*status_codes: int) -> dict[int, dict]:
    responses: dict[int, dict] = {}
    for status_code in status_codes:
        examples = _ERROR_EXAMPLES.get(status_code) or [("http_error", "HTTP error", "/automations")]
        responses[status_code] = {
            "model": ErrorOut,
            "description": examples[0][1],
            "content": {
                "application/json": {
                    "examples": {
                        code: {"summary": message, "value": _example(code, message, path)}
                        for code, message, path in examples
                    }
                }
            },
        }
    return responses
