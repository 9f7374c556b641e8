from typing import Sequence, TypeVar

from pydantic import BaseModel, ConfigDict

T = TypeVar("T")


class PaginationMeta(BaseModel):
    total: int
    limit: int
    offset: int
    count: int
    has_next: bool


def paginate(rows: Sequence[T], *, limit: int, offset: int) -> tuple[list[T], PaginationMeta]:
    page = list(rows[offset : offset + limit])
    meta = PaginationMeta(
        total=len(rows),
        limit=limit,
        offset=offset,
        count=len(page),
        has_next=(offset + len(page)) < len(rows),
    )
    return page, meta


class ErrorIssueOut(BaseModel):
    # field is "execution_id" for rate-limited runs, the payload path for validation errors
    field: str
    message: str
    type: str | None = None


class ErrorDetailOut(BaseModel):
    code: str
    message: str
    request_id: str
    path: str
    details: list[ErrorIssueOut] | None = None


class ErrorOut(BaseModel):
    error: ErrorDetailOut

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "error": {
                    "code": "rate_limit_exceeded",
                    "message": "Rate limit exceeded: cooldown period active",
                    "request_id": "8d8f2b00-6c79-4a45-8ff4-b0a5f2bc4bc2",
                    "path": "/automations/rules/rule_123/execute",
                    "details": [
                        {"field": "execution_id", "message": "exec_123", "type": "rate_limit_exceeded"}
                    ],
                }
            }
        }
    )
