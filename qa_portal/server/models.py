"""Status vocabularies and pydantic request contracts for portal operations."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Literal, TypeVar

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from qa_portal.errors import ValidationError

PR_STATUSES = (
    "new",
    "testing",
    "ready",
    "blocked",
    "qa-tests-merged",
    "fully-merged",
    "closed",
)
PR_TERMINAL_STATUSES = frozenset({"fully-merged", "closed"})

ASSIGNMENT_STATUSES = ("unassigned", "assigned", "in_progress", "completed", "failed", "blocked")
ASSIGNMENT_TERMINAL_STATUSES = frozenset({"completed", "failed"})

ISSUE_STATUSES = ("open", "escalated", "resolved")
ISSUE_SEVERITIES = ("low", "medium", "high", "critical")
TEST_RESULT_STATUSES = ("passed", "failed", "skipped")

Priority = Literal["low", "medium", "high", "critical"]
Severity = Literal["low", "medium", "high", "critical"]
ResultStatus = Literal["passed", "failed", "skipped"]

ModelT = TypeVar("ModelT", bound=BaseModel)


class _Request(BaseModel):
    model_config = ConfigDict(
        extra="forbid",
        populate_by_name=True,
        alias_generator=to_camel,
        str_strip_whitespace=True,
    )


class CreatePRRequest(_Request):
    name: str = Field(min_length=1)
    developer: str = Field(min_length=1)
    description: str = ""
    priority: Priority = "medium"
    environment: str = "staging"
    branch: str = ""
    test_case_ids: list[str] = Field(default_factory=list)


class UpdatePRRequest(_Request):
    name: str | None = Field(default=None, min_length=1)
    developer: str | None = Field(default=None, min_length=1)
    description: str | None = None
    priority: Priority | None = None
    environment: str | None = None


class AssociateTestCasesRequest(_Request):
    test_case_ids: list[str] = Field(min_length=1)


class ResultEntry(_Request):
    test_case_id: str = Field(min_length=1)
    status: ResultStatus
    test_name: str = ""
    duration: int | None = Field(default=None, ge=0)
    notes: str = ""
    failure_reason: str | None = None
    error_messages: list[str] = Field(default_factory=list)


class RecordTestResultsRequest(_Request):
    results: list[ResultEntry] = Field(min_length=1)
    branch: Literal["feature", "main"] = "feature"


class PRActionRequest(_Request):
    action: Literal["approve", "merge-tests", "merge", "merge-dev", "reject", "block", "unblock"]
    reason: str = ""
    comments: str = ""

    @model_validator(mode="after")
    def _block_needs_reason(self) -> "PRActionRequest":
        if self.action == "block" and not self.reason:
            raise ValueError("a reason is required to block a PR")
        return self


class BDDStep(_Request):
    type: Literal["given", "when", "then", "and", "but"]
    text: str = Field(min_length=1)
    formatted: str = ""

    @model_validator(mode="after")
    def _default_formatted(self) -> "BDDStep":
        if not self.formatted:
            self.formatted = f"{self.type.capitalize()} {self.text}"
        return self


class AddTestCaseRequest(_Request):
    name: str = Field(min_length=1)
    tags: list[str] = Field(min_length=1)
    bdd_steps: list[BDDStep] = Field(min_length=1)
    duration: int = Field(default=2000, gt=0)
    description: str = ""
    intent: str = "custom"

    @model_validator(mode="after")
    def _given_when_then(self) -> "AddTestCaseRequest":
        kinds = {step.type for step in self.bdd_steps}
        if not {"given", "when", "then"}.issubset(kinds):
            raise ValueError("test case must have at least Given, When, and Then steps")
        return self


class UpdateTestCaseRequest(_Request):
    name: str = Field(min_length=1)
    description: str | None = None
    tags: list[str] | None = None
    intent: str | None = None
    duration: int | None = Field(default=None, gt=0)


class AssignTestRequest(_Request):
    test_case_id: str = Field(min_length=1)
    pr_id: str = Field(min_length=1)
    assigned_to: str = Field(min_length=1)
    assignment_id: str | None = None
    due_date: datetime | None = None
    priority: Priority = "medium"
    requirements: list[str] = Field(default_factory=list)

    @field_validator("due_date")
    @classmethod
    def _due_date_utc(cls, value: datetime | None) -> datetime | None:
        # Timezone-less due dates are read as UTC.
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value


class ExecutionOutcome(_Request):
    status: ResultStatus | None = None
    duration: int | None = Field(default=None, ge=0)
    notes: str = ""
    failure_reason: str | None = None
    error_messages: list[str] = Field(default_factory=list)


class BlockingReason(_Request):
    type: str = "technical"
    severity: Severity = "medium"
    title: str = ""
    description: str = "Test execution blocked"


class ProgressUpdateRequest(_Request):
    action: Literal["start", "update_progress", "complete", "fail", "pause", "block"]
    progress: int | None = None
    message: str = ""
    test_result: ExecutionOutcome | None = None
    blocking_reason: BlockingReason | None = None


class ReportIssueRequest(_Request):
    pr_id: str = Field(min_length=1)
    title: str = Field(min_length=1)
    test_case_id: str | None = None
    description: str = ""
    severity: Severity = "medium"
    type: str = "technical"


class EscalateIssueRequest(_Request):
    reason: str = ""
    escalation_level: int | None = Field(default=None, ge=1)
    assign_to: str | None = None
    severity: Severity | None = None


class ResolveIssueRequest(_Request):
    resolution: str = ""


class SyncPullRequestsRequest(_Request):
    state: Literal["open", "closed", "all"] = "open"
    per_page: int = Field(default=50, ge=1, le=100)
    sync_mode: Literal["merge", "replace"] = "merge"


def parse_payload(model: type[ModelT], payload: dict[str, Any] | None) -> ModelT:
    """Validate a request body, raising the portal ``ValidationError`` on failure."""
    try:
        return model.model_validate(payload or {})
    except PydanticValidationError as exc:
        errors = [
            {
                "path": ".".join(str(part) for part in error.get("loc", ())) or "$",
                "message": str(error.get("msg", "")),
            }
            for error in exc.errors()
        ]
        summary = "; ".join(f"{e['path']}: {e['message']}" for e in errors)
        raise ValidationError(
            f"Invalid request: {summary}",
            code="invalid_payload",
            details={"errors": errors},
        ) from exc
