"""Pydantic schemas for flow run results."""

from datetime import datetime
from typing import Any, Literal
from pydantic import BaseModel, ConfigDict, Field


StepStatus = Literal["success", "error", "skipped"]
OverallStatus = Literal["completed", "completed_with_errors", "aborted"]
ErrorKind = Literal["transport_failure", "http_error", "execution_error", "run_abort"]


class StepResult(BaseModel):
    """Outcome of one executed step. Immutable once recorded."""
    model_config = ConfigDict(frozen=True)

    step_id: str
    display_name: str | None = None
    kind: str = "http_request"
    status: StepStatus

    # Request details (resolved)
    method: str | None = None
    url: str | None = None
    request_headers: dict[str, str] = Field(default_factory=dict)
    request_body: Any = None

    # Response details
    http_status: int | None = None
    status_text: str | None = None
    response_headers: dict[str, str] = Field(default_factory=dict)
    response_body: Any = None
    truncated: bool = False  # response body cut at max_body_size

    duration_ms: int = 0
    attempts: int = 0
    outputs: dict[str, Any] = Field(default_factory=dict)

    # Unresolved tokens and extraction misses, shown beside the step
    warnings: list[str] = Field(default_factory=list)

    error_message: str | None = None
    error_type: str | None = None  # transport, timeout, http, execution
    timestamp: datetime


class RunError(BaseModel):
    """One entry of the aggregated error list."""
    model_config = ConfigDict(frozen=True)

    kind: ErrorKind
    message: str
    step_id: str | None = None


class StatusCounts(BaseModel):
    total: int = 0
    success: int = 0
    error: int = 0
    skipped: int = 0


class RunReport(BaseModel):
    """Structured result of one flow run."""
    flow_id: str
    flow_name: str | None = None
    environment_id: str | None = None
    overall_status: OverallStatus

    started_at: datetime
    finished_at: datetime
    total_duration_ms: int = 0

    steps: list[StepResult] = Field(default_factory=list)
    counts: StatusCounts = Field(default_factory=StatusCounts)
    errors: list[RunError] = Field(default_factory=list)
    aborted_at_step: str | None = None

    # Final merged variable context
    variables: dict[str, Any] = Field(default_factory=dict)
