"""Pydantic schemas for flow definitions."""

from typing import Any
from pydantic import BaseModel, ConfigDict, Field


HTTP_METHODS = ("GET", "POST", "PUT", "DELETE", "PATCH", "HEAD", "OPTIONS")

# Step kinds the runner executes; any other stored node type is reported as skipped
STEP_KINDS = ("http_request", "delay", "variable_set")


class ExecutionConfig(BaseModel):
    """Scheduling policy for a flow run."""
    model_config = ConfigDict(frozen=True)

    inter_step_delay_ms: int = 0
    retry_count: int = 0  # Extra attempts after a transport failure
    retry_delay_ms: int = 0
    allow_parallel: bool = False
    # When set, 4xx/5xx responses count as step errors like transport failures
    count_http_errors: bool = False


class FlowInput(BaseModel):
    """Declared input of a flow, referenced as {{input.<name>}}."""
    model_config = ConfigDict(frozen=True)

    name: str
    type: str = "string"
    required: bool = False
    default: Any = None
    description: str | None = None


class Step(BaseModel):
    """One HTTP call plus its declared output bindings, or a delay/variable_set node."""
    model_config = ConfigDict(frozen=True)

    id: str
    display_name: str | None = None
    kind: str = "http_request"
    method: str = "GET"
    url_template: str = ""
    header_templates: dict[str, str] = Field(default_factory=dict)
    body_template: Any = None
    output_bindings: dict[str, str] = Field(default_factory=dict)  # output name -> path
    timeout_ms: int = 30_000

    # delay steps
    delay_ms: int = 0
    # variable_set steps: {{<id>.<variable_name>}} = interpolated value_template
    variable_name: str | None = None
    value_template: str | None = None

    @property
    def label(self) -> str:
        return self.display_name or self.id


class FlowDefinition(BaseModel):
    """An ordered list of steps with its execution config."""
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    description: str | None = None
    steps: list[Step] = Field(default_factory=list)
    config: ExecutionConfig = Field(default_factory=ExecutionConfig)
    inputs: list[FlowInput] = Field(default_factory=list)

    def step_ids(self) -> list[str]:
        return [step.id for step in self.steps]


class ExecuteFlowRequest(BaseModel):
    """Schema for executing a flow."""
    environment_id: str
    override_variables: dict[str, Any] | None = None  # Merged over environment variables
    inputs: dict[str, Any] | None = None  # Values for declared flow inputs
    max_execution_time_ms: int | None = Field(None, gt=0)
    debug_mode: bool = False
