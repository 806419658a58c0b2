"""Flow execution package: variable resolution, HTTP steps, runner and reports."""

from flowbench.services.flow_execution.exceptions import (
    BackendRequestError,
    ConfigurationError,
    FlowExecutionError,
    FlowNotFoundError,
)
from flowbench.services.flow_execution.http_client import InvocationResult, StepInvoker
from flowbench.services.flow_execution.path_resolver import bind_outputs, resolve_path
from flowbench.services.flow_execution.reporter import format_duration, render_text
from flowbench.services.flow_execution.runner import FlowRunner
from flowbench.services.flow_execution.variables import (
    VariableContext,
    VariableInterpolator,
    interpolate,
)

__all__ = [
    "FlowRunner",
    "StepInvoker",
    "InvocationResult",
    "VariableContext",
    "VariableInterpolator",
    "interpolate",
    "resolve_path",
    "bind_outputs",
    "render_text",
    "format_duration",
    "FlowExecutionError",
    "ConfigurationError",
    "BackendRequestError",
    "FlowNotFoundError",
]
