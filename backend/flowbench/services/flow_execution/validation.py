"""Flow definition checks run before any step executes."""

import re
from typing import Any

from flowbench.schemas.flow import HTTP_METHODS, STEP_KINDS, FlowDefinition, Step
from flowbench.services.flow_execution.exceptions import ConfigurationError
from flowbench.services.flow_execution.variables import RESERVED_NAMESPACES

STEP_ID_PATTERN = re.compile(r'^[A-Za-z0-9_-]+$')
URL_PATTERN = re.compile(r'^(https?://|/|\{\{)')

MAX_DELAY_MS = 300_000  # 5 minutes
MAX_RETRY_COUNT = 10


def validate_flow(flow: FlowDefinition) -> None:
    """Raise ConfigurationError listing every problem found in ``flow``."""
    problems = collect_problems(flow)
    if problems:
        raise ConfigurationError(flow.id, problems)


def collect_problems(flow: FlowDefinition) -> list[str]:
    problems: list[str] = []

    if not flow.steps:
        problems.append("Flow must have at least one step")

    seen: set[str] = set()
    for index, step in enumerate(flow.steps):
        if step.id in seen:
            problems.append(f"Duplicate step id: {step.id}")
        seen.add(step.id)
        problems.extend(f"Step {index} ({step.id}): {problem}" for problem in _step_problems(step))

    config = flow.config
    if config.inter_step_delay_ms < 0:
        problems.append("Delay must be a non-negative number of milliseconds")
    elif config.inter_step_delay_ms > MAX_DELAY_MS:
        problems.append(f"Delay cannot exceed {MAX_DELAY_MS} milliseconds")
    if config.retry_count < 0:
        problems.append("Retry count must be a non-negative number")
    elif config.retry_count > MAX_RETRY_COUNT:
        problems.append(f"Retry count cannot exceed {MAX_RETRY_COUNT}")
    if config.retry_delay_ms < 0:
        problems.append("Retry delay must be a non-negative number of milliseconds")

    input_names = [flow_input.name for flow_input in flow.inputs]
    for name in {name for name in input_names if input_names.count(name) > 1}:
        problems.append(f"Duplicate input name: {name}")

    return problems


def _step_problems(step: Step) -> list[str]:
    problems = []

    if not step.id:
        problems.append("id is required")
    elif not STEP_ID_PATTERN.match(step.id):
        problems.append("id may only contain letters, digits, '_' and '-'")
    elif step.id in RESERVED_NAMESPACES:
        problems.append(f"id {step.id!r} is a reserved variable namespace")

    if step.kind == "delay":
        if step.delay_ms < 0:
            problems.append("delay duration must be a non-negative number of milliseconds")
        return problems
    if step.kind == "variable_set":
        if not step.variable_name:
            problems.append("variable name is required")
        return problems
    if step.kind not in STEP_KINDS:
        # Reported as skipped at run time
        return problems

    if not step.method:
        problems.append("method is required")
    elif step.method.upper() not in HTTP_METHODS:
        problems.append(f"method must be one of: {', '.join(HTTP_METHODS)}")

    if not step.url_template:
        problems.append("url is required")
    elif not URL_PATTERN.match(step.url_template):
        problems.append("url must start with http://, https://, /, or be a variable reference")

    if step.timeout_ms <= 0:
        problems.append("timeout must be a positive number of milliseconds")

    return problems


def missing_required_inputs(flow: FlowDefinition, supplied: dict[str, Any]) -> list[str]:
    """Names of required inputs with neither a supplied value nor a default."""
    return [
        flow_input.name
        for flow_input in flow.inputs
        if flow_input.required
        and supplied.get(flow_input.name) is None
        and flow_input.default is None
    ]
