"""Flow execution service: loads a flow and its environment, then runs it."""

import logging
import uuid
from typing import Any

from flowbench.schemas.flow import FlowDefinition
from flowbench.schemas.run_report import RunReport
from flowbench.services.backend_client import BackendRequestService
from flowbench.services.flow_execution.exceptions import ConfigurationError
from flowbench.services.flow_execution.reporter import compact_report, render_text
from flowbench.services.flow_execution.runner import FlowRunner
from flowbench.services.flow_execution.validation import missing_required_inputs, validate_flow
from flowbench.services.flow_execution.variables import VariableContext

logger = logging.getLogger(__name__)


def build_variable_context(
    flow: FlowDefinition,
    environment_id: str | None,
    environment_variables: dict[str, Any],
    override_variables: dict[str, Any] | None = None,
    inputs: dict[str, Any] | None = None,
    started_at: str | None = None,
) -> VariableContext:
    """
    Assemble the starting layers of a run.

    Overrides win over environment values; supplied inputs win over declared
    input defaults.

    Raises:
        ConfigurationError: a required input has neither a value nor a default
    """
    supplied = dict(inputs or {})
    missing = missing_required_inputs(flow, supplied)
    if missing:
        raise ConfigurationError(flow.id, [f"Missing required input: {name}" for name in missing])

    input_layer = {
        flow_input.name: flow_input.default
        for flow_input in flow.inputs
        if flow_input.default is not None
    }
    input_layer.update(supplied)

    environment = dict(environment_variables)
    environment.update(override_variables or {})

    runtime = {
        "run_id": uuid.uuid4().hex,
        "flow_id": flow.id,
        "environment_id": environment_id,
    }
    if started_at:
        runtime["started_at"] = started_at

    return VariableContext(input=input_layer, environment=environment, runtime=runtime)


class FlowExecutionService:
    """Runs stored flows on behalf of an API caller."""

    def __init__(
        self,
        backend: BackendRequestService,
        runner: FlowRunner,
        preview_length: int = 500,
    ):
        self.backend = backend
        self.runner = runner
        self.preview_length = preview_length

    async def execute_flow(
        self,
        flow_id: str,
        environment_id: str,
        override_variables: dict[str, Any] | None = None,
        inputs: dict[str, Any] | None = None,
        max_execution_time_ms: int | None = None,
        debug_mode: bool = False,
    ) -> RunReport:
        """
        Fetch, validate and run a flow.

        Without ``debug_mode`` the report carries no headers and only body
        previews.

        Raises:
            FlowNotFoundError: the backend has no such flow
            BackendRequestError: the flow could not be fetched
            ConfigurationError: the flow or its inputs are not runnable
        """
        flow = await self.backend.get_flow(flow_id)
        validate_flow(flow)

        environment_variables = await self.backend.get_environment_variables(environment_id)
        logger.info(
            "Executing flow %s in environment %s (%d variables, %d overrides)",
            flow.id, environment_id, len(environment_variables), len(override_variables or {}),
        )

        context = build_variable_context(
            flow,
            environment_id=environment_id,
            environment_variables=environment_variables,
            override_variables=override_variables,
            inputs=inputs,
            started_at=self.runner.clock.now().isoformat(),
        )

        report = await self.runner.run(
            flow,
            context,
            max_execution_time_ms=max_execution_time_ms,
            environment_id=environment_id,
        )

        if debug_mode:
            return report
        return compact_report(report, self.preview_length)

    def render(self, report: RunReport, debug_mode: bool = False) -> str:
        return render_text(report, debug=debug_mode, preview_length=self.preview_length)
