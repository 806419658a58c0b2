"""Flow runner: schedules steps, applies delay/retry/time-budget policy."""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any

from tenacity import AsyncRetrying, retry_if_result, stop_after_attempt, wait_fixed

from flowbench.schemas.flow import ExecutionConfig, FlowDefinition, Step
from flowbench.schemas.run_report import RunError, RunReport, StepResult
from flowbench.services.flow_execution.clock import Clock, SystemClock
from flowbench.services.flow_execution.http_client import InvocationResult, StepInvoker
from flowbench.services.flow_execution.path_resolver import bind_outputs
from flowbench.services.flow_execution.reporter import build_report
from flowbench.services.flow_execution.validation import validate_flow
from flowbench.services.flow_execution.variables import (
    StepOutputScope,
    VariableContext,
    VariableInterpolator,
    parse_scope,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_EXECUTION_TIME_MS = 300_000
MAX_DELAY_STEP_MS = 30_000


@dataclass
class _RunState:
    """Mutable bookkeeping for one run. Never leaves the runner."""
    budget_ms: int
    started_ms: float
    results: list[StepResult] = field(default_factory=list)
    errors: list[RunError] = field(default_factory=list)
    aborted_at_step: str | None = None
    first_step_start_ms: float | None = None
    last_step_end_ms: float | None = None

    def mark_start(self, now_ms: float) -> None:
        if self.first_step_start_ms is None:
            self.first_step_start_ms = now_ms

    def mark_end(self, now_ms: float) -> None:
        if self.last_step_end_ms is None or now_ms > self.last_step_end_ms:
            self.last_step_end_ms = now_ms

    @property
    def duration_ms(self) -> int:
        if self.first_step_start_ms is None or self.last_step_end_ms is None:
            return 0
        return int(self.last_step_end_ms - self.first_step_start_ms)


@dataclass
class _StepOutcome:
    result: StepResult
    outputs: dict[str, Any] | None  # None when no exchange completed


def plan_dependencies(
    flow: FlowDefinition,
    interpolator: VariableInterpolator | None = None,
) -> dict[str, set[str]]:
    """
    Map each step id to the earlier step ids its templates reference.

    References to later steps are not dependencies: those outputs are never
    visible to the referencing step.
    """
    interpolator = interpolator or VariableInterpolator()
    position = {step.id: index for index, step in enumerate(flow.steps)}
    dependencies: dict[str, set[str]] = {}

    for index, step in enumerate(flow.steps):
        tokens = (
            interpolator.extract_tokens(step.url_template)
            + interpolator.extract_tokens_from_value(step.header_templates)
            + interpolator.extract_tokens_from_value(step.body_template)
            + interpolator.extract_tokens(step.value_template)
        )
        referenced = set()
        for token in tokens:
            namespace, _, rest = token.partition(".")
            if not rest:
                continue
            scope = parse_scope(namespace.strip())
            if isinstance(scope, StepOutputScope) and position.get(scope.step_id, index) < index:
                referenced.add(scope.step_id)
        dependencies[step.id] = referenced

    return dependencies


class FlowRunner:
    """
    Executes a FlowDefinition against a VariableContext.

    Steps run one at a time in definition order. Each step's templates see
    the outputs of every step that finished before it. A step that ends with a
    transport failure (after its retries), or an unexpected error, stops the
    run; 4xx/5xx responses are completed exchanges unless the flow's config
    counts them as errors. The run is aborted before any step that would
    start after the execution budget is spent.

    ``delay`` steps sleep (at most 30s) and ``variable_set`` steps record an
    interpolated value as their output. Steps of any other kind are recorded
    as skipped and the run goes on.

    With ``allow_parallel`` steps are grouped into waves; a step joins a wave
    once every earlier step it references has finished.
    """

    def __init__(
        self,
        invoker: StepInvoker,
        clock: Clock | None = None,
        interpolator: VariableInterpolator | None = None,
        max_execution_time_ms: int = DEFAULT_MAX_EXECUTION_TIME_MS,
    ):
        self.invoker = invoker
        self.clock = clock or SystemClock()
        self.interpolator = interpolator or VariableInterpolator()
        self.max_execution_time_ms = max_execution_time_ms

    async def run(
        self,
        flow: FlowDefinition,
        context: VariableContext,
        max_execution_time_ms: int | None = None,
        environment_id: str | None = None,
    ) -> RunReport:
        """
        Run every step of ``flow`` and return the report.

        Raises:
            ConfigurationError: the flow is malformed; no step was attempted
        """
        validate_flow(flow)

        state = _RunState(
            budget_ms=max_execution_time_ms or self.max_execution_time_ms,
            started_ms=self.clock.monotonic_ms(),
        )
        started_at = self.clock.now()

        logger.info(
            "Starting flow %s (%d steps, parallel=%s, budget=%sms)",
            flow.id, len(flow.steps), flow.config.allow_parallel, state.budget_ms,
        )

        if flow.config.allow_parallel:
            await self._run_waves(flow, context, state)
        else:
            await self._run_sequential(flow, context, state)

        report = build_report(
            flow=flow,
            environment_id=environment_id,
            results=state.results,
            errors=state.errors,
            aborted_at_step=state.aborted_at_step,
            total_duration_ms=state.duration_ms,
            context=context,
            started_at=started_at,
            finished_at=self.clock.now(),
        )

        logger.info(
            "Flow %s finished: %s in %sms (%d/%d steps, %d errors)",
            flow.id, report.overall_status, report.total_duration_ms,
            len(report.steps), len(flow.steps), len(report.errors),
        )
        return report

    async def _run_sequential(
        self,
        flow: FlowDefinition,
        context: VariableContext,
        state: _RunState,
    ) -> None:
        for index, step in enumerate(flow.steps):
            if index > 0:
                await self._inter_step_delay(flow.config)

            if self._budget_exceeded(state):
                self._abort(state, step)
                return

            outcome = await self._execute_step(step, flow.config, context, state)
            self._record(outcome, step, context, state)

            if outcome.result.status == "error":
                return

    async def _run_waves(
        self,
        flow: FlowDefinition,
        context: VariableContext,
        state: _RunState,
    ) -> None:
        dependencies = plan_dependencies(flow, self.interpolator)
        pending = list(flow.steps)
        finished: set[str] = set()
        first_wave = True

        while pending:
            wave = [step for step in pending if dependencies[step.id] <= finished]
            if not wave:
                wave = pending[:1]

            if not first_wave:
                await self._inter_step_delay(flow.config)
            first_wave = False

            if self._budget_exceeded(state):
                self._abort(state, wave[0])
                return

            logger.debug("Running wave: %s", [step.id for step in wave])
            outcomes = await asyncio.gather(
                *(self._execute_step(step, flow.config, context, state) for step in wave)
            )

            for step, outcome in zip(wave, outcomes):
                self._record(outcome, step, context, state)
                finished.add(step.id)

            if any(outcome.result.status == "error" for outcome in outcomes):
                return

            pending = [step for step in pending if step.id not in finished]

    async def _inter_step_delay(self, config: ExecutionConfig) -> None:
        if config.inter_step_delay_ms > 0:
            await self.clock.sleep(config.inter_step_delay_ms / 1000.0)

    def _budget_exceeded(self, state: _RunState) -> bool:
        return self.clock.monotonic_ms() - state.started_ms > state.budget_ms

    def _abort(self, state: _RunState, step: Step) -> None:
        elapsed = int(self.clock.monotonic_ms() - state.started_ms)
        message = f"Flow execution timeout at step: {step.id} ({elapsed}ms elapsed, budget {state.budget_ms}ms)"
        logger.warning(message)
        state.aborted_at_step = step.id
        state.errors.append(RunError(kind="run_abort", message=message, step_id=step.id))

    def _record(
        self,
        outcome: _StepOutcome,
        step: Step,
        context: VariableContext,
        state: _RunState,
    ) -> None:
        result = outcome.result
        state.results.append(result)

        if outcome.outputs is not None:
            context.record_outputs(step.id, outcome.outputs)

        if result.status == "error":
            kind = {
                "http": "http_error",
                "execution": "execution_error",
            }.get(result.error_type or "", "transport_failure")
            state.errors.append(RunError(
                kind=kind,
                message=f"Step {step.id} failed: {result.error_message}",
                step_id=step.id,
            ))

    async def _execute_step(
        self,
        step: Step,
        config: ExecutionConfig,
        context: VariableContext,
        state: _RunState,
    ) -> _StepOutcome:
        """Run one step. Never raises: failures become an error StepResult."""
        if step.kind != "http_request":
            return await self._execute_node(step, context, state)

        started_ms = self.clock.monotonic_ms()
        state.mark_start(started_ms)
        timestamp = self.clock.now()
        method = step.method.upper()
        url: str | None = None

        try:
            url = self.interpolator.interpolate(step.url_template, context)
            headers = self.interpolator.interpolate_headers(step.header_templates, context)
            body = self.interpolator.interpolate_value(step.body_template, context)

            warnings = [
                f"Unresolved variable {{{{{token}}}}}"
                for token in self.interpolator.unresolved_tokens(
                    [step.url_template, step.header_templates, step.body_template], context
                )
            ]
            for warning in warnings:
                logger.warning("Step %s: %s", step.id, warning)

            logger.info("Executing step %s: %s %s", step.id, method, url)
            response, attempts = await self._invoke_with_retry(step, config, method, url, headers, body)

            if response.truncated:
                warnings.append(
                    f"Response body truncated to {response.size_bytes} bytes and kept as text"
                )

            outputs = None
            if not response.is_transport_failure:
                binding = bind_outputs(step, response)
                outputs = binding.outputs
                warnings.extend(
                    f"Output '{name}' not found at '{step.output_bindings[name]}'"
                    for name in binding.misses
                )

            status = "error" if self._is_failure(response, config) else "success"
            error_message = None
            error_type = None
            if status == "error":
                error_type = response.error_type or "http"
                error_message = response.error or f"HTTP {response.status} {response.status_text}"

            result = StepResult(
                step_id=step.id,
                display_name=step.label,
                status=status,
                method=method,
                url=url,
                request_headers=headers,
                request_body=body,
                http_status=response.status,
                status_text=response.status_text,
                response_headers=response.headers,
                response_body=response.body,
                truncated=response.truncated,
                duration_ms=int(self.clock.monotonic_ms() - started_ms),
                attempts=attempts,
                outputs=outputs or {},
                warnings=warnings,
                error_message=error_message,
                error_type=error_type,
                timestamp=timestamp,
            )
            logger.info(
                "Step %s %s: HTTP %s in %sms", step.id, status, response.status, result.duration_ms
            )
            return _StepOutcome(result=result, outputs=outputs)

        except Exception as e:
            logger.exception("Step %s failed unexpectedly", step.id)
            result = StepResult(
                step_id=step.id,
                display_name=step.label,
                status="error",
                method=method,
                url=url,
                duration_ms=int(self.clock.monotonic_ms() - started_ms),
                error_message=str(e) or e.__class__.__name__,
                error_type="execution",
                timestamp=timestamp,
            )
            return _StepOutcome(result=result, outputs=None)

        finally:
            state.mark_end(self.clock.monotonic_ms())

    async def _execute_node(
        self,
        step: Step,
        context: VariableContext,
        state: _RunState,
    ) -> _StepOutcome:
        """Run a delay or variable_set step. Other kinds are reported as skipped."""
        started_ms = self.clock.monotonic_ms()
        state.mark_start(started_ms)
        timestamp = self.clock.now()
        status = "success"
        outputs: dict[str, Any] | None = None
        warnings: list[str] = []

        match step.kind:
            case "delay":
                delay_ms = min(step.delay_ms, MAX_DELAY_STEP_MS)
                logger.info("Step %s: waiting %sms", step.id, delay_ms)
                await self.clock.sleep(delay_ms / 1000.0)
                outputs = {"delay_ms": delay_ms}
            case "variable_set":
                warnings = [
                    f"Unresolved variable {{{{{token}}}}}"
                    for token in self.interpolator.unresolved_tokens(step.value_template, context)
                ]
                value = self.interpolator.interpolate(step.value_template, context)
                outputs = {step.variable_name: value}
                logger.info("Step %s: set %s", step.id, step.variable_name)
            case _:
                status = "skipped"
                warnings = [f"Step type {step.kind!r} is not supported and was skipped"]
                logger.warning("Step %s skipped: unsupported type %s", step.id, step.kind)

        finished_ms = self.clock.monotonic_ms()
        state.mark_end(finished_ms)
        result = StepResult(
            step_id=step.id,
            display_name=step.label,
            kind=step.kind,
            status=status,
            duration_ms=int(finished_ms - started_ms),
            outputs=outputs or {},
            warnings=warnings,
            timestamp=timestamp,
        )
        return _StepOutcome(result=result, outputs=outputs)

    async def _invoke_with_retry(
        self,
        step: Step,
        config: ExecutionConfig,
        method: str,
        url: str,
        headers: dict[str, str],
        body: Any,
    ) -> tuple[InvocationResult, int]:
        """Invoke a step, retrying failed exchanges up to ``config.retry_count`` times."""
        retrying = AsyncRetrying(
            stop=stop_after_attempt(config.retry_count + 1),
            wait=wait_fixed(config.retry_delay_ms / 1000.0),
            retry=retry_if_result(lambda response: self._is_failure(response, config)),
            retry_error_callback=lambda retry_state: retry_state.outcome.result(),
            before_sleep=lambda retry_state: logger.warning(
                "Retrying step %s (attempt %d failed)", step.id, retry_state.attempt_number
            ),
            sleep=self.clock.sleep,
        )

        response: InvocationResult | None = None
        attempts = 0
        async for attempt in retrying:
            with attempt:
                attempts += 1
                response = await self.invoker.invoke(
                    method=method,
                    url=url,
                    headers=headers,
                    body=body,
                    timeout_ms=step.timeout_ms,
                )
            if not attempt.retry_state.outcome.failed:
                attempt.retry_state.set_result(response)

        return response, attempts

    @staticmethod
    def _is_failure(response: InvocationResult, config: ExecutionConfig) -> bool:
        if response.is_transport_failure:
            return True
        return config.count_http_errors and response.is_http_error
