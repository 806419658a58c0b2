"""Run report assembly and text rendering."""

import json
from datetime import datetime
from typing import Any

from flowbench.schemas.flow import FlowDefinition
from flowbench.schemas.run_report import RunError, RunReport, StatusCounts, StepResult
from flowbench.services.flow_execution.variables import VariableContext

MAX_LISTED_VARIABLES = 10
VARIABLE_PREVIEW_LENGTH = 50

STATUS_ICONS = {
    "success": "✓",
    "error": "✗",
    "skipped": "-",
}


def count_statuses(results: list[StepResult]) -> StatusCounts:
    return StatusCounts(
        total=len(results),
        success=sum(1 for r in results if r.status == "success"),
        error=sum(1 for r in results if r.status == "error"),
        skipped=sum(1 for r in results if r.status == "skipped"),
    )


def overall_status(counts: StatusCounts, aborted: bool) -> str:
    if aborted:
        return "aborted"
    if counts.error > 0:
        return "completed_with_errors"
    return "completed"


def build_report(
    flow: FlowDefinition,
    results: list[StepResult],
    errors: list[RunError],
    total_duration_ms: int,
    context: VariableContext,
    started_at: datetime,
    finished_at: datetime,
    aborted_at_step: str | None = None,
    environment_id: str | None = None,
) -> RunReport:
    """Fold step results into a RunReport."""
    counts = count_statuses(results)
    return RunReport(
        flow_id=flow.id,
        flow_name=flow.name,
        environment_id=environment_id,
        overall_status=overall_status(counts, aborted_at_step is not None),
        started_at=started_at,
        finished_at=finished_at,
        total_duration_ms=total_duration_ms,
        steps=list(results),
        counts=counts,
        errors=list(errors),
        aborted_at_step=aborted_at_step,
        variables=context.snapshot(),
    )


def format_duration(ms: int | float) -> str:
    """Format a duration: milliseconds below one second, seconds otherwise."""
    if ms < 1000:
        return f"{int(ms)}ms"
    return f"{ms / 1000:.2f}s"


def format_status(status: int | None) -> str:
    """Label an HTTP status code by class."""
    if status is None or status == 0:
        return "0 (No Response)"
    if 200 <= status < 300:
        return f"{status} (Success)"
    if 300 <= status < 400:
        return f"{status} (Redirect)"
    if 400 <= status < 500:
        return f"{status} (Client Error)"
    if status >= 500:
        return f"{status} (Server Error)"
    return f"{status} (Unknown)"


def as_text(value: Any) -> str | None:
    if value is None:
        return None
    return value if isinstance(value, str) else json.dumps(value, default=str)


def preview(value: Any, length: int) -> str | None:
    """Render a value as text, truncated to ``length`` characters."""
    text = as_text(value)
    if text is None:
        return None
    if len(text) > length:
        return text[:length] + "..."
    return text


def compact_report(report: RunReport, preview_length: int) -> RunReport:
    """
    Copy of ``report`` without headers and with truncated body previews.

    Used when a run is not in debug mode; the underlying results are untouched.
    """
    steps = [
        step.model_copy(update={
            "request_headers": {},
            "response_headers": {},
            "request_body": preview(step.request_body, preview_length),
            "response_body": preview(step.response_body, preview_length),
        })
        for step in report.steps
    ]
    return report.model_copy(update={"steps": steps})


def flatten_variables(snapshot: dict[str, Any]) -> list[tuple[str, Any]]:
    """Flatten a context snapshot into (dotted name, value) pairs."""
    pairs = []
    for layer in ("env", "input", "runtime"):
        for key, value in (snapshot.get(layer) or {}).items():
            pairs.append((f"{layer}.{key}", value))
    for step_id, outputs in (snapshot.get("steps") or {}).items():
        for name, value in outputs.items():
            pairs.append((f"{step_id}.{name}", value))
    return pairs


def render_text(report: RunReport, debug: bool = False, preview_length: int = 500) -> str:
    """
    Render a RunReport as human-readable text.

    ``debug`` includes full request/response headers and bodies and every
    variable; otherwise bodies are shortened to previews.
    """
    lines = [
        "Flow Execution Result",
        "",
        f"Flow: {report.flow_name or report.flow_id} ({report.flow_id})",
        f"Status: {report.overall_status}",
        f"Execution Time: {format_duration(report.total_duration_ms)}",
        (
            f"Steps: {report.counts.total} executed "
            f"({report.counts.success} success, {report.counts.error} error, "
            f"{report.counts.skipped} skipped)"
        ),
        f"Started: {report.started_at.isoformat()}",
    ]
    if report.environment_id:
        lines.append(f"Environment: {report.environment_id}")
    if report.aborted_at_step:
        lines.append(f"Aborted at step: {report.aborted_at_step}")

    lines.extend(["", "Step Results:"])
    if not report.steps:
        lines.append("   (no steps executed)")
    for index, step in enumerate(report.steps, start=1):
        lines.extend(_render_step(index, step, debug, preview_length))

    if report.errors:
        lines.extend(["", "Errors:"])
        for index, error in enumerate(report.errors, start=1):
            lines.append(f"   {index}. [{error.kind}] {error.message}")

    variables = flatten_variables(report.variables)
    if variables:
        lines.extend(["", "Final Variables:"])
        listed = variables if debug else variables[:MAX_LISTED_VARIABLES]
        for name, value in listed:
            text = as_text(value) if debug else preview(value, VARIABLE_PREVIEW_LENGTH)
            lines.append(f"   • {name}: {text}")
        if len(variables) > len(listed):
            lines.append(f"   ... and {len(variables) - len(listed)} more variables")

    lines.extend(["", f"Flow execution {report.overall_status.replace('_', ' ')}."])
    return "\n".join(lines)


def _render_step(index: int, step: StepResult, debug: bool, preview_length: int) -> list[str]:
    icon = STATUS_ICONS.get(step.status, "?")
    name = step.display_name or step.step_id
    header = f"   {index}. {name} [{icon} {step.status}]"
    if step.method and step.url:
        header += f" {step.method} {step.url}"
    lines = [header]

    if step.kind == "http_request":
        detail = f"      └─ {format_status(step.http_status)} in {format_duration(step.duration_ms)}"
    else:
        detail = f"      └─ {step.kind} in {format_duration(step.duration_ms)}"
    if step.attempts > 1:
        detail += f" after {step.attempts} attempts"
    lines.append(detail)

    for output_name, value in step.outputs.items():
        lines.append(f"      output {output_name} = {preview(value, preview_length)}")
    for warning in step.warnings:
        lines.append(f"      ! {warning}")
    if step.error_message:
        lines.append(f"      error: {step.error_message}")

    if debug:
        for key, value in step.request_headers.items():
            lines.append(f"      > {key}: {value}")
        if step.request_body is not None:
            lines.append(f"      > body: {as_text(step.request_body)}")
        for key, value in step.response_headers.items():
            lines.append(f"      < {key}: {value}")
        if step.response_body is not None:
            lines.append(f"      < body: {as_text(step.response_body)}")
    elif step.response_body is not None:
        lines.append(f"      < body: {preview(step.response_body, preview_length)}")

    return lines
