from datetime import datetime, timezone

import pytest

from flowbench.schemas.run_report import RunError, RunReport, StatusCounts, StepResult
from flowbench.services.flow_execution.reporter import (
    compact_report,
    format_duration,
    format_status,
    render_text,
)

STARTED = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


@pytest.mark.parametrize("ms, expected", [(0, "0ms"), (750, "750ms"), (999, "999ms"), (1500, "1.50s"), (61234, "61.23s")])
def test_format_duration(ms, expected):
    assert format_duration(ms) == expected


def test_format_status():
    assert format_status(200) == "200 (Success)"
    assert format_status(302) == "302 (Redirect)"
    assert format_status(404) == "404 (Client Error)"
    assert format_status(503) == "503 (Server Error)"
    assert format_status(0) == "0 (No Response)"


@pytest.fixture
def report():
    steps = [
        StepResult(
            step_id="login",
            display_name="Log in",
            status="success",
            method="POST",
            url="https://api.test/login",
            request_headers={"Content-Type": "application/json"},
            request_body={"user": "ada"},
            http_status=200,
            status_text="OK",
            response_headers={"x-request-id": "r1"},
            response_body={"access_token": "x" * 80},
            duration_ms=120,
            attempts=1,
            outputs={"token": "x" * 80},
            timestamp=STARTED,
        ),
        StepResult(
            step_id="profile",
            status="error",
            method="GET",
            url="https://api.test/me",
            http_status=0,
            duration_ms=1500,
            attempts=2,
            warnings=["Unresolved variable {{env.trace_id}}"],
            error_message="Connection error: refused",
            error_type="transport",
            timestamp=STARTED,
        ),
    ]
    return RunReport(
        flow_id="auth",
        flow_name="Auth flow",
        environment_id="env-1",
        overall_status="completed_with_errors",
        started_at=STARTED,
        finished_at=STARTED,
        total_duration_ms=1620,
        steps=steps,
        counts=StatusCounts(total=2, success=1, error=1),
        errors=[RunError(kind="transport_failure", message="Step profile failed: refused", step_id="profile")],
        variables={
            "input": {},
            "env": {f"var{i}": i for i in range(12)},
            "runtime": {},
            "steps": {"login": {"token": "x" * 80}},
        },
    )


def test_render_text_summary(report):
    text = render_text(report, preview_length=20)

    assert "Flow: Auth flow (auth)" in text
    assert "Status: completed_with_errors" in text
    assert "Execution Time: 1.62s" in text
    assert "Steps: 2 executed (1 success, 1 error, 0 skipped)" in text
    assert "1. Log in [✓ success] POST https://api.test/login" in text
    assert "└─ 200 (Success) in 120ms" in text
    assert "└─ 0 (No Response) in 1.50s after 2 attempts" in text
    assert "! Unresolved variable {{env.trace_id}}" in text
    assert "1. [transport_failure] Step profile failed: refused" in text
    assert "... and 3 more variables" in text
    assert text.endswith("Flow execution completed with errors.")


def test_render_text_previews_bodies_without_debug(report):
    text = render_text(report, preview_length=20)

    assert '< body: {"access_token": "xx...' in text
    assert "> Content-Type" not in text


def test_render_text_debug_shows_everything(report):
    text = render_text(report, debug=True, preview_length=20)

    assert "> Content-Type: application/json" in text
    assert "< x-request-id: r1" in text
    assert "x" * 80 in text
    assert "more variables" not in text
    assert "env.var11: 11" in text


def test_compact_report_drops_headers_and_truncates(report):
    compact = compact_report(report, preview_length=10)

    assert compact.steps[0].request_headers == {}
    assert compact.steps[0].response_headers == {}
    assert compact.steps[0].response_body == '{"access_t...'
    assert compact.steps[0].outputs == report.steps[0].outputs
    assert report.steps[0].response_headers == {"x-request-id": "r1"}


def test_render_text_aborted_run():
    report = RunReport(
        flow_id="slow",
        flow_name="Slow flow",
        overall_status="aborted",
        started_at=STARTED,
        finished_at=STARTED,
        total_duration_ms=2000,
        steps=[
            StepResult(
                step_id="first",
                status="success",
                method="GET",
                url="https://api.test/a",
                http_status=200,
                duration_ms=2000,
                attempts=1,
                timestamp=STARTED,
            ),
        ],
        counts=StatusCounts(total=1, success=1),
        errors=[RunError(
            kind="run_abort",
            message="Flow execution timeout at step: second (2000ms elapsed, budget 1000ms)",
            step_id="second",
        )],
        aborted_at_step="second",
    )

    text = render_text(report)

    assert "Status: aborted" in text
    assert "Aborted at step: second" in text
    assert "1. first [✓ success] GET https://api.test/a" in text
    assert "1. [run_abort] Flow execution timeout at step: second" in text
    assert text.endswith("Flow execution aborted.")


def test_render_text_non_http_steps():
    report = RunReport(
        flow_id="f",
        overall_status="completed",
        started_at=STARTED,
        finished_at=STARTED,
        steps=[
            StepResult(step_id="wait", kind="delay", status="success", duration_ms=500, timestamp=STARTED),
            StepResult(
                step_id="branch",
                kind="condition",
                status="skipped",
                warnings=["Step type 'condition' is not supported and was skipped"],
                timestamp=STARTED,
            ),
        ],
        counts=StatusCounts(total=2, success=1, skipped=1),
    )

    text = render_text(report)

    assert "1. wait [✓ success]" in text
    assert "└─ delay in 500ms" in text
    assert "2. branch [- skipped]" in text
    assert "(1 success, 0 error, 1 skipped)" in text
