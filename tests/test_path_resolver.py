from flowbench.schemas.flow import Step
from flowbench.services.flow_execution.http_client import InvocationResult
from flowbench.services.flow_execution.path_resolver import bind_outputs, resolve_path


def test_dotted_paths():
    document = {"a": {"b": 5}}
    assert resolve_path(document, "a.b") == 5
    assert resolve_path(document, "a.c") is None


def test_response_body_prefix():
    document = {"access_token": "abc123"}
    assert resolve_path(document, "response.body.access_token") == "abc123"
    assert resolve_path(document, "response.body") == document


def test_list_indexes():
    document = {"items": [{"id": 1}, {"id": 2}]}
    assert resolve_path(document, "items.1.id") == 2
    assert resolve_path(document, "items.5.id") is None
    assert resolve_path(document, "items.first.id") is None


def test_scalars_have_no_children():
    assert resolve_path({"a": "text"}, "a.length") is None
    assert resolve_path("plain body", "a") is None


def test_empty_paths():
    assert resolve_path({"a": 1}, "") is None
    assert resolve_path({"a": 1}, None) is None


def test_jsonpath_expressions():
    document = {"items": [{"id": 1, "tag": "x"}, {"id": 2, "tag": "y"}]}
    assert resolve_path(document, "$.items[1].id") == 2
    assert resolve_path(document, "$.missing") is None


def test_invalid_jsonpath_is_a_miss():
    assert resolve_path({"a": 1}, "$[[[") is None


def _result(body, headers=None, status=200):
    return InvocationResult(
        status=status,
        status_text="OK",
        headers=headers or {},
        body=body,
        duration_ms=3,
    )


def test_bind_outputs_from_body_status_and_headers():
    step = Step(
        id="login",
        url_template="https://api.test/login",
        output_bindings={
            "token": "response.body.access_token",
            "status": "response.status",
            "request_id": "response.headers.X-Request-Id",
            "user_id": "user.id",
        },
    )
    result = _result(
        {"access_token": "abc123", "user": {"id": 9}},
        headers={"x-request-id": "req-42"},
    )

    binding = bind_outputs(step, result)

    assert binding.outputs == {
        "token": "abc123",
        "status": 200,
        "request_id": "req-42",
        "user_id": 9,
    }
    assert binding.misses == []


def test_bind_outputs_records_misses():
    step = Step(
        id="lookup",
        url_template="https://api.test/items",
        output_bindings={"id": "data.id", "name": "data.name"},
    )

    binding = bind_outputs(step, _result({"data": {"name": "widget"}}))

    assert binding.outputs == {"id": None, "name": "widget"}
    assert binding.misses == ["id"]
