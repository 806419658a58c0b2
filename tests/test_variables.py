import pytest

from flowbench.services.flow_execution.variables import (
    EnvironmentScope,
    StepOutputScope,
    VariableContext,
    VariableInterpolator,
    interpolate,
    parse_scope,
)


@pytest.fixture
def context():
    return VariableContext(
        input={"email": "ada@example.com", "limit": 5},
        environment={
            "base_url": "https://api.example.com",
            "users": [{"name": "ada"}, {"name": "grace"}],
            "debug": True,
        },
        runtime={"run_id": "run-1", "flow_id": "checkout"},
        step_outputs={"login": {"token": "abc123", "profile": {"id": 7}}},
    )


def test_resolves_every_layer(context):
    template = "{{env.base_url}}/users/{{login.profile.id}}?email={{input.email}}&run={{runtime.run_id}}"
    assert interpolate(template, context) == (
        "https://api.example.com/users/7?email=ada@example.com&run=run-1"
    )


def test_nested_list_index(context):
    assert interpolate("{{env.users.1.name}}", context) == "grace"


def test_whitespace_inside_braces(context):
    assert interpolate("{{ env.base_url }}", context) == "https://api.example.com"


def test_environment_alias(context):
    assert interpolate("{{environment.base_url}}", context) == "https://api.example.com"


def test_unresolved_tokens_kept_verbatim(context):
    template = "{{env.missing}} {{ghost.token}} {{login.nope}} {{env}}"
    assert interpolate(template, context) == template


def test_interpolation_is_idempotent(context):
    template = "Bearer {{login.token}} for {{input.email}} and {{env.unknown}}"
    once = interpolate(template, context)
    assert interpolate(once, context) == once


def test_bare_names_prefer_runtime_then_input_then_env():
    context = VariableContext(
        input={"region": "from-input", "email": "a@b.c"},
        environment={"region": "from-env", "email": "x@y.z", "host": "h"},
        runtime={"region": "from-runtime"},
    )
    assert interpolate("{{region}}", context) == "from-runtime"
    assert interpolate("{{email}}", context) == "a@b.c"
    assert interpolate("{{host}}", context) == "h"


def test_structured_values_render_as_json(context):
    assert interpolate("{{env.users.0}}", context) == '{"name": "ada"}'
    assert interpolate("{{env.debug}}", context) == "true"
    assert interpolate("{{input.limit}}", context) == "5"


def test_interpolate_value_rewrites_leaves_not_keys(context):
    interpolator = VariableInterpolator()
    body = {"{{input.email}}": ["{{login.token}}", 3], "nested": {"id": "{{login.profile.id}}"}}
    assert interpolator.interpolate_value(body, context) == {
        "{{input.email}}": ["abc123", 3],
        "nested": {"id": "7"},
    }


def test_unresolved_tokens_lists_gaps_once(context):
    interpolator = VariableInterpolator()
    gaps = interpolator.unresolved_tokens(
        ["{{env.nope}}", {"a": "{{env.nope}} {{input.email}}"}, "{{later.value}}"], context
    )
    assert gaps == ["env.nope", "later.value"]


def test_parse_scope():
    assert parse_scope("env") == EnvironmentScope()
    assert parse_scope("login") == StepOutputScope("login")


def test_record_outputs_once_per_step(context):
    context.record_outputs("checkout", {"order_id": 1})
    assert context.step_outputs["checkout"] == {"order_id": 1}
    with pytest.raises(ValueError):
        context.record_outputs("checkout", {"order_id": 2})


def test_snapshot_is_a_copy(context):
    snapshot = context.snapshot()
    snapshot["steps"]["login"]["token"] = "changed"
    assert context.step_outputs["login"]["token"] == "abc123"
    assert set(snapshot) == {"input", "env", "runtime", "steps"}


def test_non_string_templates_are_stringified(context):
    assert interpolate(0, context) == "0"
    assert interpolate(False, context) == "False"
    assert interpolate(None, context) == ""
    assert interpolate("", context) == ""
