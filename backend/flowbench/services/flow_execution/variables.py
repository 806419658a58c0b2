"""Variable resolution for flow step templates."""

import copy
import json
import re
from dataclasses import dataclass, field
from typing import Any

from flowbench.services.flow_execution.path_resolver import walk_path


@dataclass(frozen=True)
class InputScope:
    """Values supplied for the flow's declared inputs."""


@dataclass(frozen=True)
class EnvironmentScope:
    """Environment variables merged with caller overrides."""


@dataclass(frozen=True)
class RuntimeScope:
    """Run metadata (run id, flow id, start time)."""


@dataclass(frozen=True)
class StepOutputScope:
    """Outputs bound by an already executed step."""
    step_id: str


VariableScope = InputScope | EnvironmentScope | RuntimeScope | StepOutputScope

RESERVED_NAMESPACES: dict[str, VariableScope] = {
    "input": InputScope(),
    "env": EnvironmentScope(),
    "environment": EnvironmentScope(),
    "runtime": RuntimeScope(),
}

# Lookup order for bare {{name}} tokens
BARE_NAME_SCOPES: tuple[VariableScope, ...] = (
    RuntimeScope(),
    InputScope(),
    EnvironmentScope(),
)


def parse_scope(namespace: str) -> VariableScope:
    """Map a token's first segment to the layer it selects."""
    if namespace in RESERVED_NAMESPACES:
        return RESERVED_NAMESPACES[namespace]
    return StepOutputScope(namespace)


@dataclass
class VariableContext:
    """
    Layered variables visible to a step.

    Layers are append-only for the duration of a run: the only mutation is
    recording the outputs of a step that just finished.
    """
    input: dict[str, Any] = field(default_factory=dict)
    environment: dict[str, Any] = field(default_factory=dict)
    runtime: dict[str, Any] = field(default_factory=dict)
    step_outputs: dict[str, dict[str, Any]] = field(default_factory=dict)

    def layer(self, scope: VariableScope) -> dict[str, Any] | None:
        match scope:
            case InputScope():
                return self.input
            case EnvironmentScope():
                return self.environment
            case RuntimeScope():
                return self.runtime
            case StepOutputScope(step_id=step_id):
                return self.step_outputs.get(step_id)
        return None

    def record_outputs(self, step_id: str, outputs: dict[str, Any]) -> None:
        if step_id in self.step_outputs:
            raise ValueError(f"Outputs for step {step_id!r} already recorded")
        self.step_outputs[step_id] = dict(outputs)

    def snapshot(self) -> dict[str, Any]:
        """Deep copy of every layer, for reports."""
        return copy.deepcopy({
            "input": self.input,
            "env": self.environment,
            "runtime": self.runtime,
            "steps": self.step_outputs,
        })


def lookup(scope: VariableScope, path: list[str], context: VariableContext) -> Any:
    """
    Resolve a path inside one layer of the context.

    Returns None when the layer, or any segment of the path, is missing.
    """
    layer = context.layer(scope)
    if layer is None:
        return None
    if not path:
        # A bare namespace never resolves to a whole layer
        return None
    return walk_path(layer, path)


class VariableInterpolator:
    """
    Resolves {{namespace.path}} tokens against a VariableContext.

    Supports:
    - Reserved layers: {{input.email}}, {{env.base_url}}, {{runtime.run_id}}
    - Step outputs: {{login.token}}
    - Nested paths and list indexes: {{env.users.0.name}}
    - Bare names, looked up in runtime, input, then env: {{base_url}}

    Tokens that cannot be resolved are kept verbatim. Nothing here raises
    or mutates the context.
    """

    TOKEN_PATTERN = re.compile(r'\{\{\s*([^{}]+?)\s*\}\}')

    def resolve_token(self, expression: str, context: VariableContext) -> Any:
        """Return the value a token expression points at, or None."""
        segments = [part.strip() for part in expression.split('.')]
        if any(not part for part in segments):
            return None

        if len(segments) == 1:
            for scope in BARE_NAME_SCOPES:
                value = lookup(scope, segments, context)
                if value is not None:
                    return value
            return None

        namespace, *path = segments
        return lookup(parse_scope(namespace), path, context)

    def interpolate(self, template: str | None, context: VariableContext) -> str:
        """
        Resolve tokens in a string template.

        Args:
            template: String containing {{namespace.path}} tokens
            context: Layered variables

        Returns:
            String with resolvable tokens replaced by their values
        """
        if template is None:
            return ""

        if not isinstance(template, str):
            return str(template)

        def replacer(match: re.Match) -> str:
            value = self.resolve_token(match.group(1), context)
            if value is None:
                # Keep original token if it does not resolve
                return match.group(0)
            return _stringify(value)

        return self.TOKEN_PATTERN.sub(replacer, template)

    def interpolate_headers(
        self,
        headers: dict[str, str] | None,
        context: VariableContext,
    ) -> dict[str, str]:
        """Resolve every header value. Header names are kept as written."""
        return {
            name: self.interpolate(value, context) if isinstance(value, str) else _stringify(value)
            for name, value in (headers or {}).items()
        }

    def interpolate_value(self, value: Any, context: VariableContext) -> Any:
        """Recursively resolve every string leaf of a JSON-like value."""
        if isinstance(value, str):
            return self.interpolate(value, context)
        elif isinstance(value, dict):
            return {key: self.interpolate_value(item, context) for key, item in value.items()}
        elif isinstance(value, list):
            return [self.interpolate_value(item, context) for item in value]
        else:
            return value

    def extract_tokens(self, template: str | None) -> list[str]:
        """Extract all token expressions from a string template."""
        if not template or not isinstance(template, str):
            return []
        return [match.group(1).strip() for match in self.TOKEN_PATTERN.finditer(template)]

    def extract_tokens_from_value(self, value: Any) -> list[str]:
        """Extract token expressions from every string leaf of a value."""
        if isinstance(value, str):
            return self.extract_tokens(value)
        if isinstance(value, dict):
            return [token for item in value.values() for token in self.extract_tokens_from_value(item)]
        if isinstance(value, list):
            return [token for item in value for token in self.extract_tokens_from_value(item)]
        return []

    def has_tokens(self, template: str | None) -> bool:
        """Check if a string contains any {{...}} tokens."""
        if not template or not isinstance(template, str):
            return False
        return bool(self.TOKEN_PATTERN.search(template))

    def unresolved_tokens(self, value: Any, context: VariableContext) -> list[str]:
        """Token expressions in a template value that the context cannot resolve."""
        gaps = []
        for token in self.extract_tokens_from_value(value):
            if self.resolve_token(token, context) is None and token not in gaps:
                gaps.append(token)
        return gaps


def _stringify(value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, (dict, list, bool)):
        return json.dumps(value)
    return str(value)


_interpolator = VariableInterpolator()


def interpolate(template: str | None, context: VariableContext) -> str:
    """Resolve {{namespace.path}} tokens in a template."""
    return _interpolator.interpolate(template, context)
