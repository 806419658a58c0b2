"""Response path extraction and step output binding."""

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from jsonpath_ng import parse as jsonpath_parse
from jsonpath_ng.exceptions import JsonPathLexerError, JsonPathParserError

if TYPE_CHECKING:
    from flowbench.schemas.flow import Step
    from flowbench.services.flow_execution.http_client import InvocationResult

logger = logging.getLogger(__name__)

BODY_PREFIX = "response.body"
HEADERS_PREFIX = "response.headers."


def walk_path(document: Any, parts: list[str]) -> Any:
    """
    Walk a nested value segment by segment.

    Returns:
        Value at path or None if any segment is missing

    Examples:
        - ["data", "id"] -> document["data"]["id"]
        - ["users", "0", "name"] -> document["users"][0]["name"]
    """
    current = document

    for part in parts:
        if current is None:
            return None

        if isinstance(current, dict):
            if part in current:
                current = current[part]
            else:
                return None

        elif isinstance(current, list):
            try:
                index = int(part)
            except ValueError:
                return None
            if 0 <= index < len(current):
                current = current[index]
            else:
                return None

        else:
            # Scalars have no children
            return None

    return current


def resolve_path(document: Any, path: str | None) -> Any:
    """
    Extract a value from a response document.

    Accepts dotted paths (``data.items.0.id``), the same path prefixed with
    ``response.body.``, or a JSONPath expression starting with ``$``.
    Returns None on any miss; never raises.
    """
    if path is None:
        return None
    path = path.strip()
    if not path:
        return None

    if path.startswith("$"):
        return _resolve_jsonpath(document, path)

    if path == BODY_PREFIX:
        return document
    if path.startswith(BODY_PREFIX + "."):
        path = path[len(BODY_PREFIX) + 1:]

    return walk_path(document, path.split("."))


def _resolve_jsonpath(document: Any, expression: str) -> Any:
    try:
        jsonpath_expr = jsonpath_parse(expression)
    except (JsonPathLexerError, JsonPathParserError) as e:
        logger.warning("Invalid JSONPath %r: %s", expression, e)
        return None
    matches = [match.value for match in jsonpath_expr.find(document)]
    return matches[0] if matches else None


@dataclass
class BindingResult:
    """Outputs computed for one step, and the names whose path missed."""
    outputs: dict[str, Any] = field(default_factory=dict)
    misses: list[str] = field(default_factory=list)


def extract_output(path: str, result: "InvocationResult") -> Any:
    """Resolve one output path against a step's invocation result."""
    stripped = path.strip()

    if stripped == "response.status":
        return result.status
    if stripped == "response.statusText":
        return result.status_text
    if stripped.startswith(HEADERS_PREFIX):
        return result.header(stripped[len(HEADERS_PREFIX):])

    return resolve_path(result.body, stripped)


def bind_outputs(step: "Step", result: "InvocationResult") -> BindingResult:
    """
    Compute every declared output of a step.

    A missing path yields a None output and is listed in ``misses``.
    """
    binding = BindingResult()

    for name, path in step.output_bindings.items():
        value = extract_output(path, result)
        binding.outputs[name] = value
        if value is None:
            binding.misses.append(name)
            logger.warning(
                "Output %r of step %s not found at path %r", name, step.id, path
            )

    return binding
