"""Client for the workbench backend that stores flows and environments."""

import json
import logging
from collections import defaultdict, deque
from typing import Any, Protocol

import httpx

from flowbench import __version__
from flowbench.schemas.flow import ExecutionConfig, FlowDefinition, FlowInput, Step
from flowbench.services.flow_execution.exceptions import BackendRequestError, FlowNotFoundError

logger = logging.getLogger(__name__)


class BackendRequestService(Protocol):
    """What the flow execution service needs from the backend."""

    async def get_flow(self, flow_id: str) -> FlowDefinition: ...

    async def get_environment_variables(self, environment_id: str) -> dict[str, str]: ...


class BackendClient:
    """
    Authenticated access to the backend's flow and environment endpoints.

    Responses use the backend envelope ``{"success": bool, "data": ..., "message": str}``.
    """

    def __init__(
        self,
        base_url: str,
        token: str,
        timeout: float = 30.0,
        client: httpx.AsyncClient | None = None,
        default_step_timeout_ms: int = 30_000,
    ):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout = timeout
        self.default_step_timeout_ms = default_step_timeout_ms
        self._client = client
        self._owns_client = client is None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(self.timeout))
            self._owns_client = True
        return self._client

    async def close(self):
        if self._owns_client and self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def _request(self, action: str, resource_id: str) -> Any:
        """GET ``?act=<action>&id=<id>`` and unwrap the envelope."""
        client = await self._get_client()
        url = f"{self.base_url}/"
        headers = {
            "Authorization": f"Bearer {self.token}",
            "Content-Type": "application/json",
            "User-Agent": f"flowbench/{__version__}",
        }

        logger.debug("Backend request: act=%s id=%s", action, resource_id)
        try:
            response = await client.get(url, params={"act": action, "id": resource_id}, headers=headers)
        except httpx.HTTPError as e:
            raise BackendRequestError(f"Backend request failed ({action}): {e}") from e

        if response.status_code >= 400:
            raise BackendRequestError(
                f"Backend returned HTTP {response.status_code} for {action}",
                status_code=response.status_code,
            )

        try:
            payload = response.json()
        except ValueError as e:
            raise BackendRequestError(f"Backend returned invalid JSON for {action}") from e

        if not isinstance(payload, dict) or not payload.get("success") or payload.get("data") is None:
            message = payload.get("message") if isinstance(payload, dict) else None
            raise BackendRequestError(message or f"Backend request was not successful ({action})")

        return payload["data"]

    async def get_flow(self, flow_id: str) -> FlowDefinition:
        """Fetch a stored flow and convert it into a FlowDefinition."""
        try:
            data = await self._request("flow", flow_id)
        except BackendRequestError as e:
            if e.status_code == 404:
                raise FlowNotFoundError(flow_id) from e
            raise

        return flow_from_backend(data, default_timeout_ms=self.default_step_timeout_ms)

    async def get_environment_variables(self, environment_id: str) -> dict[str, str]:
        """
        Fetch an environment's variables.

        A failure is not fatal: the run proceeds without environment values.
        """
        try:
            data = await self._request("environment_variables", environment_id)
        except BackendRequestError as e:
            logger.warning("Could not load variables for environment %s: %s", environment_id, e)
            return {}

        variables = data.get("variables", {}) if isinstance(data, dict) else data
        return normalize_variables(variables)


def _decode_json(value: Any, default: Any) -> Any:
    """Stored JSON columns may arrive as strings."""
    if value is None or value == "":
        return default
    if isinstance(value, str):
        try:
            return json.loads(value)
        except json.JSONDecodeError:
            return default
    return value


def normalize_variables(variables: Any) -> dict[str, str]:
    """
    Flatten the variable shapes the backend stores.

    Accepts ``{key: value}``, ``{key: {"value": ..}}`` and
    ``[{"key": .., "value": .., "enabled": ..}]``, optionally JSON-encoded.
    """
    variables = _decode_json(variables, {})
    result: dict[str, Any] = {}

    if isinstance(variables, dict):
        for key, val in variables.items():
            if isinstance(val, dict) and "value" in val:
                if val.get("enabled", True):
                    result[key] = val["value"]
            else:
                result[key] = val

    elif isinstance(variables, list):
        for item in variables:
            if not isinstance(item, dict):
                continue
            key = item.get("key") or item.get("name")
            if key and item.get("enabled", True):
                result[key] = item.get("value")

    return result


def _parse_headers(headers: Any) -> dict[str, str]:
    headers = _decode_json(headers, {})
    if isinstance(headers, list):
        return {
            item["key"]: str(item.get("value", ""))
            for item in headers
            if isinstance(item, dict) and item.get("key") and item.get("enabled", True)
        }
    if isinstance(headers, dict):
        return {str(key): str(value) for key, value in headers.items()}
    return {}


def _parse_body(body: Any) -> Any:
    if body is None or body == "" or body == "null":
        return None
    if isinstance(body, str):
        try:
            return json.loads(body)
        except json.JSONDecodeError:
            return body
    return body


def _parse_outputs(outputs: Any) -> dict[str, str]:
    outputs = _decode_json(outputs, {})
    if isinstance(outputs, list):
        return {
            item["name"]: item.get("path", "")
            for item in outputs
            if isinstance(item, dict) and item.get("name")
        }
    if isinstance(outputs, dict):
        return {str(name): str(path) for name, path in outputs.items()}
    return {}


def step_from_backend(data: dict, default_timeout_ms: int = 30_000) -> Step:
    value = data.get("value")
    return Step(
        id=str(data.get("id", "")),
        display_name=data.get("name"),
        kind=data.get("type") or "http_request",
        method=(data.get("method") or "GET").upper(),
        url_template=data.get("url") or "",
        header_templates=_parse_headers(data.get("headers")),
        body_template=_parse_body(data.get("body")),
        output_bindings=_parse_outputs(data.get("outputs")),
        timeout_ms=data.get("timeout") or default_timeout_ms,
        delay_ms=int(data.get("duration") or 0),
        variable_name=data.get("variable"),
        value_template=None if value is None else str(value),
    )


def _steps_from_nodes(nodes: list[dict], edges: list[dict]) -> list[dict]:
    """Order the nodes of the visual editor format by their edges."""
    by_id = {node["id"]: node for node in nodes if isinstance(node, dict) and node.get("id")}
    successors: dict[str, list[str]] = defaultdict(list)
    incoming = {node_id: 0 for node_id in by_id}
    for edge in edges:
        source, target = edge.get("source"), edge.get("target")
        if source in by_id and target in by_id:
            successors[source].append(target)
            incoming[target] += 1

    queue = deque(node_id for node_id in by_id if incoming[node_id] == 0)
    ordered = []
    while queue:
        node_id = queue.popleft()
        ordered.append(node_id)
        for target in successors[node_id]:
            incoming[target] -= 1
            if incoming[target] == 0:
                queue.append(target)
    # Nodes on a cycle keep their stored order
    ordered.extend(node_id for node_id in by_id if node_id not in ordered)

    steps = []
    for node_id in ordered:
        node = by_id[node_id]
        steps.append({**(node.get("data") or {}), "id": node_id, "type": node.get("type", "http_request")})
    return steps


def flow_from_backend(data: dict, default_timeout_ms: int = 30_000) -> FlowDefinition:
    """
    Build a FlowDefinition from a stored flow record.

    ``flow_data`` holds ``{"version", "steps", "config"}``; the older node/edge
    format of the visual editor is converted by following its edges.
    """
    flow_data = _decode_json(data.get("flow_data"), {}) or {}

    raw_steps = flow_data.get("steps")
    if raw_steps is None and flow_data.get("nodes"):
        raw_steps = _steps_from_nodes(flow_data.get("nodes") or [], flow_data.get("edges") or [])

    raw_config = flow_data.get("config") or {}
    config = ExecutionConfig(
        inter_step_delay_ms=int(raw_config.get("delay", 0) or 0),
        retry_count=int(raw_config.get("retryCount", 0) or 0),
        retry_delay_ms=int(raw_config.get("retryDelay", 0) or 0),
        allow_parallel=bool(raw_config.get("parallel", False)),
        count_http_errors=bool(raw_config.get("countHttpErrors", False)),
    )

    inputs = [
        FlowInput(
            name=item["name"],
            type=item.get("type", "string"),
            required=bool(item.get("required", False)),
            default=item.get("default"),
            description=item.get("description"),
        )
        for item in _decode_json(data.get("flow_inputs"), []) or []
        if isinstance(item, dict) and item.get("name")
    ]

    return FlowDefinition(
        id=str(data.get("id", "")),
        name=data.get("name") or str(data.get("id", "")),
        description=data.get("description"),
        steps=[
            step_from_backend(step, default_timeout_ms)
            for step in raw_steps or []
            if isinstance(step, dict)
        ],
        config=config,
        inputs=inputs,
    )
