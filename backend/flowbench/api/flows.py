"""Flow execution routes."""

import logging
from collections.abc import AsyncIterator

import httpx
from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import PlainTextResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from flowbench.config import Settings, get_settings
from flowbench.schemas.flow import ExecuteFlowRequest
from flowbench.schemas.run_report import RunReport
from flowbench.services.backend_client import BackendClient
from flowbench.services.flow_execution import (
    BackendRequestError,
    ConfigurationError,
    FlowNotFoundError,
    FlowRunner,
    StepInvoker,
)
from flowbench.services.flow_service import FlowExecutionService

router = APIRouter()
logger = logging.getLogger(__name__)

bearer_scheme = HTTPBearer(auto_error=False)


async def get_flow_service(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    settings: Settings = Depends(get_settings),
) -> AsyncIterator[FlowExecutionService]:
    """Build a service for one request; the caller's token is forwarded to the backend."""
    token = credentials.credentials if credentials else settings.backend_token

    async with httpx.AsyncClient(timeout=settings.backend_timeout) as backend_http, httpx.AsyncClient(
        follow_redirects=settings.follow_redirects,
        verify=settings.verify_ssl,
    ) as step_http:
        backend = BackendClient(
            settings.backend_url,
            token,
            client=backend_http,
            default_step_timeout_ms=settings.default_step_timeout_ms,
        )
        invoker = StepInvoker(client=step_http, max_body_size=settings.max_body_size)
        runner = FlowRunner(invoker, max_execution_time_ms=settings.max_execution_time_ms)
        yield FlowExecutionService(backend, runner, preview_length=settings.preview_length)


async def _execute(service: FlowExecutionService, flow_id: str, data: ExecuteFlowRequest) -> RunReport:
    try:
        return await service.execute_flow(
            flow_id,
            environment_id=data.environment_id,
            override_variables=data.override_variables,
            inputs=data.inputs,
            max_execution_time_ms=data.max_execution_time_ms,
            debug_mode=data.debug_mode,
        )
    except ConfigurationError as e:
        raise HTTPException(status_code=422, detail={"message": str(e), "problems": e.problems})
    except FlowNotFoundError:
        raise HTTPException(status_code=404, detail="Flow not found")
    except BackendRequestError as e:
        logger.error("Backend request failed for flow %s: %s", flow_id, e)
        raise HTTPException(status_code=502, detail=str(e))


@router.post("/{flow_id}/execute", response_model=RunReport)
async def execute_flow(
    flow_id: str,
    data: ExecuteFlowRequest,
    service: FlowExecutionService = Depends(get_flow_service),
):
    """Run a stored flow and return the structured report."""
    return await _execute(service, flow_id, data)


@router.post("/{flow_id}/execute/text", response_class=PlainTextResponse)
async def execute_flow_text(
    flow_id: str,
    data: ExecuteFlowRequest,
    service: FlowExecutionService = Depends(get_flow_service),
):
    """Run a stored flow and return the human-readable report."""
    report = await _execute(service, flow_id, data)
    return service.render(report, debug_mode=data.debug_mode)
