"""Run routes - test case and workflow execution."""

import asyncio
import logging
from typing import Any

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect
from pydantic import Field, ValidationError

from soapflow.schemas.base import CamelModel
from soapflow.schemas.api_request import ApiRequest, ApiResponse
from soapflow.schemas.test_case import TestCase, TestCaseResult
from soapflow.schemas.workflow import Workflow, WorkflowExecutionResult
from soapflow.services.api_testing import (
    HttpTransport,
    InMemoryWorkflowStore,
    TestCaseRunner,
    WorkflowEngine,
)
from soapflow.services.api_testing.interfaces import Transport

router = APIRouter()
logger = logging.getLogger(__name__)


class RunTestCaseRequest(CamelModel):
    test_case: TestCase
    workflows: list[Workflow] = Field(default_factory=list)
    environment: dict[str, Any] = Field(default_factory=dict)
    globals_: dict[str, Any] = Field(default_factory=dict, alias="globals")
    fallback_endpoint: str | None = None


class RunTestCaseResponse(CamelModel):
    result: TestCaseResult
    events: list[dict[str, Any]] = Field(default_factory=list)


class RunWorkflowRequest(CamelModel):
    workflow: Workflow


def get_transport() -> Transport:
    """Transport used by run routes; overridden in tests."""
    return HttpTransport()


def _build_runner(payload: RunTestCaseRequest, transport: Transport, on_event) -> TestCaseRunner:
    return TestCaseRunner(
        transport=transport,
        workflow_store=InMemoryWorkflowStore(payload.workflows),
        on_event=on_event,
        env_vars=payload.environment,
        globals_=payload.globals_,
    )


@router.post("/test-case", response_model=RunTestCaseResponse, response_model_by_alias=True)
async def run_test_case(
    payload: RunTestCaseRequest,
    transport: Transport = Depends(get_transport),
):
    """Run a test case and return its result with every notification it emitted."""
    events: list[dict[str, Any]] = []
    runner = _build_runner(payload, transport, events.append)

    try:
        result = await runner.run_test_case(
            payload.test_case,
            fallback_endpoint=payload.fallback_endpoint,
        )
    finally:
        await runner.close()

    return RunTestCaseResponse(result=result, events=events)


@router.post("/workflow", response_model=WorkflowExecutionResult, response_model_by_alias=True)
async def run_workflow(
    payload: RunWorkflowRequest,
    transport: Transport = Depends(get_transport),
):
    """Run a standalone workflow."""

    async def dispatch(request: ApiRequest) -> ApiResponse:
        if request.kind is None:
            request = request.model_copy(update={"kind": request.request_type or "http"})
        return await transport.execute(request)

    try:
        return await WorkflowEngine().execute(payload.workflow, dispatch)
    finally:
        await transport.close()


@router.websocket("/ws/test-case")
async def run_test_case_websocket(
    websocket: WebSocket,
    transport: Transport = Depends(get_transport),
):
    """Run a test case with WebSocket streaming."""
    await websocket.accept()

    try:
        # Wait for start command
        start_data = await websocket.receive_json()
        if start_data.get("type") != "start":
            await websocket.send_json({"type": "error", "data": {"message": "Expected start command"}})
            return

        try:
            payload = RunTestCaseRequest.model_validate(
                {k: v for k, v in start_data.items() if k != "type"}
            )
        except ValidationError as e:
            await websocket.send_json({"type": "error", "data": {"message": str(e)}})
            return

        # Streaming callback
        async def on_event(event: dict[str, Any]):
            await websocket.send_json(event)

        runner = _build_runner(payload, transport, on_event)
        run_task = asyncio.ensure_future(
            runner.run_test_case(payload.test_case, fallback_endpoint=payload.fallback_endpoint)
        )

        try:
            # Listen for cancel while the case runs
            while not run_task.done():
                receive_task = asyncio.ensure_future(websocket.receive_json())
                done, _ = await asyncio.wait(
                    {run_task, receive_task},
                    return_when=asyncio.FIRST_COMPLETED,
                )
                if receive_task in done:
                    message = receive_task.result()
                    if message.get("type") == "cancel":
                        logger.info(f"Cancel requested for test case {payload.test_case.id}")
                        runner.cancel()
                else:
                    receive_task.cancel()

            result = run_task.result()
            await websocket.send_json({
                "type": "complete",
                "data": result.model_dump(mode="json", by_alias=True),
            })

        finally:
            if not run_task.done():
                run_task.cancel()
            await runner.close()

    except WebSocketDisconnect:
        pass
    except Exception as e:
        logger.exception("Test case websocket run failed")
        await websocket.send_json({"type": "error", "data": {"message": str(e)}})
