"""Workflow execution: ordered steps, variable injection and extraction."""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any

from soapflow.schemas.api_assertions import Extractor
from soapflow.schemas.api_request import ApiRequest, ApiResponse
from soapflow.schemas.workflow import (
    Workflow,
    WorkflowStep,
    WorkflowStepResult,
    WorkflowExecutionResult,
)
from soapflow.services.api_testing.errors import ConfigurationError
from soapflow.services.api_testing.extraction import extract_variable
from soapflow.services.api_testing.interfaces import DispatchFn
from soapflow.services.api_testing.variable_resolver import VariableResolver

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class WorkflowEngine:
    """
    Executes a workflow's steps in ascending ``order`` until the first failure.

    Each run works on its own copy of the workflow variables. Variables
    extracted by a request step are visible to every later step of the same
    run and are returned in the result.

    Step variants:
    - request: {{name}} injection, dispatch, extraction
    - delay: sleep for a validated, non-negative duration
    - condition / loop / script: accepted and skipped
    """

    def __init__(self, variable_resolver: VariableResolver | None = None):
        self.variable_resolver = variable_resolver or VariableResolver()
        self._handlers = {
            "request": self._run_request,
            "delay": self._run_delay,
            "condition": self._run_condition,
            "loop": self._run_loop,
            "script": self._run_script,
        }

    async def execute(self, workflow: Workflow, dispatch: DispatchFn) -> WorkflowExecutionResult:
        """
        Execute a complete workflow.

        Args:
            workflow: Workflow definition; its variables seed the run
            dispatch: Function that performs a request and returns the response

        Returns:
            WorkflowExecutionResult with status 'completed' or 'failed'
        """
        started_at = _now()
        variables: dict[str, Any] = dict(workflow.variables or {})
        step_results: list[WorkflowStepResult] = []

        logger.info(f"Starting workflow: {workflow.name}")
        logger.debug(f"Initial variables: {variables}")

        for step in sorted(workflow.steps, key=lambda s: s.order):
            step_result = await self.execute_step(step, variables, dispatch)
            step_results.append(step_result)

            if step_result.status == "failed":
                logger.error(f"Workflow step '{step.name}' failed: {step_result.error}")
                return WorkflowExecutionResult(
                    workflow_id=workflow.id,
                    workflow_name=workflow.name,
                    start_time=started_at,
                    end_time=_now(),
                    status="failed",
                    step_results=step_results,
                    variables=variables,
                    error=f'Step "{step.name}" failed: {step_result.error}',
                )

        logger.info(f"Workflow '{workflow.name}' completed successfully")
        return WorkflowExecutionResult(
            workflow_id=workflow.id,
            workflow_name=workflow.name,
            start_time=started_at,
            end_time=_now(),
            status="completed",
            step_results=step_results,
            variables=variables,
        )

    async def execute_step(
        self,
        step: WorkflowStep,
        variables: dict[str, Any],
        dispatch: DispatchFn,
    ) -> WorkflowStepResult:
        """Execute a single step; errors become a failed step result."""
        started_at = _now()
        logger.info(f"Executing workflow step: {step.name} (type: {step.type})")

        try:
            handler = self._handlers.get(step.type)
            if handler is None:
                raise ConfigurationError(f"Unknown step type: {step.type}")

            response, extracted = await handler(step, variables, dispatch)

        except Exception as e:
            finished_at = _now()
            return WorkflowStepResult(
                step_id=step.id,
                step_name=step.name,
                start_time=started_at,
                end_time=finished_at,
                duration=_elapsed_ms(started_at, finished_at),
                status="failed",
                error=str(e) or e.__class__.__name__,
            )

        finished_at = _now()
        return WorkflowStepResult(
            step_id=step.id,
            step_name=step.name,
            start_time=started_at,
            end_time=finished_at,
            duration=_elapsed_ms(started_at, finished_at),
            status="success",
            response=response,
            status_code=response.status if response else None,
            extracted_values=extracted,
        )

    async def _run_request(
        self,
        step: WorkflowStep,
        variables: dict[str, Any],
        dispatch: DispatchFn,
    ) -> tuple[ApiResponse, dict[str, Any]]:
        if step.request is None:
            raise ConfigurationError("Request step missing request configuration")

        processed = self.inject_variables(step.request, variables)
        response = await dispatch(processed)

        extracted: dict[str, Any] = {}
        if step.extractors:
            extracted = self.extract_variables(step.extractors, response)
            variables.update(extracted)
            logger.info(f"Extracted variables: {extracted}")

        return response, extracted

    async def _run_delay(self, step: WorkflowStep, variables: dict, dispatch: DispatchFn):
        delay_ms = step.delay_ms
        if delay_ms is None or isinstance(delay_ms, bool) or delay_ms < 0:
            raise ConfigurationError("Delay step missing valid delayMs")

        logger.info(f"Waiting for {delay_ms}ms")
        await asyncio.sleep(delay_ms / 1000)
        return None, {}

    async def _run_condition(self, step: WorkflowStep, variables: dict, dispatch: DispatchFn):
        if not step.condition:
            raise ConfigurationError("Condition step missing condition configuration")
        logger.info(f"Conditional logic not yet implemented, skipping '{step.name}'")
        return None, {}

    async def _run_loop(self, step: WorkflowStep, variables: dict, dispatch: DispatchFn):
        if not step.loop:
            raise ConfigurationError("Loop step missing loop configuration")
        logger.info(f"Loop logic not yet implemented, skipping '{step.name}'")
        return None, {}

    async def _run_script(self, step: WorkflowStep, variables: dict, dispatch: DispatchFn):
        if not step.script:
            raise ConfigurationError("Script step missing script content")
        logger.info(f"Workflow script execution not yet implemented, skipping '{step.name}'")
        return None, {}

    def inject_variables(self, request: ApiRequest, variables: dict[str, Any]) -> ApiRequest:
        """Return a copy of request with {{name}} tokens replaced in body, endpoint and headers."""
        return request.model_copy(
            update={
                "body": self.variable_resolver.resolve(request.body, variables),
                "endpoint": self.variable_resolver.resolve(request.endpoint, variables),
                "headers": self.variable_resolver.resolve_dict(request.headers, variables),
            }
        )

    def extract_variables(self, extractors: list[Extractor], response: ApiResponse) -> dict[str, Any]:
        """Run extractors; misses fall back to defaults or leave the variable unset."""
        extracted: dict[str, Any] = {}

        for extractor in extractors:
            name, value = extract_variable(extractor, response)
            if value is None:
                logger.warning(f"Extractor '{name}' matched nothing and has no default")
                continue
            extracted[name] = value
            logger.debug(f"Extracted {name} = {value!r}")

        return extracted


def _elapsed_ms(start: datetime, end: datetime) -> int:
    return int((end - start).total_seconds() * 1000)
