"""Test case execution engine: the step state machine."""

import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from soapflow.schemas.api_request import ApiRequest, ApiResponse
from soapflow.schemas.test_case import TestCase, TestCaseResult, TestStep
from soapflow.services.api_testing.assertion_engine import AssertionEngine
from soapflow.services.api_testing.errors import (
    ConfigurationError,
    ExecutionError,
    StepFailedError,
    TestCaseFailedError,
    WorkflowNotFoundError,
)
from soapflow.services.api_testing.extraction import extract_variable
from soapflow.services.api_testing.interfaces import (
    EventCallback,
    Templater,
    Transport,
    WorkflowStore,
)
from soapflow.services.api_testing.script_sandbox import ScriptCapabilities, ScriptSandbox
from soapflow.services.api_testing.variable_resolver import VariableResolver
from soapflow.services.api_testing.workflow_engine import WorkflowEngine

logger = logging.getLogger(__name__)

MAX_STEPS = 200
MAX_STEPS_ERROR = f"Max steps ({MAX_STEPS}) exceeded. Possible infinite loop."


class ResolverTemplater(Templater):
    """Templater backed by VariableResolver.process."""

    def __init__(self, resolver: VariableResolver | None = None):
        self.resolver = resolver or VariableResolver()

    def process(self, text, env_vars=None, globals_=None, scripts_dir=None, context_vars=None) -> str:
        return self.resolver.process(text, env_vars, globals_, scripts_dir, context_vars)


@dataclass
class CaseRun:
    """Mutable state of one in-flight test case run."""
    test_case: TestCase
    context: dict[str, Any] = field(default_factory=dict)
    fallback_endpoint: str | None = None
    index: int = 0
    next_index: int = 1
    steps_executed: int = 0


class TestCaseRunner:
    """
    Sequences a test case's steps against a transport.

    Features:
    - One shared execution context per run, visible to every step
    - Request steps with templating, assertions and extraction
    - Sandboxed scripts with goto-by-name control flow
    - Workflow steps delegated to the WorkflowEngine
    - Fail-fast: the first failing step ends the run
    - A ceiling of 200 executed steps per run

    Lifecycle notifications (testCaseStart, stepStart, stepPass, stepFail,
    testCaseFail, testCaseEnd) go to on_event, which may be sync or async.
    """
    __test__ = False

    def __init__(
        self,
        transport: Transport,
        workflow_store: WorkflowStore | None = None,
        templater: Templater | None = None,
        on_event: EventCallback | None = None,
        env_vars: dict | None = None,
        globals_: dict | None = None,
        scripts_dir: str | None = None,
    ):
        """
        Initialize the runner.

        Args:
            transport: Performs request steps
            workflow_store: Source of workflow definitions for workflow steps
            templater: Resolves templated request fields
            on_event: Notification sink
            env_vars: Environment variable scope for templating
            globals_: Global variable scope for templating
            scripts_dir: Passed through to the templater
        """
        self.transport = transport
        self.workflow_store = workflow_store
        self.templater = templater or ResolverTemplater()
        self.on_event = on_event
        self.env_vars = env_vars or {}
        self.globals_ = globals_ or {}
        self.scripts_dir = scripts_dir

        self.assertion_engine = AssertionEngine()
        self.workflow_engine = WorkflowEngine()
        self.sandbox = ScriptSandbox()

        self._handlers = {
            "delay": self._run_delay,
            "request": self._run_request,
            "script": self._run_script,
            "transfer": self._run_transfer,
            "workflow": self._run_workflow,
        }
        self._lock = asyncio.Lock()

    async def close(self):
        """Close the transport."""
        await self.transport.close()

    def cancel(self) -> None:
        """Abort the in-flight transport call; the step fails as usual."""
        self.transport.cancel()

    async def run_test_case(
        self,
        test_case: TestCase,
        fallback_endpoint: str | None = None,
        raise_on_failure: bool = False,
    ) -> TestCaseResult:
        """
        Run a test case to completion or first failure.

        Args:
            test_case: Case to run
            fallback_endpoint: Endpoint for request steps that have none
            raise_on_failure: Raise TestCaseFailedError after testCaseEnd
                instead of only reporting the failure

        Returns:
            TestCaseResult summarizing the run
        """
        async with self._lock:
            result = await self._run(test_case, fallback_endpoint)

        if raise_on_failure and result.status == "failed":
            raise TestCaseFailedError(result.error or "Test case failed", result)
        return result

    async def _run(self, test_case: TestCase, fallback_endpoint: str | None) -> TestCaseResult:
        started_at = datetime.now(timezone.utc)
        run = CaseRun(test_case=test_case, fallback_endpoint=fallback_endpoint)
        steps = test_case.steps
        error: str | None = None
        failed_step_id: str | None = None

        logger.info(f"Starting Test Case: {test_case.name}")
        await self._notify("testCaseStart", id=test_case.id)

        while run.index < len(steps):
            if run.steps_executed >= MAX_STEPS:
                error = MAX_STEPS_ERROR
                logger.error(f"[{test_case.name}] {error}")
                await self._notify("testCaseFail", id=test_case.id, error=error)
                break

            step = steps[run.index]
            run.steps_executed += 1
            run.next_index = run.index + 1

            logger.info(
                f"[{test_case.name}] Running Step [{run.index + 1}/{len(steps)}]: "
                f"{step.name} ({step.type})"
            )
            await self._notify("stepStart", caseId=test_case.id, stepId=step.id)

            try:
                payload = await self._run_step(step, run)
            except StepFailedError as e:
                error, failed_step_id = e.message, step.id
                logger.warning(f"[{test_case.name}] Step Failed: {error}")
                await self._notify(
                    "stepFail",
                    caseId=test_case.id,
                    stepId=step.id,
                    error=error,
                    assertionResults=[r.model_dump(by_alias=True) for r in e.assertion_results],
                    response=_dump(e.response),
                )
                break
            except Exception as e:
                error, failed_step_id = str(e) or e.__class__.__name__, step.id
                logger.warning(f"[{test_case.name}] Step Failed: {error}")
                await self._notify("stepFail", caseId=test_case.id, stepId=step.id, error=error)
                break

            await self._notify("stepPass", caseId=test_case.id, stepId=step.id, **payload)
            run.index = run.next_index

        logger.info(f"Test Case Finished: {test_case.name}")
        await self._notify("testCaseEnd", id=test_case.id)

        return TestCaseResult(
            case_id=test_case.id,
            case_name=test_case.name,
            status="failed" if error else "passed",
            steps_executed=run.steps_executed,
            failed_step_id=failed_step_id,
            error=error,
            context=dict(run.context),
            started_at=started_at,
            finished_at=datetime.now(timezone.utc),
        )

    async def _run_step(self, step: TestStep, run: CaseRun) -> dict[str, Any]:
        handler = self._handlers.get(step.type)
        if handler is None:
            raise ConfigurationError(f"Unknown step type: {step.type}")
        return await handler(step, run)

    async def _run_delay(self, step: TestStep, run: CaseRun) -> dict[str, Any]:
        ms = step.config.delay_ms or 0
        logger.info(f"[{run.test_case.name}] Delaying for {ms}ms...")
        await asyncio.sleep(max(ms, 0) / 1000)
        return {}

    async def _run_transfer(self, step: TestStep, run: CaseRun) -> dict[str, Any]:
        logger.info(f"[{run.test_case.name}] Property Transfer not yet implemented")
        return {}

    async def _run_request(self, step: TestStep, run: CaseRun) -> dict[str, Any]:
        request = step.config.request
        if request is None:
            raise ConfigurationError("No request configuration found in step")

        case_name = run.test_case.name
        dispatched = self._resolve_request(request, run)
        logger.info(f"[{case_name}] Resolved variables for step '{step.name}'")
        if not dispatched.endpoint:
            logger.warning(
                f"[{case_name}] Endpoint is empty and no fallback provided. Request will likely fail."
            )

        response = await self.transport.execute(dispatched)

        assertion_results = []
        if request.assertions:
            logger.info(f"[{case_name}] Running {len(request.assertions)} assertions...")
            assertion_results = self.assertion_engine.run(
                response.body, response.time_taken, request.assertions
            )
            for r in assertion_results:
                logger.info(f"[{case_name}]   [{r.status}] {r.name}: {r.message or ''}")

        failures = [r for r in assertion_results if not r.passed]
        if not response.success:
            raise StepFailedError(response.error or "Request failed", assertion_results, response)
        if failures:
            message = "Assertions Failed: " + ", ".join(f"{r.name}: {r.message}" for r in failures)
            raise StepFailedError(message, assertion_results, response)

        logger.info(f"[{case_name}] Step Passed")
        self._apply_extractors(request, response, run)

        return {
            "assertionResults": [r.model_dump(by_alias=True) for r in assertion_results],
            "response": _dump(response),
        }

    def _resolve_request(self, request: ApiRequest, run: CaseRun) -> ApiRequest:
        """Template endpoint, body and headers and fix the transport kind."""

        def process(text: str | None) -> str:
            return self.templater.process(
                text, self.env_vars, self.globals_, self.scripts_dir, run.context
            )

        headers = {key: process(value) for key, value in (request.headers or {}).items()}
        if request.content_type:
            headers["Content-Type"] = request.content_type

        return request.model_copy(
            update={
                "endpoint": process(request.endpoint or run.fallback_endpoint or ""),
                "body": process(request.body),
                "headers": headers,
                "kind": request.request_type or "soap",
            }
        )

    def _apply_extractors(self, request: ApiRequest, response: ApiResponse, run: CaseRun) -> None:
        """Write extracted values into the run context, one extractor at a time."""
        if not request.extractors:
            return

        case_name = run.test_case.name
        logger.info(f"[{case_name}] Running {len(request.extractors)} extractors...")
        raw_view = response.model_copy(update={"body": response.raw_response or response.body})

        for extractor in request.extractors:
            if extractor.source != "body":
                logger.debug(f"[{case_name}] Skipping {extractor.source} extractor '{extractor.variable}'")
                continue
            try:
                name, value = extract_variable(extractor, raw_view)
            except Exception as e:
                logger.warning(f"[{case_name}] Error extracting '{extractor.variable}': {e}")
                continue

            if value is None:
                logger.warning(f"[{case_name}] Extractor '{name}' returned nothing")
                continue
            run.context[name] = value
            logger.info(f"[{case_name}] Extracted '{name}' = '{value}'")

    async def _run_script(self, step: TestStep, run: CaseRun) -> dict[str, Any]:
        script = step.config.script_content
        case_name = run.test_case.name
        if not script or not script.strip():
            logger.info(f"[{case_name}] Empty script, skipping.")
            return {}

        step_log = self.sandbox.step_logger(f"[{case_name}] [Script]")

        def goto(step_name: str) -> None:
            for index, candidate in enumerate(run.test_case.steps):
                if candidate.name == step_name:
                    step_log(f"Goto -> '{step_name}'")
                    run.next_index = index
                    return
            step_log(f"Goto failed: Step '{step_name}' not found")

        await self.sandbox.run(
            script,
            ScriptCapabilities(log=step_log, context=run.context, goto=goto),
        )
        return {}

    async def _run_workflow(self, step: TestStep, run: CaseRun) -> dict[str, Any]:
        workflow_id = step.config.workflow_id
        if not workflow_id:
            raise ConfigurationError("Workflow step missing workflowId")
        if self.workflow_store is None:
            raise ConfigurationError("No workflow store configured")

        case_name = run.test_case.name
        logger.info(f"[{case_name}] Loading workflow: {workflow_id}")
        workflow = self.workflow_store.get_workflow(workflow_id)
        if workflow is None:
            raise WorkflowNotFoundError(f"Workflow not found: {workflow_id}")

        # Later sources win: workflow defaults, step overrides, live case context
        merged_variables = {
            **(workflow.variables or {}),
            **(step.config.workflow_variables or {}),
            **run.context,
        }
        logger.info(f"[{case_name}] Executing workflow: {workflow.name}")
        logger.debug(f"[{case_name}] Workflow variables: {merged_variables}")

        async def dispatch(request: ApiRequest) -> ApiResponse:
            logger.info(f"[{case_name}] Workflow executing request: {request.name}")
            if request.kind is None:
                request = request.model_copy(update={"kind": request.request_type or "http"})
            return await self.transport.execute(request)

        result = await self.workflow_engine.execute(
            workflow.model_copy(update={"variables": merged_variables}),
            dispatch,
        )
        logger.info(f"[{case_name}] Workflow completed with status: {result.status}")

        result_payload = result.model_dump(mode="json", by_alias=True)
        run.context[f"{step.name}_result"] = result_payload
        run.context[f"{step.name}_variables"] = dict(result.variables)
        run.context.update(result.variables)
        logger.info(f"[{case_name}] Merged {len(result.variables)} variables into test context")

        if result.status == "failed":
            raise ExecutionError(f"Workflow failed: {result.error}")

        return {"workflowResult": result_payload}

    async def _notify(self, event_type: str, **data: Any) -> None:
        if not self.on_event:
            return
        outcome = self.on_event({"type": event_type, **data})
        if inspect.isawaitable(outcome):
            await outcome


def _dump(response: ApiResponse | None) -> dict | None:
    if response is None:
        return None
    return response.model_dump(mode="json", by_alias=True)
