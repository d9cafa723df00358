"""Tests for the workflow step executor."""

import pytest

from soapflow.schemas.api_request import ApiRequest, ApiResponse
from soapflow.schemas.workflow import Workflow
from soapflow.services.api_testing.workflow_engine import WorkflowEngine


def make_workflow(steps, variables=None):
    return Workflow.model_validate({
        "id": "wf-1",
        "name": "Login flow",
        "variables": variables or {},
        "steps": steps,
    })


class RecordingDispatch:
    """Dispatch function that records requests and replies from a mapping by name."""

    def __init__(self, replies=None, fail_on=None):
        self.replies = replies or {}
        self.fail_on = fail_on
        self.requests: list[ApiRequest] = []

    async def __call__(self, request: ApiRequest) -> ApiResponse:
        self.requests.append(request)
        if request.name == self.fail_on:
            raise RuntimeError("connection refused")
        body = self.replies.get(request.name, "")
        return ApiResponse(success=True, status=200, body=body, raw_response=body)


@pytest.fixture
def engine():
    return WorkflowEngine()


class TestOrdering:
    """Tests for step ordering and failure short-circuit."""

    async def test_steps_run_by_order_field(self, engine):
        workflow = make_workflow([
            {"id": "c", "name": "third", "type": "request", "order": 2, "request": {"name": "third"}},
            {"id": "a", "name": "first", "type": "request", "order": 0, "request": {"name": "first"}},
            {"id": "b", "name": "second", "type": "request", "order": 1, "request": {"name": "second"}},
        ])
        dispatch = RecordingDispatch()

        result = await engine.execute(workflow, dispatch)

        assert result.status == "completed"
        assert [r.name for r in dispatch.requests] == ["first", "second", "third"]
        assert [r.step_id for r in result.step_results] == ["a", "b", "c"]

    async def test_failure_at_middle_order_stops_run(self, engine):
        workflow = make_workflow([
            {"id": "c", "name": "third", "type": "request", "order": 2, "request": {"name": "third"}},
            {"id": "a", "name": "first", "type": "request", "order": 0, "request": {"name": "first"}},
            {"id": "b", "name": "second", "type": "request", "order": 1, "request": {"name": "second"}},
        ])
        dispatch = RecordingDispatch(fail_on="second")

        result = await engine.execute(workflow, dispatch)

        assert result.status == "failed"
        assert len(result.step_results) == 2
        assert result.step_results[-1].status == "failed"
        assert result.step_results[-1].error == "connection refused"
        assert result.error == 'Step "second" failed: connection refused'
        assert [r.name for r in dispatch.requests] == ["first", "second"]


class TestRequestSteps:
    """Tests for variable injection and extraction."""

    async def test_variables_injected_before_dispatch(self, engine):
        workflow = make_workflow(
            [{
                "id": "s1",
                "name": "ping",
                "type": "request",
                "request": {
                    "name": "ping",
                    "endpoint": "{{base}}/ping",
                    "request": "<id>{{missing}}</id>",
                    "headers": {"X-Base": "{{base}}"},
                },
            }],
            variables={"base": "https://x"},
        )
        dispatch = RecordingDispatch()

        await engine.execute(workflow, dispatch)

        [sent] = dispatch.requests
        assert sent.endpoint == "https://x/ping"
        assert sent.body == "<id>{{missing}}</id>"
        assert sent.headers == {"X-Base": "https://x"}

    async def test_extracted_values_visible_to_later_steps(self, engine):
        workflow = make_workflow([
            {
                "id": "s1",
                "name": "login",
                "type": "request",
                "order": 0,
                "request": {"name": "login"},
                "extractors": [
                    {"type": "Regex", "pattern": "<token>(\\w+)</token>", "variable": "token"},
                    {"type": "Regex", "pattern": "<nope>(\\w+)</nope>", "variable": "absent"},
                    {"type": "Regex", "pattern": "<nope>(\\w+)</nope>", "variable": "region", "defaultValue": "eu"},
                ],
            },
            {
                "id": "s2",
                "name": "use",
                "type": "request",
                "order": 1,
                "request": {"name": "use", "headers": {"Authorization": "Bearer {{token}}"}},
            },
        ])
        dispatch = RecordingDispatch(replies={"login": "<token>abc</token>"})

        result = await engine.execute(workflow, dispatch)

        assert result.status == "completed"
        assert dispatch.requests[1].headers["Authorization"] == "Bearer abc"
        assert result.step_results[0].extracted_values == {"token": "abc", "region": "eu"}
        assert result.variables == {"token": "abc", "region": "eu"}
        assert result.step_results[0].status_code == 200

    async def test_run_does_not_mutate_workflow_variables(self, engine):
        workflow = make_workflow(
            [{
                "id": "s1",
                "name": "login",
                "type": "request",
                "request": {"name": "login"},
                "extractors": [{"type": "Regex", "pattern": "(\\d+)", "variable": "n"}],
            }],
            variables={"seed": "1"},
        )

        result = await engine.execute(workflow, RecordingDispatch(replies={"login": "42"}))

        assert result.variables == {"seed": "1", "n": "42"}
        assert workflow.variables == {"seed": "1"}

    async def test_request_step_without_request_fails(self, engine):
        workflow = make_workflow([{"id": "s1", "name": "empty", "type": "request"}])

        result = await engine.execute(workflow, RecordingDispatch())

        assert result.status == "failed"
        assert result.step_results[0].error == "Request step missing request configuration"


class TestOtherSteps:
    """Tests for delay and declared-but-inert step variants."""

    async def test_zero_delay_is_valid(self, engine):
        workflow = make_workflow([{"id": "d", "name": "wait", "type": "delay", "delayMs": 0}])

        result = await engine.execute(workflow, RecordingDispatch())

        assert result.status == "completed"

    @pytest.mark.parametrize("delay_ms", [None, -5])
    async def test_invalid_delay_is_configuration_error(self, engine, delay_ms):
        workflow = make_workflow([{"id": "d", "name": "wait", "type": "delay", "delayMs": delay_ms}])

        result = await engine.execute(workflow, RecordingDispatch())

        assert result.status == "failed"
        assert result.error == 'Step "wait" failed: Delay step missing valid delayMs'

    async def test_condition_loop_script_are_skipped(self, engine):
        workflow = make_workflow([
            {"id": "c", "name": "cond", "type": "condition", "order": 0, "condition": {"expr": "x"}},
            {"id": "l", "name": "loop", "type": "loop", "order": 1, "loop": {"count": 2}},
            {"id": "s", "name": "script", "type": "script", "order": 2, "script": "log('x')"},
        ])

        result = await engine.execute(workflow, RecordingDispatch())

        assert result.status == "completed"
        assert [r.status for r in result.step_results] == ["success"] * 3

    async def test_condition_without_config_fails(self, engine):
        workflow = make_workflow([{"id": "c", "name": "cond", "type": "condition"}])

        result = await engine.execute(workflow, RecordingDispatch())

        assert result.status == "failed"
        assert "missing condition configuration" in result.error

    def test_unknown_step_type_rejected_at_parse(self):
        with pytest.raises(ValueError):
            make_workflow([{"id": "x", "name": "x", "type": "teleport"}])
