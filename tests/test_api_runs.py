"""Integration tests for the run routes."""

import asyncio

import pytest
from fastapi.testclient import TestClient

from soapflow.api.runs import get_transport
from soapflow.main import app
from soapflow.schemas.api_request import ApiRequest, ApiResponse
from soapflow.services.api_testing.interfaces import Transport

from tests.helpers import FakeTransport, soap_response


class BlockingTransport(Transport):
    """Transport whose calls hang until cancel() is invoked."""

    def __init__(self):
        self.cancelled = False
        self._released: asyncio.Event | None = None

    async def execute(self, request: ApiRequest) -> ApiResponse:
        self._released = asyncio.Event()
        if self.cancelled:
            self._released.set()
        await self._released.wait()
        return ApiResponse(success=False, error="Request cancelled")

    def cancel(self) -> None:
        self.cancelled = True
        if self._released is not None:
            self._released.set()


@pytest.fixture
def client_with_transport():
    """Provide a TestClient whose run routes use a swappable transport.

    Yields:
        A (TestClient, setter) tuple; call setter(transport) before a request.
    """
    state = {"transport": FakeTransport()}
    app.dependency_overrides[get_transport] = lambda: state["transport"]

    def use(transport):
        state["transport"] = transport

    yield TestClient(app), use

    app.dependency_overrides.clear()


CASE = {
    "id": "tc-1",
    "name": "Smoke",
    "steps": [
        {
            "id": "s1",
            "name": "Ping",
            "type": "request",
            "config": {
                "request": {
                    "name": "Ping",
                    "endpoint": "{{host}}/ping",
                    "assertions": [{"type": "Simple Contains", "configuration": {"token": "pong"}}],
                    "extractors": [{"type": "Regex", "pattern": "id=(\\d+)", "variable": "pingId"}],
                }
            },
        },
        {"id": "s2", "name": "Wait", "type": "delay", "config": {"delayMs": 0}},
    ],
}


class TestHealth:
    def test_health(self, client_with_transport):
        client, _ = client_with_transport
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "healthy"}


class TestRunTestCase:
    """Tests for POST /api/runs/test-case."""

    def test_passing_case_returns_result_and_events(self, client_with_transport):
        client, use = client_with_transport
        transport = FakeTransport([soap_response("pong id=12")])
        use(transport)

        response = client.post(
            "/api/runs/test-case",
            json={"testCase": CASE, "environment": {"host": "http://svc"}},
        )

        assert response.status_code == 200
        data = response.json()
        assert data["result"]["status"] == "passed"
        assert data["result"]["caseId"] == "tc-1"
        assert data["result"]["context"] == {"pingId": "12"}
        assert [e["type"] for e in data["events"]] == [
            "testCaseStart",
            "stepStart", "stepPass",
            "stepStart", "stepPass",
            "testCaseEnd",
        ]
        assert transport.requests[0].endpoint == "http://svc/ping"
        assert transport.closed

    def test_failing_case_reports_failure(self, client_with_transport):
        client, use = client_with_transport
        use(FakeTransport([soap_response("nothing")]))

        response = client.post("/api/runs/test-case", json={"testCase": CASE, "fallbackEndpoint": "http://x"})

        data = response.json()
        assert data["result"]["status"] == "failed"
        assert data["result"]["failedStepId"] == "s1"
        assert data["result"]["error"] == "Assertions Failed: Contains: Token [pong] not found in response."

    def test_globals_and_workflows_are_used(self, client_with_transport):
        client, use = client_with_transport
        transport = FakeTransport()
        use(transport)
        workflow = {
            "id": "wf-1",
            "name": "Setup",
            "steps": [{"id": "w1", "name": "prep", "type": "request", "request": {"name": "prep", "endpoint": "{{base}}/prep"}}],
        }
        case = {
            "id": "tc-2",
            "name": "With workflow",
            "steps": [{"id": "s1", "name": "Setup", "type": "workflow", "config": {"workflowId": "wf-1"}}],
        }

        response = client.post(
            "/api/runs/test-case",
            json={"testCase": case, "workflows": [workflow], "globals": {"base": "http://g"}},
        )

        assert response.json()["result"]["status"] == "passed"
        # Workflow requests resolve only against the merged workflow variables
        assert transport.requests[0].endpoint == "{{base}}/prep"

    def test_invalid_step_type_rejected(self, client_with_transport):
        client, _ = client_with_transport
        case = {"id": "tc", "name": "bad", "steps": [{"id": "x", "name": "x", "type": "teleport"}]}

        response = client.post("/api/runs/test-case", json={"testCase": case})

        assert response.status_code == 422


class TestRunWorkflow:
    """Tests for POST /api/runs/workflow."""

    def test_runs_workflow(self, client_with_transport):
        client, use = client_with_transport
        transport = FakeTransport([soap_response("<sid>s-9</sid>")])
        use(transport)
        workflow = {
            "id": "wf-1",
            "name": "Login",
            "variables": {"base": "http://svc"},
            "steps": [{
                "id": "w1",
                "name": "login",
                "type": "request",
                "request": {"name": "login", "endpoint": "{{base}}/login"},
                "extractors": [{"type": "Regex", "pattern": "<sid>([^<]+)</sid>", "variable": "sid"}],
            }],
        }

        response = client.post("/api/runs/workflow", json={"workflow": workflow})

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "completed"
        assert data["workflowId"] == "wf-1"
        assert data["variables"] == {"base": "http://svc", "sid": "s-9"}
        assert data["stepResults"][0]["extractedValues"] == {"sid": "s-9"}
        assert transport.requests[0].endpoint == "http://svc/login"
        assert transport.requests[0].kind == "http"


class TestRunTestCaseWebSocket:
    """Tests for WS /api/runs/ws/test-case."""

    def test_streams_events_then_complete(self, client_with_transport):
        client, use = client_with_transport
        use(FakeTransport([soap_response("pong")]))

        with client.websocket_connect("/api/runs/ws/test-case") as websocket:
            websocket.send_json({"type": "start", "testCase": CASE})
            messages = []
            while True:
                message = websocket.receive_json()
                messages.append(message)
                if message["type"] in ("complete", "error"):
                    break

        assert [m["type"] for m in messages] == [
            "testCaseStart",
            "stepStart", "stepPass",
            "stepStart", "stepPass",
            "testCaseEnd",
            "complete",
        ]
        assert messages[-1]["data"]["status"] == "passed"

    def test_requires_start_command(self, client_with_transport):
        client, _ = client_with_transport

        with client.websocket_connect("/api/runs/ws/test-case") as websocket:
            websocket.send_json({"type": "hello"})
            message = websocket.receive_json()

        assert message == {"type": "error", "data": {"message": "Expected start command"}}

    def test_cancel_fails_in_flight_step(self, client_with_transport):
        client, use = client_with_transport
        transport = BlockingTransport()
        use(transport)

        with client.websocket_connect("/api/runs/ws/test-case") as websocket:
            websocket.send_json({"type": "start", "testCase": CASE})
            assert websocket.receive_json()["type"] == "testCaseStart"
            assert websocket.receive_json()["type"] == "stepStart"

            websocket.send_json({"type": "cancel"})

            messages = []
            while True:
                message = websocket.receive_json()
                messages.append(message)
                if message["type"] == "complete":
                    break

        assert transport.cancelled
        assert [m["type"] for m in messages] == ["stepFail", "testCaseEnd", "complete"]
        assert messages[0]["error"] == "Request cancelled"
        assert messages[-1]["data"]["status"] == "failed"
