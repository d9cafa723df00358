"""Test helpers: an in-process transport fake and a notification recorder."""

from typing import Any, Callable

from soapflow.schemas.api_request import ApiRequest, ApiResponse
from soapflow.services.api_testing.interfaces import Transport


class FakeTransport(Transport):
    """Transport that records requests and answers from a queue or a handler.

    Args:
        responses: Responses returned in order; the last one repeats.
        handler: Optional callable taking the request and returning a response.
            Takes precedence over responses.
    """

    def __init__(
        self,
        responses: list[ApiResponse] | None = None,
        handler: Callable[[ApiRequest], ApiResponse] | None = None,
    ):
        self.responses = list(responses or [])
        self.handler = handler
        self.requests: list[ApiRequest] = []
        self.cancelled = False
        self.closed = False

    async def execute(self, request: ApiRequest) -> ApiResponse:
        self.requests.append(request)
        if self.handler is not None:
            return self.handler(request)
        if not self.responses:
            return ApiResponse(success=True, status=200, body="", raw_response="")
        if len(self.responses) > 1:
            return self.responses.pop(0)
        return self.responses[0]

    def cancel(self) -> None:
        self.cancelled = True

    async def close(self) -> None:
        self.closed = True


class EventRecorder:
    """Collects notification events and offers small query helpers."""

    def __init__(self):
        self.events: list[dict[str, Any]] = []

    def __call__(self, event: dict[str, Any]) -> None:
        self.events.append(event)

    def of_type(self, event_type: str) -> list[dict[str, Any]]:
        return [e for e in self.events if e["type"] == event_type]

    def started_steps(self) -> list[str]:
        return [e["stepId"] for e in self.of_type("stepStart")]

    @property
    def types(self) -> list[str]:
        return [e["type"] for e in self.events]


def soap_response(body: str, time_taken: int = 10, **kwargs) -> ApiResponse:
    """Build a successful response whose body and raw text are both body."""
    return ApiResponse(
        success=True,
        status=200,
        body=body,
        raw_response=body,
        time_taken=time_taken,
        **kwargs,
    )


