"""
Collaborator contracts for the execution engine.

The engine never performs network I/O, templating policy or workflow storage
itself; it talks to these interfaces.
"""

from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable

from soapflow.schemas.api_request import ApiRequest, ApiResponse
from soapflow.schemas.workflow import Workflow


# Notification sink; may return an awaitable
EventCallback = Callable[[dict[str, Any]], Awaitable[None] | None]

# Request dispatch function handed to the workflow executor
DispatchFn = Callable[[ApiRequest], Awaitable[ApiResponse]]


class Transport(ABC):
    """Performs HTTP/SOAP calls on the engine's behalf."""

    @abstractmethod
    async def execute(self, request: ApiRequest) -> ApiResponse:
        """
        Execute a request.

        Failures (network errors, timeouts, cancellation) are returned as an
        ApiResponse with success=False, never raised.
        """
        pass

    def cancel(self) -> None:
        """Abort the in-flight call, if any."""
        pass

    async def close(self) -> None:
        pass


class Templater(ABC):
    """Resolves templated request fields using four variable scopes."""

    @abstractmethod
    def process(
        self,
        text: str | None,
        env_vars: dict | None = None,
        globals_: dict | None = None,
        scripts_dir: str | None = None,
        context_vars: dict | None = None,
    ) -> str:
        pass


class WorkflowStore(ABC):
    """Read-only source of workflow definitions."""

    @abstractmethod
    def list_workflows(self) -> list[Workflow]:
        pass

    def get_workflow(self, workflow_id: str) -> Workflow | None:
        for workflow in self.list_workflows():
            if workflow.id == workflow_id:
                return workflow
        return None


class InMemoryWorkflowStore(WorkflowStore):
    """Workflow store backed by a list supplied by the caller."""

    def __init__(self, workflows: list[Workflow] | None = None):
        self._workflows = list(workflows or [])

    def list_workflows(self) -> list[Workflow]:
        return list(self._workflows)
