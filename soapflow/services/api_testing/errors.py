"""
Execution engine error types.
"""

from typing import Any


class ExecutionError(Exception):
    """Base exception for test and workflow execution errors."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class ConfigurationError(ExecutionError):
    """Raised when a step is missing or has invalid configuration."""
    pass


class StepFailedError(ExecutionError):
    """Raised when a request step fails at the transport or on an assertion."""

    def __init__(
        self,
        message: str,
        assertion_results: list | None = None,
        response: Any = None,
    ):
        super().__init__(message)
        self.assertion_results = assertion_results or []
        self.response = response


class ScriptFailure(ExecutionError):
    """Raised by fail(reason) inside a script step."""
    pass


class ScriptPolicyError(ExecutionError):
    """Raised when script source uses a construct outside the sandbox surface."""
    pass


class WorkflowNotFoundError(ExecutionError):
    """Raised when a workflow step references an unknown workflow id."""
    pass


class TestCaseFailedError(ExecutionError):
    """Raised to callers that asked for failures to surface as exceptions."""
    __test__ = False

    def __init__(self, message: str, result: Any = None):
        super().__init__(message)
        self.result = result
