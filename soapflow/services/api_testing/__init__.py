"""API testing service package: case runner, workflow engine and helpers."""

from soapflow.services.api_testing.engine import TestCaseRunner
from soapflow.services.api_testing.workflow_engine import WorkflowEngine
from soapflow.services.api_testing.http_client import HttpTransport
from soapflow.services.api_testing.variable_resolver import VariableResolver
from soapflow.services.api_testing.assertion_engine import AssertionEngine
from soapflow.services.api_testing.interfaces import InMemoryWorkflowStore

__all__ = [
    "TestCaseRunner",
    "WorkflowEngine",
    "HttpTransport",
    "VariableResolver",
    "AssertionEngine",
    "InMemoryWorkflowStore",
]
