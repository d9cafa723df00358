"""Test case and workflow execution engine for SOAP/REST API testing."""

__version__ = "0.1.0"
