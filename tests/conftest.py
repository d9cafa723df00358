"""Shared fixtures for engine tests.

Provides an in-process transport fake and a notification recorder so the
runner and workflow engine can be exercised without network access.
"""

import pytest

from tests.helpers import EventRecorder, FakeTransport


@pytest.fixture
def recorder() -> EventRecorder:
    return EventRecorder()


@pytest.fixture
def fake_transport() -> FakeTransport:
    return FakeTransport()
