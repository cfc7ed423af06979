"""
Pytest configuration and fixtures.

Shared fixtures for all tests. The fakes themselves live in tests/fakes.py.
"""

import os
import shutil
import tempfile
from pathlib import Path

import pytest

from fakes import FakeClock, FakeSpawner, FakeTransport, RecordingListener

# Keep test runs from picking up a developer's overrides
for _var in ("NODEKEEPER_ENDPOINTS", "NODEKEEPER_LOG_LEVEL", "SUPERVISOR_COMMAND"):
    os.environ.pop(_var, None)


@pytest.fixture
def temp_dir():
    """Create temporary directory for tests."""
    temp_path = Path(tempfile.mkdtemp())
    yield temp_path
    shutil.rmtree(temp_path)


@pytest.fixture
def fake_transport():
    return FakeTransport()


@pytest.fixture
def listener():
    return RecordingListener()


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def spawner():
    return FakeSpawner()
