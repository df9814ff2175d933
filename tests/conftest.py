"""Pytest configuration and fixtures."""

import sys
from pathlib import Path

import pytest
from prometheus_client import CollectorRegistry

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for store_mock imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

from convergence.metrics import Metrics  # noqa: E402
from store_mock import InMemoryStore, RecordingEventRecorder  # noqa: E402


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def recorder() -> RecordingEventRecorder:
    return RecordingEventRecorder()


@pytest.fixture
def metrics() -> Metrics:
    return Metrics(CollectorRegistry())
