"""
Pytest configuration and fixtures for the relay agent context engine tests.
"""

from datetime import datetime, timedelta, timezone

import pytest

from relay_agent.domain.context.context_manager import ContextManager
from relay_agent.infrastructure.config.settings import ContextSettings
from relay_agent.infrastructure.observability.logging import MetricsCollector


class FakeClock:
    """Deterministic clock; every call returns the current value unchanged."""

    def __init__(self, start: datetime = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float = 0, ms: float = 0) -> datetime:
        self.now = self.now + timedelta(seconds=seconds, milliseconds=ms)
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    return ContextSettings()


@pytest.fixture
def metrics():
    return MetricsCollector(emit_logs=False)


@pytest.fixture
def manager(settings, metrics, clock):
    return ContextManager(settings=settings, metrics=metrics, clock=clock)


@pytest.fixture
def thread_id():
    return "C123:1700000000.000100"