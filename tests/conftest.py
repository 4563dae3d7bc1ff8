"""
Shared fixtures for LocalBus tests.

Author: LocalBus Team
Date: 2026-03-16
"""

from datetime import datetime, timedelta, timezone

import pytest

from localbus.servicebus.backend import ServiceBusBackend, clear_registry


class FakeClock:
    """Clock that only moves when a test advances it."""

    def __init__(self, start: datetime = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now += timedelta(seconds=seconds)
        return self.now


@pytest.fixture
def clock():
    """A fake clock starting at a fixed instant."""
    return FakeClock()


@pytest.fixture
async def backend(clock):
    """Create a fresh backend on the fake clock for each test."""
    b = ServiceBusBackend(clock=clock)
    yield b
    await b.reset()


@pytest.fixture(autouse=True)
def _isolated_registry():
    """Namespaces registered by one test are not visible to the next."""
    clear_registry()
    yield
    clear_registry()
