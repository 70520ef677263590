"""
Shared fixtures for the escape room backend tests.
"""

import pytest

from app.core.store import SharedStore


class FakeClock:
    """Controllable millisecond clock for the shared store."""

    def __init__(self, start_ms: int = 1_700_000_000_000):
        self.now = start_ms

    def __call__(self) -> int:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += int(seconds * 1000)


@pytest.fixture
def clock():
    """Fresh fake clock."""
    return FakeClock()


@pytest.fixture
def store(clock):
    """Empty store driven by the fake clock."""
    return SharedStore(clock=clock)
