"""Shared test fixtures for the cortex supervisor."""

import sys
from datetime import datetime, timedelta
from pathlib import Path

import pytest

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from memory.store import MemoryStore  # noqa: E402
from observability import metrics  # noqa: E402
from supervisor.breaker import CircuitBreakerRegistry  # noqa: E402
from supervisor.monitor import InMemoryRuntime  # noqa: E402


class FixedClock:
    """Manually advanced clock for deterministic threshold tests."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2025, 3, 1, 12, 0, 0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float = 0, **kwargs) -> datetime:
        self.now += timedelta(seconds=seconds, **kwargs)
        return self.now


@pytest.fixture(autouse=True)
def reset_metrics():
    metrics.reset()
    yield
    metrics.reset()


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "cortex.db"


@pytest.fixture
def runtime(clock):
    return InMemoryRuntime(clock=clock)


@pytest.fixture
def breakers(db_path, clock):
    return CircuitBreakerRegistry(db_path, threshold=3, clock=clock)


@pytest.fixture
def store(db_path, clock):
    """MemoryStore with SQLite only (no ChromaDB for fast tests)."""
    return MemoryStore(db_path, chroma_dir=None, clock=clock)
