"""
Shared pytest fixtures and configuration for flowspine tests.

This module provides:
- Registry / named-buffer cleanup for test isolation
- Repositories: in-memory, SQLite ledger, and a parametrized pair
- A fixed clock and engine settings with zero retry wait
- A flow factory that builds memory-source flows
- Failing and hook sinks registered in a per-test component registry

Usage:
    def test_something(repository, make_flow):
        flow = make_flow(records=[1, 2, 3])
"""

import sqlite3
import sys
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any, Generator

import pytest

# Ensure flowspine package is importable
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from flowspine.core.config import EngineSettings
from flowspine.core.dialect import SQLiteDialect
from flowspine.core.errors import TransientError
from flowspine.execution.components import MemorySink, register_builtin_components
from flowspine.execution.ledger import RunLedger
from flowspine.execution.models import Flow
from flowspine.execution.registry import ComponentRegistry, reset_default_registry
from flowspine.execution.repository import InMemoryRunRepository


# =============================================================================
# Test Markers Configuration
# =============================================================================


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Mark tests without explicit markers as unit tests."""
    for item in items:
        markers = {mark.name for mark in item.iter_markers()}
        if not markers.intersection({"unit", "integration", "slow"}):
            item.add_marker(pytest.mark.unit)


# =============================================================================
# Isolation Fixtures
# =============================================================================


@pytest.fixture(autouse=True)
def clean_component_state() -> Generator[None, None, None]:
    """Drop the default component registry and named memory-sink buffers."""
    reset_default_registry()
    MemorySink.clear_buffers()
    yield
    reset_default_registry()
    MemorySink.clear_buffers()


# =============================================================================
# Time & Settings
# =============================================================================


@pytest.fixture
def now() -> datetime:
    """Fixed reference time for deterministic tests."""
    return datetime(2026, 1, 15, 12, 0, 0, tzinfo=UTC)


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime):
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, seconds: float) -> datetime:
        self.current = self.current + timedelta(seconds=seconds)
        return self.current


@pytest.fixture
def clock(now: datetime) -> FakeClock:
    return FakeClock(now)


@pytest.fixture
def settings() -> EngineSettings:
    """Settings with a zero retry wait so retry runs are due immediately."""
    return EngineSettings(
        retry_wait=0.0,
        retry_max_attempts=3,
        worker_id="worker-test",
        lease_seconds=60,
        database_path=None,
    )


# =============================================================================
# Repositories
# =============================================================================


@pytest.fixture
def memory_repo() -> InMemoryRunRepository:
    return InMemoryRunRepository()


@pytest.fixture
def ledger() -> Generator[RunLedger, None, None]:
    """RunLedger over an in-memory SQLite database."""
    conn = sqlite3.connect(":memory:", check_same_thread=False)
    ledger = RunLedger(conn, SQLiteDialect())
    ledger.initialize()
    yield ledger
    conn.close()


@pytest.fixture(params=["memory", "sqlite"])
def repository(request: pytest.FixtureRequest) -> Any:
    """Both repository implementations, for contract tests."""
    if request.param == "memory":
        return InMemoryRunRepository()
    return request.getfixturevalue("ledger")


# =============================================================================
# Flows
# =============================================================================


@pytest.fixture
def make_flow():
    """Factory for flows reading from a memory source into a named memory sink."""

    def _make(
        name: str = "orders_sync",
        records: list[Any] | None = None,
        batch_size: int = 2,
        sink: str | None = None,
        **kwargs: Any,
    ) -> Flow:
        kwargs.setdefault("source_config", {"kind": "memory", "records": records or []})
        kwargs.setdefault("sink_config", {"kind": "memory", "name": sink or name})
        kwargs.setdefault("runtime_config", {"kind": "passthrough", "batch_size": batch_size})
        return Flow(name=name, **kwargs)

    return _make


# =============================================================================
# Test Components
# =============================================================================


class FailingSink:
    """Sink that raises on a given record (or on every record)."""

    ERRORS = {
        "timeout": TimeoutError,
        "value": ValueError,
        "runtime": RuntimeError,
    }

    def __init__(self, error: str = "timeout", fail_at: Any = None, retry_after: int | None = None):
        self.error = error
        self.fail_at = fail_at
        self.retry_after = retry_after

    def write(self, record: Any) -> None:
        if self.fail_at is not None and record.get("id") != self.fail_at:
            return
        if self.error == "throttled":
            raise TransientError("throttled", retry_after=self.retry_after)
        raise self.ERRORS[self.error]("sink down")


class HookSink:
    """Sink that records writes and calls ``HookSink.hook(record)`` first."""

    hook: Any = None
    written: list[Any] = []
    closed = 0

    def write(self, record: Any) -> None:
        if HookSink.hook is not None:
            HookSink.hook(record)
        HookSink.written.append(record)

    def close(self) -> None:
        HookSink.closed += 1

    @classmethod
    def reset(cls) -> None:
        cls.hook = None
        cls.written = []
        cls.closed = 0


@pytest.fixture
def hook_sink() -> Generator[type[HookSink], None, None]:
    HookSink.reset()
    yield HookSink
    HookSink.reset()


@pytest.fixture
def registry() -> ComponentRegistry:
    """Built-in components plus the failing and hook sinks."""
    registry = ComponentRegistry()
    register_builtin_components(registry)
    registry.register("sink", "failing", FailingSink)
    registry.register("sink", "hook", HookSink)
    return registry
