"""
Pytest configuration and fixtures for pytaxis tests.

Provides reusable fixtures for storage backends, the callable executor,
a manual clock, event collection and workflow construction.
"""

import shutil
import tempfile
from collections.abc import AsyncGenerator
from pathlib import Path
from typing import Any

import pytest

from pytaxis.clock import ManualClock
from pytaxis.config import EngineConfig
from pytaxis.coordinator import RunCoordinator
from pytaxis.dag import load_workflow
from pytaxis.events import CollectingSink, EventBus
from pytaxis.executor.callable import CallableExecutor
from pytaxis.models.definition import WorkflowDefinition
from pytaxis.storage.memory import InMemoryRunLog
from pytaxis.storage.sqlite import SqliteRunLog


@pytest.fixture
async def in_memory_storage() -> AsyncGenerator[InMemoryRunLog, None]:
    """Async in-memory storage fixture with automatic cleanup."""
    storage = InMemoryRunLog()
    yield storage
    await storage.reset()


@pytest.fixture
async def sqlite_memory_storage() -> AsyncGenerator[SqliteRunLog, None]:
    """Async SQLite in-memory storage fixture with automatic cleanup."""
    storage = await SqliteRunLog.in_memory()
    yield storage
    await storage.close()


@pytest.fixture
def temp_db_path():
    """Temporary database file path with automatic cleanup."""
    tmpdir = Path(tempfile.mkdtemp())
    db_path = tmpdir / "runs.db"
    yield db_path
    shutil.rmtree(tmpdir, ignore_errors=True)


@pytest.fixture
async def sqlite_file_storage(temp_db_path: Path) -> AsyncGenerator[SqliteRunLog, None]:
    """Async SQLite file-based storage fixture with automatic cleanup."""
    storage = SqliteRunLog(str(temp_db_path))
    await storage.connect()
    yield storage
    await storage.close()


@pytest.fixture
def executor() -> CallableExecutor:
    """Empty in-process executor; tests register their own handlers."""
    return CallableExecutor()


@pytest.fixture
def clock() -> ManualClock:
    """Virtual clock so retry backoff completes instantly."""
    return ManualClock()


@pytest.fixture
def collector() -> CollectingSink:
    return CollectingSink()


@pytest.fixture
def event_bus(collector: CollectingSink) -> EventBus:
    return EventBus([collector])


@pytest.fixture
async def coordinator(
    executor: CallableExecutor,
    in_memory_storage: InMemoryRunLog,
    event_bus: EventBus,
    clock: ManualClock,
) -> AsyncGenerator[RunCoordinator, None]:
    """Coordinator wired to in-memory storage, collected events and a manual clock."""
    coordinator = RunCoordinator(
        executor,
        storage=in_memory_storage,
        events=event_bus,
        config=EngineConfig(),
        clock=clock,
    )
    yield coordinator
    await coordinator.shutdown()
    await event_bus.close()


@pytest.fixture
def make_workflow():
    """Factory building a validated definition from task dicts.

    Usage:
        definition = make_workflow({"name": "a"}, {"name": "b", "dependencies": ["a"]})
    """

    def build(
        *tasks: dict[str, Any],
        name: str = "test-workflow",
        parameters: dict[str, Any] | None = None,
    ) -> WorkflowDefinition:
        return load_workflow({"name": name, "parameters": parameters or {}, "tasks": list(tasks)})

    return build
