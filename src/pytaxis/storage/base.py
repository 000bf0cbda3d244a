"""
RunLog - abstract interface for run persistence backends.

Design Pattern: Adapter Pattern
RunLog defines the target interface that all storage adapters implement.
Different backends (memory, SQLite, Redis) adapt to this common interface.

The scheduler writes a snapshot of every task instance that changed
during a loop iteration, plus the run record at start and finish. That
is enough for RunCoordinator.status() to answer after a restart. It is
not a crash-recovery log: in-flight scheduling state is not persisted.
"""

from __future__ import annotations

import json
import pickle
from abc import ABC, abstractmethod
from datetime import UTC, datetime
from typing import Any

from pytaxis.errors import PytaxisError
from pytaxis.models.instance import ErrorDetail, Run, RunStatusSnapshot, TaskInstance
from pytaxis.models.status import RunStatus


class StorageError(PytaxisError):
    """Storage operation failed."""


class RunLog(ABC):
    """
    Abstract storage interface for runs and their task instances.

    Clients program to this interface, not to concrete implementations,
    so tests can substitute InMemoryRunLog for SqliteRunLog or RedisRunLog.
    """

    @abstractmethod
    async def save_run(self, run: Run) -> None:
        """Insert or replace a run record."""

    @abstractmethod
    async def get_run(self, run_id: str) -> Run | None:
        """Return a run record, or None when unknown (not an error)."""

    @abstractmethod
    async def list_runs(
        self, workflow_name: str | None = None, status: RunStatus | None = None
    ) -> list[Run]:
        """Runs ordered by creation time, optionally filtered."""

    @abstractmethod
    async def save_task_instance(self, instance: TaskInstance) -> None:
        """Insert or replace a task instance, keyed by (run_id, task_name)."""

    @abstractmethod
    async def get_task_instances(self, run_id: str) -> list[TaskInstance]:
        """Task instances of a run in creation order. Empty when unknown."""

    @abstractmethod
    async def reset(self) -> None:
        """Delete everything this backend stored (for tests and demos)."""

    @abstractmethod
    async def close(self) -> None:
        """Release connections. Explicit cleanup, not relying on GC."""

    async def get_snapshot(self, run_id: str) -> RunStatusSnapshot | None:
        """Rebuild a status snapshot from stored records."""
        run = await self.get_run(run_id)
        if run is None:
            return None
        instances = await self.get_task_instances(run_id)
        return RunStatusSnapshot(run=run, tasks={i.task_name: i for i in instances})


# =============================================================================
# Record encoding shared by the serializing backends
# =============================================================================
#
# Parameter and output values are arbitrary Python objects, so they are
# pickled. Small structured fields are JSON. Timestamps are integer
# milliseconds since the epoch (UTC).


def to_millis(value: datetime | None) -> int | None:
    if value is None:
        return None
    return int(value.timestamp() * 1000)


def from_millis(value: int | str | bytes | None) -> datetime | None:
    if value is None or value == b"" or value == "":
        return None
    return datetime.fromtimestamp(int(value) / 1000.0, UTC)


def dump_value(value: Any) -> bytes:
    try:
        return pickle.dumps(value)
    except (pickle.PicklingError, TypeError, AttributeError) as e:
        raise StorageError(f"value is not serializable: {e}") from e


def load_value(data: bytes | None) -> Any:
    if data is None:
        return None
    return pickle.loads(data)


def dump_error(error: ErrorDetail | None) -> str | None:
    return json.dumps(error.to_dict()) if error is not None else None


def load_error(data: str | bytes | None) -> ErrorDetail | None:
    if not data:
        return None
    return ErrorDetail.from_dict(json.loads(data))
