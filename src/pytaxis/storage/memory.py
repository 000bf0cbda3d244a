"""In-memory storage implementation.

Design Pattern: Adapter Pattern
InMemoryRunLog adapts plain dictionaries to the RunLog interface.

Instance is immediately usable after __init__. Records are copied on the
way in and out, so callers never share mutable state with the store.
"""

from __future__ import annotations

import asyncio

from pytaxis.models.instance import Run, TaskInstance
from pytaxis.models.status import RunStatus
from pytaxis.storage.base import RunLog


class InMemoryRunLog(RunLog):
    """In-memory storage for tests and single-process use.

    Can be substituted for SqliteRunLog without changing client code.

    Usage:
        storage = InMemoryRunLog()
        coordinator = RunCoordinator(executor, storage=storage)
    """

    def __init__(self):
        # {run_id: Run}
        self._runs: dict[str, Run] = {}

        # {run_id: {task_name: TaskInstance}}, insertion ordered
        self._instances: dict[str, dict[str, TaskInstance]] = {}

        self._lock = asyncio.Lock()

    def __repr__(self) -> str:
        return f"InMemoryRunLog(runs={len(self._runs)})"

    async def save_run(self, run: Run) -> None:
        async with self._lock:
            self._runs[run.run_id] = run.snapshot()

    async def get_run(self, run_id: str) -> Run | None:
        async with self._lock:
            run = self._runs.get(run_id)
            return run.snapshot() if run is not None else None

    async def list_runs(
        self, workflow_name: str | None = None, status: RunStatus | None = None
    ) -> list[Run]:
        async with self._lock:
            runs = [
                r.snapshot()
                for r in self._runs.values()
                if (workflow_name is None or r.workflow_name == workflow_name)
                and (status is None or r.status == status)
            ]
        return sorted(runs, key=lambda r: r.created_at)

    async def save_task_instance(self, instance: TaskInstance) -> None:
        async with self._lock:
            tasks = self._instances.setdefault(instance.run_id, {})
            tasks[instance.task_name] = instance.snapshot()

    async def get_task_instances(self, run_id: str) -> list[TaskInstance]:
        async with self._lock:
            return [i.snapshot() for i in self._instances.get(run_id, {}).values()]

    async def reset(self) -> None:
        """Clear all data."""
        async with self._lock:
            self._runs.clear()
            self._instances.clear()

    async def close(self) -> None:
        pass
