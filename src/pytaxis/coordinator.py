"""
RunCoordinator - public entry point for submitting and observing runs.

Design Pattern: Façade
Hides validation, RunID generation, scheduler construction, persistence
and event plumbing behind submit() / status() / cancel() / wait().

Each submitted run is driven by its own RunScheduler in a background
asyncio task. Only submit-time validation raises synchronously: task
failures are recorded on the task instances and surface through the
aggregated run status.

Usage:
    executor = CallableExecutor()

    @executor.handler("build")
    async def build(ctx):
        return {"image": "registry/app:1.4"}

    coordinator = RunCoordinator(executor, storage=InMemoryRunLog())
    handle = await coordinator.submit(definition, {"env": "staging"})
    snapshot = await handle.wait()
    assert snapshot.status == RunStatus.SUCCEEDED
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from uuid_extensions import uuid7

from pytaxis.clock import Clock, SystemClock
from pytaxis.config import EngineConfig
from pytaxis.dag.loader import load_workflow
from pytaxis.dag.validator import validate
from pytaxis.errors import RunNotFoundError, ValidationError
from pytaxis.events import EventBus
from pytaxis.executor.base import Executor
from pytaxis.executor.scheduler import RunScheduler
from pytaxis.models.definition import WorkflowDefinition
from pytaxis.models.instance import ErrorDetail, Run, RunStatusSnapshot, TaskInstance, utcnow
from pytaxis.models.status import ErrorSeverity, RunStatus
from pytaxis.storage.base import RunLog
from pytaxis.store.artifacts import ArtifactTransfer

logger = logging.getLogger(__name__)


@dataclass
class _ActiveRun:
    run: Run
    instances: dict[str, TaskInstance]
    scheduler: RunScheduler | None
    task: asyncio.Task

    def snapshot(self) -> RunStatusSnapshot:
        return RunStatusSnapshot(
            run=self.run.snapshot(),
            tasks={name: inst.snapshot() for name, inst in self.instances.items()},
        )


def resolve_parameters(
    definition: WorkflowDefinition, params: Mapping[str, Any] | None
) -> dict[str, Any]:
    """Merge submitted values over the definition's defaults.

    Raises:
        ValidationError: If a parameter is unknown or a required one is missing
    """
    params = dict(params or {})
    problems = []
    unknown = sorted(set(params) - set(definition.parameters))
    if unknown:
        problems.append(f"unknown parameter(s): {', '.join(unknown)}")
    missing = [
        name for name in definition.required_parameters() if params.get(name) is None
    ]
    if missing:
        problems.append(f"missing required parameter(s): {', '.join(missing)}")
    if problems:
        raise ValidationError(problems)

    resolved = dict(definition.parameters)
    resolved.update(params)
    return resolved


class RunHandle:
    """Handle for one submitted run.

    Composition: the handle HAS-A coordinator and a run id.

    Usage:
        handle = await coordinator.submit(definition, params)
        snapshot = await handle.wait(timeout=60)
    """

    def __init__(self, coordinator: RunCoordinator, run_id: str):
        self._coordinator = coordinator
        self.run_id = run_id

    def __repr__(self) -> str:
        return f"RunHandle({self.run_id})"

    def is_running(self) -> bool:
        return self._coordinator.is_running(self.run_id)

    async def status(self) -> RunStatusSnapshot:
        return await self._coordinator.status(self.run_id)

    async def wait(self, timeout: float | None = None) -> RunStatusSnapshot:
        return await self._coordinator.wait(self.run_id, timeout)

    async def cancel(self) -> RunStatusSnapshot:
        return await self._coordinator.cancel(self.run_id)


class RunCoordinator:
    """
    Accepts workflow submissions and reports run status.

    All collaborators are passed explicitly. Only the executor is
    required; the rest default to no persistence, EngineConfig() and the
    system clock. Without an `events` bus the coordinator creates one with
    no sinks, sized by `config.event_queue_size`, and closes it on
    shutdown. Sinks can be attached through `coordinator.events`.

    Finished runs keep their task records for status queries; the
    scheduler that drove them is released.
    """

    def __init__(
        self,
        executor: Executor,
        storage: RunLog | None = None,
        events: EventBus | None = None,
        config: EngineConfig | None = None,
        clock: Clock | None = None,
        artifacts: ArtifactTransfer | None = None,
    ):
        self._executor = executor
        self._storage = storage
        self._config = config or EngineConfig()
        self._owns_events = events is None
        self._events = (
            events if events is not None else EventBus(maxsize=self._config.event_queue_size)
        )
        self._clock = clock or SystemClock()
        self._artifacts = artifacts
        self._runs: dict[str, _ActiveRun] = {}

    def __repr__(self) -> str:
        return f"RunCoordinator(runs={len(self._runs)}, storage={self._storage!r})"

    @property
    def config(self) -> EngineConfig:
        return self._config

    @property
    def events(self) -> EventBus:
        return self._events

    def with_config(self, config: EngineConfig) -> RunCoordinator:
        """Replace the default configuration for future submissions."""
        self._config = config
        return self

    def with_storage(self, storage: RunLog) -> RunCoordinator:
        self._storage = storage
        return self

    def with_events(self, events: EventBus) -> RunCoordinator:
        self._events = events
        self._owns_events = False
        return self

    # =========================================================================
    # Submission
    # =========================================================================

    async def submit(
        self,
        definition: WorkflowDefinition | Mapping[str, Any],
        params: Mapping[str, Any] | None = None,
        config: EngineConfig | None = None,
    ) -> RunHandle:
        """
        Validate a workflow and start a run of it in the background.

        Args:
            definition: A WorkflowDefinition, or its dict form which is
                loaded and validated first
            params: Global parameter values
            config: Overrides the coordinator's configuration for this run

        Returns:
            Handle for the new run

        Raises:
            ValidationError: If the definition is invalid, a parameter is
                unknown or a required parameter is missing. No run is created.
        """
        if isinstance(definition, WorkflowDefinition):
            validate(definition)
        else:
            definition = load_workflow(definition)
        parameters = resolve_parameters(definition, params)

        run_id = str(uuid7())
        run = Run(
            run_id=run_id,
            workflow_name=definition.name,
            definition_hash=definition.definition_hash,
            parameters=parameters,
        )
        instances = {
            name: TaskInstance(run_id=run_id, task_name=name, mandatory=template.mandatory)
            for name, template in definition.tasks.items()
        }
        await self._save_initial(run, instances)

        scheduler = RunScheduler(
            run,
            instances,
            definition,
            self._executor,
            config or self._config,
            clock=self._clock,
            events=self._events,
            storage=self._storage,
            artifacts=self._artifacts,
        )
        task = asyncio.create_task(self._drive(scheduler), name=f"pytaxis:{run_id}")
        self._runs[run_id] = _ActiveRun(run, instances, scheduler, task)

        logger.info(
            f"Submitted run {run_id} of workflow '{definition.name}' "
            f"(hash {definition.definition_hash})"
        )
        return RunHandle(self, run_id)

    async def _save_initial(self, run: Run, instances: dict[str, TaskInstance]) -> None:
        if self._storage is None:
            return
        try:
            await self._storage.save_run(run.snapshot())
            for instance in instances.values():
                await self._storage.save_task_instance(instance.snapshot())
        except Exception as e:
            logger.error(f"Failed to persist submitted run {run.run_id}: {e}")

    async def _drive(self, scheduler: RunScheduler) -> None:
        try:
            await scheduler.run()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            # A defect in the engine itself; recorded like an invariant violation
            run = scheduler.run_record
            logger.error(f"Run {run.run_id} crashed: {type(e).__name__}: {e}")
            run.status = RunStatus.ERRORED
            run.error = ErrorDetail(
                kind=type(e).__name__, message=str(e), severity=ErrorSeverity.INVARIANT
            )
            run.finished_at = run.updated_at = utcnow()
        finally:
            active = self._runs.get(scheduler.run_id)
            if active is not None:
                # Definition, parameter store and executor are no longer needed
                active.scheduler = None

    # =========================================================================
    # Queries and control
    # =========================================================================

    def is_running(self, run_id: str) -> bool:
        active = self._runs.get(run_id)
        return active is not None and not active.task.done()

    async def status(self, run_id: str) -> RunStatusSnapshot:
        """
        Coherent point-in-time view of a run.

        Never raises for a failed run; failures are visible in the snapshot.
        Calling it repeatedly without intervening progress returns equal
        snapshots. Runs not held in memory are read back from storage.

        Raises:
            RunNotFoundError: If the run is unknown here and in storage
        """
        active = self._runs.get(run_id)
        if active is not None:
            return active.snapshot()
        if self._storage is not None:
            snapshot = await self._storage.get_snapshot(run_id)
            if snapshot is not None:
                return snapshot
        raise RunNotFoundError(run_id)

    async def wait(self, run_id: str, timeout: float | None = None) -> RunStatusSnapshot:
        """Wait until the run is terminal and return its final snapshot.

        Raises:
            RunNotFoundError: If the run is unknown
            TimeoutError: If `timeout` elapses first; the run keeps going
        """
        active = self._runs.get(run_id)
        if active is None:
            return await self.status(run_id)
        await asyncio.wait_for(asyncio.shield(active.task), timeout)
        return active.snapshot()

    async def cancel(self, run_id: str) -> RunStatusSnapshot:
        """
        Cancel a run and wait for it to settle.

        Pending, ready and retrying instances are cancelled at once.
        Running ones get a best-effort cancel through the executor, then
        their dispatch is cancelled and awaited. Cancelling a terminal run
        is a no-op.

        Raises:
            RunNotFoundError: If the run is unknown
        """
        active = self._runs.get(run_id)
        if active is None:
            return await self.status(run_id)
        if active.task.done() or active.scheduler is None:
            return active.snapshot()
        active.scheduler.request_cancel()
        return await self.wait(run_id)

    async def list_runs(
        self, workflow_name: str | None = None, status: RunStatus | None = None
    ) -> list[Run]:
        """Runs known here or in storage, ordered by creation time."""
        runs = {run_id: active.run.snapshot() for run_id, active in self._runs.items()}
        if self._storage is not None:
            for run in await self._storage.list_runs(workflow_name, status):
                runs.setdefault(run.run_id, run)
        selected = [
            r
            for r in runs.values()
            if (workflow_name is None or r.workflow_name == workflow_name)
            and (status is None or r.status == status)
        ]
        return sorted(selected, key=lambda r: r.created_at)

    async def shutdown(self) -> None:
        """Cancel every active run, wait for them, then flush notifications.

        Explicit shutdown, not relying on GC.
        """
        active = [a for a in self._runs.values() if a.scheduler is not None and not a.task.done()]
        if active:
            logger.info(f"Shutting down, cancelling {len(active)} active run(s)")
        for a in active:
            a.scheduler.request_cancel()
        await asyncio.gather(*(a.task for a in active), return_exceptions=True)
        if self._owns_events:
            await self._events.close()
        else:
            await self._events.flush()
