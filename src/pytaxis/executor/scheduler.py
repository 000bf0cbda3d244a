"""Scheduler core: drives one run from submission to a terminal status.

Event-driven loop in the style of a worker main loop: every iteration
dispatches whatever is ready (bounded by max_parallelism), then waits with
asyncio.wait(FIRST_COMPLETED) on

1. every running attempt
2. a timer for the earliest parked retry, if any
3. the cancel request event

and handles whichever completed. Backoff delays are timers in that same
wait, never a blocking sleep.

Readiness is tracked with an in-degree counter per task instance. A task
whose counter reaches zero enters the FIFO frontier, where its `when` gate
is evaluated. A dependency is satisfied when it Succeeded, was Skipped, or
Failed while optional. Dependents of a failed mandatory task never become
Ready; they are cancelled with kind UpstreamFailed once the run drains.

Only this loop mutates the run's TaskInstances and ParameterStore, so no
locking is needed.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import Mapping

from pytaxis.clock import Clock, SystemClock
from pytaxis.config import EngineConfig, SkipPolicy
from pytaxis.errors import ErrorKind, EvalError, InvariantViolation
from pytaxis.events import EventBus, StateChangeEvent
from pytaxis.executor.base import Executor, TaskContext
from pytaxis.executor.retry import AttemptOutcome, RetryController, RetryQueue
from pytaxis.executor.state_machine import TaskStateMachine, can_transition
from pytaxis.expression import VariableContext, evaluate_condition, interpolate
from pytaxis.models.definition import WorkflowDefinition
from pytaxis.models.instance import ErrorDetail, Run, TaskInstance, utcnow
from pytaxis.models.status import ErrorSeverity, RunStatus, TaskState
from pytaxis.storage.base import RunLog
from pytaxis.store.artifacts import ArtifactTransfer
from pytaxis.store.parameters import ParameterStore

logger = logging.getLogger(__name__)

_UNAVAILABLE_REASONS = {
    TaskState.SKIPPED: "was skipped",
    TaskState.FAILED: "failed",
    TaskState.CANCELLED: "was cancelled",
}


def dependency_satisfied(instance: TaskInstance) -> bool:
    """A dependency lets its dependents run once it is in one of these states."""
    if instance.state in (TaskState.SUCCEEDED, TaskState.SKIPPED):
        return True
    return instance.state == TaskState.FAILED and not instance.mandatory


def aggregate_status(
    instances: Mapping[str, TaskInstance],
    cancelled: bool = False,
    errored: bool = False,
) -> RunStatus:
    """Final run status from the terminal states of its task instances.

    ERRORED on invariant violation, CANCELLED when cancelled by the user,
    SUCCEEDED when every mandatory instance Succeeded or was Skipped,
    FAILED otherwise.
    """
    if errored:
        return RunStatus.ERRORED
    if cancelled:
        return RunStatus.CANCELLED
    for instance in instances.values():
        if instance.mandatory and instance.state not in (TaskState.SUCCEEDED, TaskState.SKIPPED):
            return RunStatus.FAILED
    return RunStatus.SUCCEEDED


class RunScheduler:
    """
    Executes one run of a workflow definition.

    The coordinator creates a scheduler per run and awaits `run()` in a
    background task. Status readers look at the shared Run and
    TaskInstance objects between loop iterations.

    Usage:
        scheduler = RunScheduler(run, instances, definition, executor)
        status = await scheduler.run()
    """

    def __init__(
        self,
        run: Run,
        instances: dict[str, TaskInstance],
        definition: WorkflowDefinition,
        executor: Executor,
        config: EngineConfig | None = None,
        *,
        clock: Clock | None = None,
        events: EventBus | None = None,
        storage: RunLog | None = None,
        artifacts: ArtifactTransfer | None = None,
        retry_controller: RetryController | None = None,
    ):
        self.run_record = run
        self.instances = instances
        self.definition = definition
        self.store = ParameterStore(run.run_id)
        self._executor = executor
        self._config = config or EngineConfig()
        self._clock = clock or SystemClock()
        self._events = events
        self._storage = storage
        self._artifacts = artifacts
        self._retry = retry_controller or RetryController()
        self._machine = TaskStateMachine(on_transition=self._on_transition)

        self._remaining: dict[str, int] = {
            name: len(template.dependencies) for name, template in definition.tasks.items()
        }
        self._dependents: dict[str, list[str]] = {name: [] for name in definition.tasks}
        for name, template in definition.tasks.items():
            for dep in template.dependencies:
                self._dependents[dep].append(name)

        self._frontier: deque[str] = deque()
        self._ready: deque[str] = deque()
        self._retries = RetryQueue()
        self._in_flight: dict[asyncio.Task, str] = {}
        self._dirty: set[str] = set()
        self._cancel_event = asyncio.Event()
        self._stopping = False
        self._cancelled = False
        self._invariant: InvariantViolation | None = None

    @property
    def run_id(self) -> str:
        return self.run_record.run_id

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    def request_cancel(self) -> None:
        """Ask the loop to cancel the run. Returns immediately."""
        self.run_record.cancel_requested = True
        self._cancel_event.set()

    # =========================================================================
    # Main loop
    # =========================================================================

    async def run(self) -> RunStatus:
        """Drive the run until every task instance is terminal.

        Task failures never propagate out of here; they are recorded on the
        instances and reflected in the returned status.
        """
        run = self.run_record
        run.status = RunStatus.RUNNING
        run.started_at = run.updated_at = utcnow()
        logger.info(
            f"Run {self.run_id} of workflow '{self.definition.name}' started "
            f"({len(self.instances)} tasks, max_parallelism={self._config.max_parallelism})"
        )
        await self._save_run()

        for name in self.definition.tasks:
            if self._remaining[name] == 0:
                self._frontier.append(name)

        try:
            await self._loop()
        except InvariantViolation as e:
            self._invariant = e
            logger.error(f"Run {self.run_id} aborted on invariant violation: {e}")
            await self._abort_in_flight()
            run.error = ErrorDetail(
                kind=str(e.kind) if e.kind else type(e).__name__,
                message=str(e),
                severity=ErrorSeverity.INVARIANT,
            )
            self._cancel_remaining(ErrorKind.CANCELLED, f"run errored: {e}")
        except asyncio.CancelledError:
            logger.warning(f"Run {self.run_id} interrupted, cancelling running tasks")
            self._cancelled = True
            await self._abort_in_flight()
            self._cancel_remaining(ErrorKind.CANCELLED, "run interrupted")
            await self._finish()
            raise

        await self._finish()
        return run.status

    async def _loop(self) -> None:
        while True:
            if self._cancel_event.is_set():
                await self._cancel_run()
                return

            self._advance()
            await self._persist()

            if not self._in_flight and not self._retries:
                break

            waiters: set[asyncio.Task] = set(self._in_flight)
            timer = None
            next_due = self._retries.next_due()
            if next_due is not None:
                timer = asyncio.create_task(self._clock.sleep_until(next_due))
                waiters.add(timer)
            cancel_waiter = asyncio.create_task(self._cancel_event.wait())
            waiters.add(cancel_waiter)

            done, _ = await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)

            for helper in (timer, cancel_waiter):
                if helper is not None and helper not in done:
                    helper.cancel()
                    try:
                        await helper
                    except asyncio.CancelledError:
                        pass

            # Completion order follows dispatch order for equal wake-ups
            for task in [t for t in self._in_flight if t in done]:
                name = self._in_flight.pop(task)
                self._complete(name, task.result())

            if self._cancel_event.is_set():
                await self._cancel_run()
                return

            for name in self._retries.pop_due(self._clock.now()):
                self._ready.append(name)

    # =========================================================================
    # Readiness and gates
    # =========================================================================

    def _advance(self) -> None:
        """Gate and dispatch until no newly ready task is left behind.

        A dispatch can fail synchronously (unresolvable inputs) and release
        dependents into the frontier, so both steps repeat until it is empty.
        """
        while True:
            self._process_frontier()
            self._dispatch_ready()
            if not self._frontier:
                return

    def _process_frontier(self) -> None:
        while self._frontier:
            name = self._frontier.popleft()
            instance = self.instances[name]
            if instance.state != TaskState.PENDING:
                continue
            template = self.definition.tasks[name]
            deps = [self.instances[d] for d in template.dependencies]

            if not all(dependency_satisfied(d) for d in deps):
                # Blocked by a failed mandatory dependency; cancelled at drain
                logger.debug(f"Run {self.run_id}: task '{name}' blocked by upstream failure")
                continue

            if (
                self._config.skip_policy == SkipPolicy.PROPAGATE
                and deps
                and all(d.state == TaskState.SKIPPED for d in deps)
            ):
                self._machine.transition(instance, TaskState.SKIPPED)
                self._on_terminal(name)
                continue

            self._machine.transition(instance, TaskState.EVALUATING_WHEN)
            if template.when is not None:
                try:
                    passed = self._evaluate_when(template.when)
                except EvalError as e:
                    self._fail(instance, self._eval_error(e))
                    continue
                if not passed:
                    logger.info(f"Run {self.run_id}: task '{name}' skipped, gate is false")
                    self._machine.transition(instance, TaskState.SKIPPED)
                    self._on_terminal(name)
                    continue

            self._machine.transition(instance, TaskState.READY)
            self._ready.append(name)

    def _evaluate_when(self, expression: str) -> bool:
        return evaluate_condition(expression, self._scope())

    def _scope(self) -> VariableContext:
        unavailable = {
            name: _UNAVAILABLE_REASONS[inst.state]
            for name, inst in self.instances.items()
            if inst.state in _UNAVAILABLE_REASONS
        }
        return self.store.context(self.run_record.parameters, unavailable)

    def _on_terminal(self, name: str) -> None:
        for dependent in self._dependents[name]:
            self._remaining[dependent] -= 1
            if self._remaining[dependent] == 0:
                self._frontier.append(dependent)

    # =========================================================================
    # Dispatch and completion
    # =========================================================================

    def _dispatch_ready(self) -> None:
        while self._ready and not self._stopping:
            if len(self._in_flight) >= self._config.max_parallelism:
                return
            self._dispatch(self._ready.popleft())

    def _dispatch(self, name: str) -> None:
        instance = self.instances[name]
        template = self.definition.tasks[name]
        self._machine.transition(instance, TaskState.DISPATCHING)
        instance.attempt += 1
        instance.outputs = {}
        self.store.begin_attempt(name, instance.attempt)

        scope = self._scope()
        try:
            inputs = {
                key: interpolate(binding.value, scope) for key, binding in template.inputs.items()
            }
        except EvalError as e:
            self._fail(instance, self._eval_error(e))
            return
        instance.inputs = inputs

        context = TaskContext(
            run_id=self.run_id,
            task_name=name,
            attempt=instance.attempt,
            inputs=inputs,
            artifacts=self._artifacts,
        )
        timeout = template.timeout if template.timeout is not None else self._config.default_timeout
        self._machine.transition(instance, TaskState.RUNNING)
        logger.debug(f"Run {self.run_id}: dispatching '{name}' attempt {instance.attempt}")

        task = asyncio.create_task(
            self._retry.execute(
                instance,
                lambda: self._executor.dispatch(template.executor_spec, inputs, context),
                timeout=timeout,
            ),
            name=f"pytaxis:{self.run_id}:{name}",
        )
        self._in_flight[task] = name

    def _complete(self, name: str, outcome: AttemptOutcome) -> None:
        instance = self.instances[name]
        if outcome.succeeded:
            # DuplicateOutputError propagates: fatal to the run
            try:
                self.store.bind_all(name, outcome.result.outputs)
            except InvariantViolation as e:
                instance.error = ErrorDetail(
                    kind=str(e.kind), message=str(e), severity=ErrorSeverity.INVARIANT
                )
                self._machine.transition(instance, TaskState.FAILED)
                raise
            instance.outputs = self.store.outputs_of(name)
            instance.error = None
            self._machine.transition(instance, TaskState.SUCCEEDED)
            logger.debug(f"Run {self.run_id}: task '{name}' succeeded on attempt {instance.attempt}")
            self._on_terminal(name)
            return

        error = outcome.error_detail()
        template = self.definition.tasks[name]
        delay = None if self._stopping else self._retry.next_delay(
            template.retry_policy, instance.attempt, outcome
        )
        if delay is None:
            self._fail(instance, error)
            return

        instance.error = error
        instance.backoff_history.append(delay)
        self._machine.transition(instance, TaskState.RETRYING)
        self._retries.push(self._clock.now() + delay, name)
        logger.warning(
            f"Run {self.run_id}: task '{name}' attempt {instance.attempt} failed "
            f"({error.message}), retrying in {delay:.2f}s"
        )

    def _fail(self, instance: TaskInstance, error: ErrorDetail) -> None:
        instance.error = error
        self._machine.transition(instance, TaskState.FAILED)
        level = logging.ERROR if instance.mandatory else logging.WARNING
        logger.log(
            level,
            f"Run {self.run_id}: task '{instance.task_name}' failed after attempt "
            f"{instance.attempt}: [{error.kind}] {error.message}",
        )
        if instance.mandatory and self._config.fail_fast and not self._stopping:
            self._stopping = True
            self._cancel_remaining(
                ErrorKind.CANCELLED, f"cancelled after task '{instance.task_name}' failed"
            )
        self._on_terminal(instance.task_name)

    @staticmethod
    def _eval_error(error: EvalError) -> ErrorDetail:
        kind = str(error.kind) if error.kind else ErrorKind.UNRESOLVED_REFERENCE.value
        return ErrorDetail(kind=kind, message=str(error), retryable=False)

    # =========================================================================
    # Cancellation and drain
    # =========================================================================

    def _cancel_remaining(self, kind: ErrorKind, message: str) -> None:
        """Cancel every instance that is neither terminal nor running."""
        self._frontier.clear()
        self._ready.clear()
        self._retries.drain()
        for instance in self.instances.values():
            if instance.is_terminal or instance.state == TaskState.RUNNING:
                continue
            instance.error = ErrorDetail(kind=str(kind), message=message)
            self._force_cancel(instance)

    def _force_cancel(self, instance: TaskInstance) -> None:
        if can_transition(instance.state, TaskState.CANCELLED):
            self._machine.transition(instance, TaskState.CANCELLED)
            return
        # Only reachable while aborting a run whose invariants already broke
        old = instance.state
        instance.state = TaskState.CANCELLED
        instance.finished_at = instance.updated_at = utcnow()
        self._on_transition(instance, old, TaskState.CANCELLED)

    async def _cancel_run(self) -> None:
        self._cancelled = True
        self._stopping = True
        logger.info(f"Run {self.run_id}: cancel requested")
        self._cancel_remaining(ErrorKind.CANCELLED, "cancelled by user")
        await self._abort_in_flight()

    async def _abort_in_flight(self) -> None:
        """Best-effort cancel of running attempts, awaited to completion."""
        if not self._in_flight:
            return
        cancel = getattr(self._executor, "cancel", None)
        running = dict(self._in_flight)
        self._in_flight.clear()
        for task, name in running.items():
            if cancel is not None:
                try:
                    await cancel(self.run_id, name)
                except Exception as e:
                    logger.warning(f"Run {self.run_id}: executor cancel of '{name}' failed: {e}")
            task.cancel()
        await asyncio.gather(*running, return_exceptions=True)

        for task, name in running.items():
            instance = self.instances[name]
            if instance.is_terminal:
                continue
            if instance.error is None or instance.error.severity != ErrorSeverity.INVARIANT:
                instance.error = ErrorDetail(
                    kind=ErrorKind.CANCELLED.value, message="cancelled while running"
                )
            self._force_cancel(instance)

    def _drain_blocked(self) -> None:
        for name, instance in self.instances.items():
            if instance.state != TaskState.PENDING:
                continue
            template = self.definition.tasks[name]
            upstream = next(
                (
                    d
                    for d in template.dependencies
                    if self.instances[d].is_terminal
                    and not dependency_satisfied(self.instances[d])
                ),
                None,
            )
            message = (
                f"upstream task '{upstream}' did not succeed"
                if upstream
                else "upstream task did not succeed"
            )
            instance.error = ErrorDetail(kind=ErrorKind.UPSTREAM_FAILED.value, message=message)
            self._machine.transition(instance, TaskState.CANCELLED)

    async def _finish(self) -> None:
        self._drain_blocked()
        run = self.run_record
        run.status = aggregate_status(
            self.instances, cancelled=self._cancelled, errored=self._invariant is not None
        )
        run.finished_at = run.updated_at = utcnow()
        await self._persist()
        await self._save_run()
        log = logger.info if run.status == RunStatus.SUCCEEDED else logger.warning
        log(f"Run {self.run_id} of workflow '{self.definition.name}' finished: {run.status.value}")

    # =========================================================================
    # Notification and persistence
    # =========================================================================

    def _on_transition(self, instance: TaskInstance, old: TaskState, new: TaskState) -> None:
        self._dirty.add(instance.task_name)
        if self._events is not None:
            self._events.publish(
                StateChangeEvent(
                    run_id=self.run_id,
                    task_name=instance.task_name,
                    old_state=old,
                    new_state=new,
                )
            )

    async def _persist(self) -> None:
        if self._storage is None:
            self._dirty.clear()
            return
        dirty, self._dirty = self._dirty, set()
        for name in sorted(dirty):
            try:
                await self._storage.save_task_instance(self.instances[name].snapshot())
            except Exception as e:
                logger.error(f"Run {self.run_id}: failed to persist task '{name}': {e}")

    async def _save_run(self) -> None:
        if self._storage is None:
            return
        try:
            await self._storage.save_run(self.run_record.snapshot())
        except Exception as e:
            logger.error(f"Run {self.run_id}: failed to persist run: {e}")
