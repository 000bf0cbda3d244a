"""Status enumerations for run and task-instance tracking.

Defines lifecycle states for individual task instances and for the
run that owns them.
"""

from enum import Enum


class TaskState(Enum):
    """State of a single task instance within a run.

    Lifecycle:
        PENDING → EVALUATING_WHEN → SKIPPED | READY → DISPATCHING → RUNNING
        → SUCCEEDED | FAILED | RETRYING, RETRYING → DISPATCHING

    Any non-terminal state except DISPATCHING may move to CANCELLED.
    """

    PENDING = "PENDING"
    """Waiting for dependencies to reach a terminal state."""

    EVALUATING_WHEN = "EVALUATING_WHEN"
    """Dependencies satisfied, the `when` gate is being evaluated."""

    READY = "READY"
    """Gate passed, queued in the frontier for dispatch."""

    DISPATCHING = "DISPATCHING"
    """Inputs are being resolved and handed to the executor."""

    RUNNING = "RUNNING"
    """Executor accepted the work, completion is awaited."""

    RETRYING = "RETRYING"
    """Attempt failed retryably, waiting out the backoff delay."""

    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        """Check if this state is terminal (no more transitions)."""
        return self in _TERMINAL_TASK_STATES

    @property
    def is_active(self) -> bool:
        """Check if work for this instance is currently held by an executor."""
        return self in (TaskState.DISPATCHING, TaskState.RUNNING)

    def __str__(self) -> str:
        return self.value


_TERMINAL_TASK_STATES = frozenset(
    {TaskState.SUCCEEDED, TaskState.FAILED, TaskState.SKIPPED, TaskState.CANCELLED}
)


class RunStatus(Enum):
    """Status of a run.

    Lifecycle:
        PENDING → RUNNING → SUCCEEDED | FAILED | CANCELLED | ERRORED

    ERRORED is reserved for engine invariant violations so they stay
    distinguishable from ordinary task failures.
    """

    PENDING = "PENDING"
    RUNNING = "RUNNING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"
    ERRORED = "ERRORED"

    @property
    def is_terminal(self) -> bool:
        """Check if this status is terminal (run finished)."""
        return self not in (RunStatus.PENDING, RunStatus.RUNNING)

    def __str__(self) -> str:
        return self.value


class ErrorSeverity(Enum):
    """How serious a recorded error is.

    TASK errors are business failures of a single task. INVARIANT errors
    indicate an engine defect and abort the whole run.
    """

    TASK = "TASK"
    INVARIANT = "INVARIANT"

    def __str__(self) -> str:
        return self.value
