"""Per-run execution records.

A Run is one instantiation of a WorkflowDefinition. It owns one
TaskInstance per task template. Both are created at submission, mutated
only by the scheduler while the run is active, and treated as immutable
once the run reaches a terminal status.

Design: Value objects with snapshot copies
    Readers (status queries, storage) always receive copies so the
    scheduler remains the single writer of live state.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from pytaxis.models.status import ErrorSeverity, RunStatus, TaskState


def utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True)
class ErrorDetail:
    """Error recorded on a task instance or run.

    Attributes:
        kind: Error kind name (see pytaxis.errors.ErrorKind, or any kind
            reported by an executor)
        message: Human readable description
        severity: TASK for ordinary failures, INVARIANT for engine defects
        retryable: Classification of the last failure, None if not applicable
    """

    kind: str
    message: str
    severity: ErrorSeverity = ErrorSeverity.TASK
    retryable: bool | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "message": self.message,
            "severity": self.severity.value,
            "retryable": self.retryable,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> ErrorDetail | None:
        if not data:
            return None
        return cls(
            kind=data["kind"],
            message=data["message"],
            severity=ErrorSeverity(data.get("severity", ErrorSeverity.TASK.value)),
            retryable=data.get("retryable"),
        )


@dataclass
class TaskInstance:
    """
    Per-run materialization of a TaskTemplate.

    Identity is (run_id, task_name).
    """

    run_id: str
    task_name: str
    state: TaskState = TaskState.PENDING
    attempt: int = 0
    """Number of the current (or last) attempt, 0 before first dispatch."""

    inputs: dict[str, Any] = field(default_factory=dict)
    """Snapshot of inputs resolved for the last attempt."""

    outputs: dict[str, Any] = field(default_factory=dict)
    """Outputs captured by the last successful attempt."""

    error: ErrorDetail | None = None
    mandatory: bool = True
    backoff_history: list[float] = field(default_factory=list)
    """Backoff delays applied before each retry, in seconds."""

    created_at: datetime = field(default_factory=utcnow)
    started_at: datetime | None = None
    finished_at: datetime | None = None
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def key(self) -> tuple[str, str]:
        return (self.run_id, self.task_name)

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    def snapshot(self) -> TaskInstance:
        """Deep copy safe to hand out to readers."""
        return copy.deepcopy(self)

    def __repr__(self) -> str:
        return (
            f"TaskInstance(run_id={self.run_id!r}, task_name={self.task_name!r}, "
            f"state={self.state}, attempt={self.attempt})"
        )


@dataclass
class Run:
    """
    Instantiation of a WorkflowDefinition with concrete parameters.

    Attributes:
        run_id: Globally unique identifier (uuid7 string)
        workflow_name: Name of the definition
        definition_hash: Content hash of the definition
        parameters: Concrete global parameters
        status: Current run status
        error: Fatal run-level error (invariant violations only)
    """

    run_id: str
    workflow_name: str
    definition_hash: str
    parameters: dict[str, Any] = field(default_factory=dict)
    status: RunStatus = RunStatus.PENDING
    error: ErrorDetail | None = None
    cancel_requested: bool = False
    created_at: datetime = field(default_factory=utcnow)
    started_at: datetime | None = None
    finished_at: datetime | None = None
    updated_at: datetime = field(default_factory=utcnow)

    def snapshot(self) -> Run:
        return copy.deepcopy(self)

    def __repr__(self) -> str:
        return (
            f"Run(run_id={self.run_id!r}, workflow_name={self.workflow_name!r}, "
            f"status={self.status})"
        )


@dataclass(frozen=True)
class RunStatusSnapshot:
    """Coherent point-in-time view of a run and all of its task instances.

    Returned by RunCoordinator.status(). Never raises for failed runs:
    failures are visible through `status` and per-task `error` fields.
    """

    run: Run
    tasks: dict[str, TaskInstance]

    @property
    def run_id(self) -> str:
        return self.run.run_id

    @property
    def status(self) -> RunStatus:
        return self.run.status

    @property
    def is_terminal(self) -> bool:
        return self.run.status.is_terminal

    def task(self, name: str) -> TaskInstance:
        return self.tasks[name]

    def states(self) -> dict[str, TaskState]:
        """Task name to state, convenient for assertions and dashboards."""
        return {name: inst.state for name, inst in self.tasks.items()}

    def failed_tasks(self) -> list[str]:
        return [n for n, t in self.tasks.items() if t.state == TaskState.FAILED]
