"""Executor collaborator interface.

The engine never runs task work itself. Each dispatch hands the task's
opaque ExecutorSpec and its resolved inputs to an Executor, which reports
back a TaskResult. Vendor adapters (containers, shell, cloud APIs) live
outside the core and only need to implement this protocol.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol, runtime_checkable

from pytaxis.errors import ErrorKind
from pytaxis.models.definition import ExecutorSpec
from pytaxis.store.artifacts import ArtifactTransfer


class ResultStatus(str, Enum):
    """Outcome of a single dispatch."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class TaskResult:
    """
    Result reported by an executor for one attempt.

    Attributes:
        status: SUCCEEDED or FAILED
        outputs: Output values, as a mapping or as (name, value) pairs
        error_kind: Failure classification reported by the executor
        error_message: Human readable failure description
        retryable: Whether the failure is transient
    """

    status: ResultStatus
    outputs: Mapping[str, Any] | Iterable[tuple[str, Any]] = field(default_factory=dict)
    error_kind: str | None = None
    error_message: str | None = None
    retryable: bool = False

    @property
    def succeeded(self) -> bool:
        return self.status == ResultStatus.SUCCEEDED

    @classmethod
    def success(
        cls, outputs: Mapping[str, Any] | Iterable[tuple[str, Any]] | None = None
    ) -> TaskResult:
        return cls(status=ResultStatus.SUCCEEDED, outputs=outputs if outputs is not None else {})

    @classmethod
    def failure(
        cls,
        message: str,
        retryable: bool = False,
        error_kind: str = ErrorKind.EXECUTION.value,
    ) -> TaskResult:
        return cls(
            status=ResultStatus.FAILED,
            error_kind=error_kind,
            error_message=message,
            retryable=retryable,
        )


@dataclass(frozen=True)
class TaskContext:
    """What an executor knows about the attempt it is running."""

    run_id: str
    task_name: str
    attempt: int
    inputs: Mapping[str, Any]
    artifacts: ArtifactTransfer | None = None


@runtime_checkable
class Executor(Protocol):
    """
    Runs task work on behalf of the scheduler.

    Implementations may also define `async cancel(run_id, task_name)`.
    The scheduler calls it, when present, before cancelling a running
    dispatch, so remote work can be stopped on a best-effort basis.
    """

    async def dispatch(
        self,
        spec: ExecutorSpec | None,
        inputs: Mapping[str, Any],
        context: TaskContext,
    ) -> TaskResult:
        """Run one attempt and report its outcome.

        Failures should be reported through a FAILED TaskResult. Raised
        exceptions are still handled: ExecutionError keeps its retryable
        flag, anything else is classified via `is_retryable()` when present.
        """
        ...
