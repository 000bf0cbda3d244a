"""Exception hierarchy for pytaxis.

Errors are grouped by who raises them and how the engine reacts:

- ValidationError: malformed or cyclic definitions, raised at load time.
  No run is created.
- EvalError (UnresolvedReferenceError, ExpressionTypeError,
  ExpressionSyntaxError): expression problems. They fail the referencing
  task and are never retried.
- ExecutionError / TaskTimeoutError: task work failed. Retryability is
  decided by the executor (or the retry policy for timeouts).
- InvariantViolation (DuplicateOutputError, InvalidTransitionError): engine
  defects. Fatal to the run, reported with INVARIANT severity.

Task-level errors are recorded on the task instance and surface only
through the aggregated run status. They never propagate out of the
scheduler.
"""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    """Stable error kind names recorded on task instances."""

    UNRESOLVED_REFERENCE = "UnresolvedReferenceError"
    EXPRESSION_TYPE = "ExpressionTypeError"
    EXPRESSION_SYNTAX = "ExpressionSyntaxError"
    EXECUTION = "ExecutionError"
    TIMEOUT = "TaskTimeoutError"
    UPSTREAM_FAILED = "UpstreamFailed"
    CANCELLED = "Cancelled"
    DUPLICATE_OUTPUT = "DuplicateOutputError"
    INVALID_TRANSITION = "InvalidTransitionError"

    def __str__(self) -> str:
        return self.value


class PytaxisError(Exception):
    """Base class for all pytaxis errors."""

    kind: ErrorKind | None = None


class ValidationError(PytaxisError):
    """Workflow definition is malformed.

    Collects every problem found so callers can report them together.

    Attributes:
        problems: Human readable descriptions, one per problem
    """

    def __init__(self, problems: list[str] | str):
        if isinstance(problems, str):
            problems = [problems]
        self.problems = list(problems)
        super().__init__("; ".join(self.problems))


class ConfigError(PytaxisError):
    """Engine configuration value is invalid."""


class EvalError(PytaxisError):
    """Expression could not be evaluated."""


class ExpressionSyntaxError(EvalError):
    """Expression text does not parse.

    Attributes:
        expression: The offending source text
        position: Character offset where parsing failed
    """

    kind = ErrorKind.EXPRESSION_SYNTAX

    def __init__(self, message: str, expression: str = "", position: int = 0):
        self.expression = expression
        self.position = position
        if expression:
            message = f"{message} at position {position} in {expression!r}"
        super().__init__(message)


class UnresolvedReferenceError(EvalError):
    """A `{{ reference }}` names nothing bound in the current scope."""

    kind = ErrorKind.UNRESOLVED_REFERENCE

    def __init__(self, reference: str, detail: str | None = None):
        self.reference = reference
        message = f"unresolved reference '{reference}'"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class ExpressionTypeError(EvalError):
    """Operands or result have the wrong type (e.g. a non-boolean `when`)."""

    kind = ErrorKind.EXPRESSION_TYPE


class ExecutionError(PytaxisError):
    """Task work failed in the executor.

    The executor classifies the failure; the engine trusts that
    classification when deciding whether to retry.
    """

    kind = ErrorKind.EXECUTION

    def __init__(self, message: str, retryable: bool = True, error_kind: str | None = None):
        super().__init__(message)
        self.retryable = retryable
        self.error_kind = error_kind or ErrorKind.EXECUTION.value

    def is_retryable(self) -> bool:
        return self.retryable


class TaskTimeoutError(ExecutionError):
    """Task exceeded its declared maximum duration.

    Not retryable unless the retry policy opts in via `retry_on_timeout`.
    """

    kind = ErrorKind.TIMEOUT

    def __init__(self, task_name: str, timeout: float):
        self.task_name = task_name
        self.timeout = timeout
        super().__init__(
            f"task '{task_name}' exceeded timeout of {timeout}s",
            retryable=False,
            error_kind=ErrorKind.TIMEOUT.value,
        )


class InvariantViolation(PytaxisError):
    """Engine invariant broken. Indicates a defect, not a task failure."""


class DuplicateOutputError(InvariantViolation):
    """An output was bound twice within the same attempt."""

    kind = ErrorKind.DUPLICATE_OUTPUT

    def __init__(self, task_name: str, param_name: str, attempt: int):
        self.task_name = task_name
        self.param_name = param_name
        self.attempt = attempt
        super().__init__(
            f"output '{param_name}' of task '{task_name}' already bound in attempt {attempt}"
        )


class InvalidTransitionError(InvariantViolation):
    """Illegal task state transition was attempted."""

    kind = ErrorKind.INVALID_TRANSITION


class RunNotFoundError(PytaxisError):
    """No run with the given id is known to the coordinator or its storage."""

    def __init__(self, run_id: str):
        self.run_id = run_id
        super().__init__(f"run not found: {run_id}")
