"""Scheduling and dispatch.

Design: Separation of Concerns
    - state_machine: legal task instance transitions
    - retry: attempt execution, retry decisions and backoff parking
    - scheduler: the per-run event loop
    - base / callable: the Executor collaborator and an in-process adapter
"""

from pytaxis.executor.base import Executor, ResultStatus, TaskContext, TaskResult
from pytaxis.executor.callable import CallableExecutor
from pytaxis.executor.retry import AttemptOutcome, RetryController, RetryQueue, next_delay
from pytaxis.executor.scheduler import RunScheduler, aggregate_status, dependency_satisfied
from pytaxis.executor.state_machine import VALID_TRANSITIONS, TaskStateMachine, can_transition

__all__ = [
    "Executor",
    "ResultStatus",
    "TaskContext",
    "TaskResult",
    "CallableExecutor",
    "AttemptOutcome",
    "RetryController",
    "RetryQueue",
    "next_delay",
    "RunScheduler",
    "aggregate_status",
    "dependency_satisfied",
    "VALID_TRANSITIONS",
    "TaskStateMachine",
    "can_transition",
]
