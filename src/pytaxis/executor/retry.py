"""Retry controller.

Runs single attempts, normalises every way an attempt can end into an
AttemptOutcome, and decides whether and when a failed attempt is
retried. Backoff is never a blocking sleep: retries are parked in a
RetryQueue keyed by due time and the scheduler wakes up for them in the
same asyncio.wait() that awaits running tasks.

Retry decision (next_delay):
    - attempt <= policy.limit, and
    - the failure is retryable: the executor's classification, or
      policy.retry_on_timeout for timeouts
    delay = min(initial_delay * backoff_multiplier^(attempt-1), max_delay)
    with optional jitter.
"""

from __future__ import annotations

import asyncio
import heapq
import itertools
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from pytaxis.errors import ErrorKind, ExecutionError, TaskTimeoutError
from pytaxis.executor.base import TaskResult
from pytaxis.models.instance import ErrorDetail, TaskInstance
from pytaxis.models.retry import RetryPolicy

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AttemptOutcome:
    """How one attempt ended."""

    task_name: str
    attempt: int
    result: TaskResult
    timed_out: bool = False

    @property
    def succeeded(self) -> bool:
        return self.result.succeeded

    def error_detail(self) -> ErrorDetail | None:
        if self.succeeded:
            return None
        return ErrorDetail(
            kind=self.result.error_kind or ErrorKind.EXECUTION.value,
            message=self.result.error_message or "task failed",
            retryable=self.result.retryable,
        )


def next_delay(
    policy: RetryPolicy,
    attempt: int,
    outcome: AttemptOutcome,
    rng: random.Random | None = None,
) -> float | None:
    """
    Decide whether a failed attempt is retried.

    Args:
        policy: Retry policy of the task template
        attempt: The attempt that just failed (1-indexed)
        outcome: Outcome of that attempt
        rng: Random source for jitter

    Returns:
        Backoff delay in seconds, or None if the task fails for good
    """
    if outcome.succeeded:
        return None
    retryable = policy.retry_on_timeout if outcome.timed_out else outcome.result.retryable
    if not retryable:
        return None

    delay = policy.delay_for_attempt(attempt)
    if delay is None:
        return None
    if policy.jitter:
        spread = delay * policy.jitter
        delay = max(0.0, delay + (rng or random).uniform(-spread, spread))
    return delay


class RetryQueue:
    """Min-heap of (due, seq, task_name) waiting out their backoff.

    The sequence number keeps ordering FIFO among equal due times.
    """

    def __init__(self) -> None:
        self._heap: list[tuple[float, int, str]] = []
        self._seq = itertools.count()

    def __len__(self) -> int:
        return len(self._heap)

    def __contains__(self, task_name: str) -> bool:
        return any(name == task_name for _, _, name in self._heap)

    def push(self, due: float, task_name: str) -> None:
        heapq.heappush(self._heap, (due, next(self._seq), task_name))

    def next_due(self) -> float | None:
        return self._heap[0][0] if self._heap else None

    def pop_due(self, now: float) -> list[str]:
        """Remove and return every task whose backoff has elapsed, in order."""
        ready = []
        while self._heap and self._heap[0][0] <= now:
            ready.append(heapq.heappop(self._heap)[2])
        return ready

    def drain(self) -> list[str]:
        """Remove and return every parked task."""
        names = [name for _, _, name in sorted(self._heap)]
        self._heap.clear()
        return names


class RetryController:
    """
    Runs attempts and applies retry policies.

    Usage:
        controller = RetryController()
        outcome = await controller.execute(instance, lambda: executor.dispatch(...), timeout=30)
        delay = controller.next_delay(policy, instance.attempt, outcome)
    """

    def __init__(self, rng: random.Random | None = None):
        self._rng = rng or random.Random()

    async def execute(
        self,
        instance: TaskInstance,
        dispatch: Callable[[], Awaitable[TaskResult]],
        timeout: float | None = None,
    ) -> AttemptOutcome:
        """Run one attempt. Never raises for task failures.

        Cancellation propagates so the scheduler can cancel running work.
        """
        name, attempt = instance.task_name, instance.attempt
        timer = asyncio.timeout(timeout)
        try:
            async with timer:
                result = await dispatch()
        except TimeoutError as e:
            if not timer.expired():
                # Raised by the task itself, not by our deadline
                result = TaskResult.failure(f"{type(e).__name__}: {e}", retryable=True)
                return AttemptOutcome(task_name=name, attempt=attempt, result=result)
            error = TaskTimeoutError(name, timeout or 0.0)
            logger.warning(f"Run {instance.run_id}: {error} (attempt {attempt})")
            return AttemptOutcome(
                task_name=name,
                attempt=attempt,
                result=TaskResult.failure(str(error), retryable=False, error_kind=error.error_kind),
                timed_out=True,
            )
        except ExecutionError as e:
            result = TaskResult.failure(str(e), retryable=e.is_retryable(), error_kind=e.error_kind)
        except Exception as e:
            retryable = e.is_retryable() if hasattr(e, "is_retryable") else True
            result = TaskResult.failure(f"{type(e).__name__}: {e}", retryable=retryable)

        return AttemptOutcome(task_name=name, attempt=attempt, result=result)

    def next_delay(
        self, policy: RetryPolicy, attempt: int, outcome: AttemptOutcome
    ) -> float | None:
        return next_delay(policy, attempt, outcome, self._rng)
