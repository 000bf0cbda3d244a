"""
Task instance lifecycle.

The transition table is the single source of truth for legal state
changes. Any other change raises InvalidTransitionError, which the
scheduler treats as an invariant violation fatal to the run.

Transition graph:
    PENDING ──> EVALUATING_WHEN ──> READY ──> DISPATCHING ──> RUNNING ──> SUCCEEDED
                                ──> SKIPPED                           ──> FAILED
                                                                      ──> RETRYING ──> DISPATCHING
    DISPATCHING ──> FAILED                   (unresolved input reference)
    PENDING ──> SKIPPED                      (skip propagation)
    non-terminal except DISPATCHING ──> CANCELLED
"""

from __future__ import annotations

import logging
from collections.abc import Callable

from pytaxis.errors import InvalidTransitionError
from pytaxis.models.instance import TaskInstance, utcnow
from pytaxis.models.status import TaskState

logger = logging.getLogger(__name__)

VALID_TRANSITIONS: dict[TaskState, frozenset[TaskState]] = {
    TaskState.PENDING: frozenset(
        {TaskState.EVALUATING_WHEN, TaskState.SKIPPED, TaskState.CANCELLED}
    ),
    TaskState.EVALUATING_WHEN: frozenset(
        {TaskState.READY, TaskState.SKIPPED, TaskState.FAILED, TaskState.CANCELLED}
    ),
    TaskState.READY: frozenset({TaskState.DISPATCHING, TaskState.CANCELLED}),
    # DISPATCHING -> FAILED when input references do not resolve
    TaskState.DISPATCHING: frozenset({TaskState.RUNNING, TaskState.FAILED}),
    TaskState.RUNNING: frozenset(
        {TaskState.SUCCEEDED, TaskState.FAILED, TaskState.RETRYING, TaskState.CANCELLED}
    ),
    TaskState.RETRYING: frozenset({TaskState.DISPATCHING, TaskState.CANCELLED}),
    # Terminal states
    TaskState.SUCCEEDED: frozenset(),
    TaskState.FAILED: frozenset(),
    TaskState.SKIPPED: frozenset(),
    TaskState.CANCELLED: frozenset(),
}

TransitionCallback = Callable[[TaskInstance, TaskState, TaskState], None]


def can_transition(current: TaskState, new: TaskState) -> bool:
    return new in VALID_TRANSITIONS.get(current, frozenset())


class TaskStateMachine:
    """
    Validates and applies task instance transitions.

    transition() checks the table, applies the change with timestamps,
    then fires the optional callback (used to publish state change
    events and persist the instance).
    """

    def __init__(self, on_transition: TransitionCallback | None = None):
        self._on_transition = on_transition

    def transition(self, instance: TaskInstance, new_state: TaskState) -> None:
        """Move `instance` to `new_state`.

        Raises:
            InvalidTransitionError: If the table does not allow the change
        """
        old_state = instance.state
        if not can_transition(old_state, new_state):
            allowed = sorted(s.value for s in VALID_TRANSITIONS.get(old_state, frozenset()))
            raise InvalidTransitionError(
                f"Task '{instance.task_name}' of run {instance.run_id}: cannot transition "
                f"from {old_state.value} to {new_state.value}. Valid targets: {allowed}"
            )

        now = utcnow()
        instance.state = new_state
        instance.updated_at = now
        if new_state == TaskState.RUNNING and instance.started_at is None:
            instance.started_at = now
        if new_state.is_terminal:
            instance.finished_at = now

        logger.debug(
            f"Run {instance.run_id}: task '{instance.task_name}' "
            f"{old_state.value} -> {new_state.value}"
        )

        if self._on_transition is not None:
            self._on_transition(instance, old_state, new_state)
