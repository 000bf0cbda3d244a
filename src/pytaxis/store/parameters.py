"""Per-run parameter store for task outputs.

Keyed by ``(task_name, param_name)``. Each task instance owns its keys and
only the scheduler loop processing that instance's completion writes them,
so no locking is needed.

Write-once semantics:
    Within one attempt an output can be bound exactly once. Starting a new
    attempt discards everything the previous attempt bound.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from typing import Any

from pytaxis.errors import DuplicateOutputError, UnresolvedReferenceError
from pytaxis.expression.scope import OutputRef, VariableContext

logger = logging.getLogger(__name__)


class ParameterStore:
    """Output bindings for one run.

    Large payloads are stored as ArtifactRef values. The store never
    dereferences them.

    Usage:
        store = ParameterStore(run_id)
        store.begin_attempt("build", 1)
        store.bind("build", "image", "registry/app:1.4")
        store.resolve(OutputRef("build", "image"))  # "registry/app:1.4"
    """

    def __init__(self, run_id: str):
        self.run_id = run_id
        self._bindings: dict[tuple[str, str], Any] = {}
        self._attempts: dict[str, int] = {}

    def __repr__(self) -> str:
        return f"ParameterStore(run_id={self.run_id!r}, bindings={len(self._bindings)})"

    def __len__(self) -> int:
        return len(self._bindings)

    def begin_attempt(self, task_name: str, attempt: int) -> None:
        """Start a new attempt for a task, clearing its prior bindings."""
        cleared = self.clear(task_name)
        if cleared:
            logger.debug(
                f"Run {self.run_id}: cleared {cleared} outputs of '{task_name}' "
                f"before attempt {attempt}"
            )
        self._attempts[task_name] = attempt

    def attempt_of(self, task_name: str) -> int:
        return self._attempts.get(task_name, 0)

    def bind(self, task_name: str, param_name: str, value: Any) -> None:
        """Bind an output value.

        Raises:
            DuplicateOutputError: If the output is already bound in the
                current attempt
        """
        key = (task_name, param_name)
        if key in self._bindings:
            raise DuplicateOutputError(task_name, param_name, self.attempt_of(task_name))
        self._bindings[key] = value

    def bind_all(
        self, task_name: str, outputs: Mapping[str, Any] | Iterable[tuple[str, Any]]
    ) -> None:
        """Bind several outputs. Pairs are bound in order, so a repeated
        name in an iterable of pairs raises DuplicateOutputError."""
        pairs = outputs.items() if isinstance(outputs, Mapping) else outputs
        for name, value in pairs:
            self.bind(task_name, name, value)

    def resolve(self, ref: OutputRef) -> Any:
        """Return the value bound for an output reference.

        Raises:
            UnresolvedReferenceError: If nothing is bound
        """
        key = (ref.task_name, ref.param_name)
        if key not in self._bindings:
            raise UnresolvedReferenceError(ref.path, "output not bound")
        return self._bindings[key]

    def outputs_of(self, task_name: str) -> dict[str, Any]:
        return {name: value for (task, name), value in self._bindings.items() if task == task_name}

    def clear(self, task_name: str) -> int:
        keys = [key for key in self._bindings if key[0] == task_name]
        for key in keys:
            del self._bindings[key]
        return len(keys)

    def context(
        self,
        params: Mapping[str, Any],
        unavailable: Mapping[str, str] | None = None,
    ) -> VariableContext:
        """Immutable snapshot of params and current bindings for evaluation."""
        return VariableContext.of(params, self._bindings, unavailable)
