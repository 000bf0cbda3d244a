"""Static, reusable workflow definitions.

A WorkflowDefinition is built and validated once, then shared read-only
across any number of runs. Nothing here knows how tasks execute: executor
specs are opaque payloads handed to the Executor collaborator.
"""

from __future__ import annotations

import json
from collections.abc import Mapping
from dataclasses import dataclass, field
from functools import cached_property
from typing import Any

import xxhash

from pytaxis.models.retry import RetryPolicy

# =============================================================================
# Executor specs (variant payloads, interpreted only by executors)
# =============================================================================


@dataclass(frozen=True)
class ExecutorSpec:
    """Base class for executor payloads."""

    kind = "opaque"

    def to_dict(self) -> dict[str, Any]:
        raise NotImplementedError


@dataclass(frozen=True)
class ContainerSpec(ExecutorSpec):
    """Run a container image."""

    image: str
    command: tuple[str, ...] = ()
    env: Mapping[str, str] = field(default_factory=dict)

    kind = "container"

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.kind,
            "image": self.image,
            "command": list(self.command),
            "env": dict(self.env),
        }


@dataclass(frozen=True)
class ShellSpec(ExecutorSpec):
    """Run a shell script."""

    script: str
    env: Mapping[str, str] = field(default_factory=dict)

    kind = "shell"

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.kind, "script": self.script, "env": dict(self.env)}


@dataclass(frozen=True)
class ApiCallSpec(ExecutorSpec):
    """Call a remote API."""

    method: str
    url: str
    body: Any = None

    kind = "api"

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.kind, "method": self.method, "url": self.url, "body": self.body}


@dataclass(frozen=True)
class CallableSpec(ExecutorSpec):
    """Invoke a handler registered with an in-process executor."""

    handler: str
    options: Mapping[str, Any] = field(default_factory=dict)

    kind = "callable"

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.kind, "handler": self.handler, "options": dict(self.options)}


@dataclass(frozen=True)
class OpaqueSpec(ExecutorSpec):
    """Any payload of a type the engine does not know about."""

    type_name: str
    payload: Mapping[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type_name, **dict(self.payload)}


# =============================================================================
# Templates
# =============================================================================


@dataclass(frozen=True)
class InputBinding:
    """Value bound to a task input.

    Strings may contain ``{{ reference }}`` templates which are interpolated
    at dispatch time against global parameters and upstream outputs. Any
    other value is passed through literally.
    """

    value: Any

    @property
    def is_template(self) -> bool:
        return isinstance(self.value, str) and "{{" in self.value


@dataclass(frozen=True)
class TaskTemplate:
    """
    Static, reusable step definition.

    Attributes:
        name: Unique task name within the workflow
        dependencies: Names of tasks that must finish first
        when: Optional boolean gate expression
        inputs: Input name to binding
        outputs: Declared output names
        retry_policy: Backoff and retry budget
        executor_spec: Opaque payload for the executor
        timeout: Maximum duration of a single attempt in seconds
        optional: Failure does not fail the run and does not block dependents
    """

    name: str
    dependencies: tuple[str, ...] = ()
    when: str | None = None
    inputs: Mapping[str, InputBinding] = field(default_factory=dict)
    outputs: tuple[str, ...] = ()
    retry_policy: RetryPolicy = RetryPolicy.NONE
    executor_spec: ExecutorSpec | None = None
    timeout: float | None = None
    optional: bool = False

    @property
    def mandatory(self) -> bool:
        return not self.optional

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "name": self.name,
            "dependencies": list(self.dependencies),
            "inputs": {k: b.value for k, b in self.inputs.items()},
            "outputs": list(self.outputs),
            "retry": self.retry_policy.to_dict(),
            "optional": self.optional,
        }
        if self.when is not None:
            data["when"] = self.when
        if self.executor_spec is not None:
            data["executor"] = self.executor_spec.to_dict()
        if self.timeout is not None:
            data["timeout"] = self.timeout
        return data


@dataclass(frozen=True)
class WorkflowDefinition:
    """
    Named set of task templates plus global parameters.

    Use ``pytaxis.dag.load_workflow()`` or ``WorkflowDefinition.validated()``
    to obtain an instance that has passed validation.

    Attributes:
        name: Workflow name
        tasks: Task name to template, in declaration order
        parameters: Global parameter defaults; None marks a required parameter
    """

    name: str
    tasks: Mapping[str, TaskTemplate]
    parameters: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def validated(
        cls,
        name: str,
        tasks: list[TaskTemplate],
        parameters: Mapping[str, Any] | None = None,
    ) -> WorkflowDefinition:
        """Build a definition from templates and validate it.

        Raises:
            ValidationError: If names repeat, dependencies are missing,
                the graph has a cycle, or a reference does not resolve
        """
        from pytaxis.dag.validator import check_unique_names, validate

        check_unique_names([t.name for t in tasks])
        definition = cls(
            name=name,
            tasks={t.name: t for t in tasks},
            parameters=dict(parameters or {}),
        )
        validate(definition)
        return definition

    def __getitem__(self, task_name: str) -> TaskTemplate:
        return self.tasks[task_name]

    def __len__(self) -> int:
        return len(self.tasks)

    def dependents_of(self, task_name: str) -> list[str]:
        """Names of tasks that list `task_name` as a direct dependency."""
        return [t.name for t in self.tasks.values() if task_name in t.dependencies]

    def required_parameters(self) -> list[str]:
        return [name for name, default in self.parameters.items() if default is None]

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "parameters": dict(self.parameters),
            "tasks": [t.to_dict() for t in self.tasks.values()],
        }

    @cached_property
    def definition_hash(self) -> str:
        """Stable content hash (xxh64 hex) of the canonical serialized form."""
        canonical = json.dumps(self.to_dict(), sort_keys=True, default=repr)
        return xxhash.xxh64(canonical.encode("utf-8")).hexdigest()
