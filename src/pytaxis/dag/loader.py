"""Build WorkflowDefinitions from their serialized (dict/JSON) form.

A submission surface decodes whatever syntax it accepts into plain Python
data and hands it to `load_workflow()`. Expected shape::

    {
        "name": "release",
        "parameters": {"env": "staging", "version": null},
        "tasks": [
            {
                "name": "build",
                "outputs": ["image"],
                "executor": {"type": "container", "image": "builder:1"},
                "retry": {"limit": 3, "backoff": {"base": 1, "factor": 2, "max": 30}},
                "timeout": 600
            },
            {
                "name": "deploy",
                "dependencies": ["build"],
                "when": "{{env}} == 'staging'",
                "inputs": {"image": "{{tasks.build.outputs.image}}"}
            }
        ]
    }

`parameters` may also be a list of ``{"name": ..., "default": ...}``.
`depends_on` and `needs` are accepted as aliases of `dependencies`.
"""

from __future__ import annotations

import json
from collections.abc import Mapping
from typing import Any

from pytaxis.dag.validator import check_unique_names, validate
from pytaxis.errors import ValidationError
from pytaxis.models.definition import (
    ApiCallSpec,
    CallableSpec,
    ContainerSpec,
    ExecutorSpec,
    InputBinding,
    OpaqueSpec,
    ShellSpec,
    TaskTemplate,
    WorkflowDefinition,
)
from pytaxis.models.retry import RetryPolicy

_DEPENDENCY_KEYS = ("dependencies", "depends_on", "needs")


def load_workflow(data: Mapping[str, Any]) -> WorkflowDefinition:
    """Load and validate a workflow definition.

    Args:
        data: Serialized definition (see module docstring)

    Returns:
        A validated, immutable WorkflowDefinition

    Raises:
        ValidationError: If the data is malformed or the graph is invalid
    """
    if not isinstance(data, Mapping):
        raise ValidationError(f"workflow definition must be a mapping, got {type(data).__name__}")

    name = data.get("name")
    if not isinstance(name, str) or not name:
        raise ValidationError("workflow definition requires a non-empty 'name'")

    parameters = _load_parameters(data.get("parameters"))

    raw_tasks = data.get("tasks")
    if not isinstance(raw_tasks, list):
        raise ValidationError("workflow definition requires a 'tasks' list")

    problems: list[str] = []
    templates: list[TaskTemplate] = []
    for index, raw in enumerate(raw_tasks):
        try:
            templates.append(_load_task(raw, index))
        except ValidationError as e:
            problems.extend(e.problems)
    if problems:
        raise ValidationError(problems)

    check_unique_names([t.name for t in templates])
    definition = WorkflowDefinition(
        name=name,
        tasks={t.name: t for t in templates},
        parameters=parameters,
    )
    validate(definition)
    return definition


def load_workflow_json(text: str) -> WorkflowDefinition:
    """Load a workflow definition from JSON text."""
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise ValidationError(f"invalid workflow JSON: {e}") from e
    return load_workflow(data)


def _load_parameters(raw: Any) -> dict[str, Any]:
    if raw is None:
        return {}
    if isinstance(raw, Mapping):
        return dict(raw)
    if isinstance(raw, list):
        params = {}
        for entry in raw:
            if not isinstance(entry, Mapping) or "name" not in entry:
                raise ValidationError(f"invalid parameter declaration {entry!r}")
            if entry["name"] in params:
                raise ValidationError(f"duplicate parameter '{entry['name']}'")
            params[entry["name"]] = entry.get("default")
        return params
    raise ValidationError("'parameters' must be a mapping or a list")


def _load_task(raw: Any, index: int) -> TaskTemplate:
    if not isinstance(raw, Mapping):
        raise ValidationError(f"task #{index} must be a mapping")

    name = raw.get("name")
    if not isinstance(name, str) or not name:
        raise ValidationError(f"task #{index} requires a non-empty 'name'")

    dependencies: list[str] = []
    for key in _DEPENDENCY_KEYS:
        value = raw.get(key)
        if value is None:
            continue
        if isinstance(value, str):
            value = [value]
        if not isinstance(value, list) or not all(isinstance(d, str) for d in value):
            raise ValidationError(f"task '{name}': '{key}' must be a list of task names")
        dependencies.extend(d for d in value if d not in dependencies)

    when = raw.get("when")
    if when is not None and not isinstance(when, str):
        raise ValidationError(f"task '{name}': 'when' must be a string expression")

    inputs = raw.get("inputs") or {}
    if not isinstance(inputs, Mapping):
        raise ValidationError(f"task '{name}': 'inputs' must be a mapping")

    outputs = raw.get("outputs") or []
    if isinstance(outputs, Mapping):
        outputs = list(outputs)
    if not isinstance(outputs, list) or not all(isinstance(o, str) for o in outputs):
        raise ValidationError(f"task '{name}': 'outputs' must be a list of names")

    timeout = raw.get("timeout")
    if timeout is not None:
        try:
            timeout = float(timeout)
        except (TypeError, ValueError):
            raise ValidationError(f"task '{name}': 'timeout' must be a number") from None

    try:
        retry = RetryPolicy.from_dict(raw.get("retry"))
    except ValidationError as e:
        raise ValidationError([f"task '{name}': {p}" for p in e.problems]) from e

    return TaskTemplate(
        name=name,
        dependencies=tuple(dependencies),
        when=when,
        inputs={key: InputBinding(value) for key, value in inputs.items()},
        outputs=tuple(outputs),
        retry_policy=retry,
        executor_spec=load_executor_spec(raw.get("executor"), name),
        timeout=timeout,
        optional=bool(raw.get("optional", False)),
    )


def load_executor_spec(raw: Any, task_name: str = "") -> ExecutorSpec | None:
    """Build the executor payload variant named by the `type` key."""
    if raw is None:
        return None
    if isinstance(raw, ExecutorSpec):
        return raw
    if not isinstance(raw, Mapping) or not isinstance(raw.get("type"), str):
        raise ValidationError(f"task '{task_name}': 'executor' must be a mapping with a 'type'")

    kind = raw["type"]
    try:
        if kind == ContainerSpec.kind:
            return ContainerSpec(
                image=raw["image"],
                command=tuple(raw.get("command", ())),
                env=dict(raw.get("env", {})),
            )
        if kind == ShellSpec.kind:
            return ShellSpec(script=raw["script"], env=dict(raw.get("env", {})))
        if kind == ApiCallSpec.kind:
            return ApiCallSpec(method=raw.get("method", "POST"), url=raw["url"], body=raw.get("body"))
        if kind == CallableSpec.kind:
            return CallableSpec(handler=raw["handler"], options=dict(raw.get("options", {})))
    except KeyError as e:
        raise ValidationError(f"task '{task_name}': {kind} executor requires {e}") from None

    payload = {k: v for k, v in raw.items() if k != "type"}
    return OpaqueSpec(type_name=kind, payload=payload)
