"""Immutable variable scope passed into every evaluation."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any

from pytaxis.errors import UnresolvedReferenceError

_EMPTY: Mapping[Any, Any] = MappingProxyType({})


def _freeze(mapping: Mapping[Any, Any] | None) -> Mapping[Any, Any]:
    if not mapping:
        return _EMPTY
    return MappingProxyType(dict(mapping))


@dataclass(frozen=True)
class OutputRef:
    """Reference to an output of an upstream task."""

    task_name: str
    param_name: str

    @property
    def path(self) -> str:
        return f"tasks.{self.task_name}.outputs.{self.param_name}"


@dataclass(frozen=True)
class ParamRef:
    """Reference to a global workflow parameter."""

    name: str


def parse_path(path: str) -> OutputRef | ParamRef:
    """Classify a reference path.

    Accepted forms:
        ``name``, ``params.name``, ``workflow.parameters.name``
        ``tasks.<task>.outputs.<name>``,
        ``tasks.<task>.outputs.parameters.<name>``

    Raises:
        UnresolvedReferenceError: If the path has none of these shapes
    """
    parts = path.split(".")
    if len(parts) == 1:
        return ParamRef(parts[0])
    if len(parts) == 2 and parts[0] == "params":
        return ParamRef(parts[1])
    if len(parts) == 3 and parts[:2] == ["workflow", "parameters"]:
        return ParamRef(parts[2])
    if parts[0] == "tasks" and len(parts) >= 4 and parts[2] == "outputs":
        rest = parts[3:]
        if len(rest) == 2 and rest[0] == "parameters":
            rest = rest[1:]
        if len(rest) == 1:
            return OutputRef(parts[1], rest[0])
    raise UnresolvedReferenceError(path, "not a parameter or task output reference")


@dataclass(frozen=True)
class VariableContext:
    """
    Read-only scope for expression evaluation and input resolution.

    Built fresh for each dispatch from the global parameters and the
    outputs bound so far. Never shared mutable state.

    Attributes:
        params: Global parameter values
        outputs: (task_name, param_name) to bound value
        unavailable: Task name to reason, for upstream tasks whose outputs
            will never exist (skipped or failed); used in error messages
    """

    params: Mapping[str, Any] = field(default_factory=lambda: _EMPTY)
    outputs: Mapping[tuple[str, str], Any] = field(default_factory=lambda: _EMPTY)
    unavailable: Mapping[str, str] = field(default_factory=lambda: _EMPTY)

    @classmethod
    def of(
        cls,
        params: Mapping[str, Any] | None = None,
        outputs: Mapping[tuple[str, str], Any] | None = None,
        unavailable: Mapping[str, str] | None = None,
    ) -> VariableContext:
        return cls(_freeze(params), _freeze(outputs), _freeze(unavailable))

    def lookup(self, path: str) -> Any:
        """Value for a reference path.

        Raises:
            UnresolvedReferenceError: If nothing is bound under `path`
        """
        ref = parse_path(path)
        if isinstance(ref, ParamRef):
            if ref.name not in self.params:
                raise UnresolvedReferenceError(path, "no such global parameter")
            return self.params[ref.name]

        key = (ref.task_name, ref.param_name)
        if key in self.outputs:
            return self.outputs[key]
        reason = self.unavailable.get(ref.task_name)
        if reason:
            raise UnresolvedReferenceError(path, f"task '{ref.task_name}' {reason}")
        raise UnresolvedReferenceError(path, "output not bound")
