"""Core data models for workflow orchestration.

Defines the static workflow definition types, per-run execution records,
status enumerations, and retry behavior.

Design: Dependency-Free Models
These types depend only on pytaxis.errors so every other layer can import
them without circular imports.
"""

from pytaxis.models.artifact import ArtifactRef
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
from pytaxis.models.instance import ErrorDetail, Run, RunStatusSnapshot, TaskInstance
from pytaxis.models.retry import RetryableError, RetryPolicy
from pytaxis.models.status import ErrorSeverity, RunStatus, TaskState

__all__ = [
    "ArtifactRef",
    "ExecutorSpec",
    "ContainerSpec",
    "ShellSpec",
    "ApiCallSpec",
    "CallableSpec",
    "OpaqueSpec",
    "InputBinding",
    "TaskTemplate",
    "WorkflowDefinition",
    "ErrorDetail",
    "Run",
    "RunStatusSnapshot",
    "TaskInstance",
    "RetryPolicy",
    "RetryableError",
    "ErrorSeverity",
    "RunStatus",
    "TaskState",
]
