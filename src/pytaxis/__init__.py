"""
pytaxis: DAG workflow orchestration for asyncio.

Design Pattern: Façade Pattern
This module re-exports the pieces most callers need, hiding how the
validator, scheduler, retry controller and storage fit together.

Example:
    ```python
    import asyncio
    from pytaxis import CallableExecutor, RunCoordinator, load_workflow

    executor = CallableExecutor()

    @executor.handler("build")
    async def build(ctx):
        return {"image": f"registry/app:{ctx.inputs['version']}"}

    @executor.handler("deploy")
    async def deploy(ctx):
        print("deploying", ctx.inputs["image"])

    definition = load_workflow({
        "name": "release",
        "parameters": {"version": None, "env": "staging"},
        "tasks": [
            {"name": "build", "inputs": {"version": "{{version}}"}, "outputs": ["image"]},
            {
                "name": "deploy",
                "dependencies": ["build"],
                "when": "{{env}} == 'production'",
                "inputs": {"image": "{{tasks.build.outputs.image}}"},
            },
        ],
    })

    async def main():
        coordinator = RunCoordinator(executor)
        handle = await coordinator.submit(definition, {"version": "1.4", "env": "production"})
        snapshot = await handle.wait()
        print(snapshot.status, snapshot.states())

    asyncio.run(main())
    ```
"""

from pytaxis.clock import Clock, ManualClock, SystemClock
from pytaxis.config import EngineConfig, SkipPolicy
from pytaxis.coordinator import RunCoordinator, RunHandle
from pytaxis.dag import load_workflow, load_workflow_json, validate
from pytaxis.errors import (
    ConfigError,
    DuplicateOutputError,
    ErrorKind,
    EvalError,
    ExecutionError,
    ExpressionSyntaxError,
    ExpressionTypeError,
    InvalidTransitionError,
    InvariantViolation,
    PytaxisError,
    RunNotFoundError,
    TaskTimeoutError,
    UnresolvedReferenceError,
    ValidationError,
)
from pytaxis.events import CollectingSink, EventBus, LoggingSink, StateChangeEvent
from pytaxis.executor import CallableExecutor, Executor, TaskContext, TaskResult
from pytaxis.models import (
    ApiCallSpec,
    ArtifactRef,
    CallableSpec,
    ContainerSpec,
    ErrorDetail,
    ErrorSeverity,
    InputBinding,
    RetryableError,
    RetryPolicy,
    Run,
    RunStatus,
    RunStatusSnapshot,
    ShellSpec,
    TaskInstance,
    TaskState,
    TaskTemplate,
    WorkflowDefinition,
)
from pytaxis.storage import InMemoryRunLog, RunLog, SqliteRunLog, StorageError
from pytaxis.store import InMemoryArtifactTransfer, LocalFileArtifactTransfer, ParameterStore

__version__ = "0.1.0"

__all__ = [
    # Coordination
    "RunCoordinator",
    "RunHandle",
    "EngineConfig",
    "SkipPolicy",
    # Definitions
    "load_workflow",
    "load_workflow_json",
    "validate",
    "WorkflowDefinition",
    "TaskTemplate",
    "InputBinding",
    "RetryPolicy",
    "RetryableError",
    "ContainerSpec",
    "ShellSpec",
    "ApiCallSpec",
    "CallableSpec",
    # Runs
    "Run",
    "RunStatus",
    "RunStatusSnapshot",
    "TaskInstance",
    "TaskState",
    "ErrorDetail",
    "ErrorSeverity",
    # Collaborators
    "Executor",
    "CallableExecutor",
    "TaskContext",
    "TaskResult",
    "RunLog",
    "InMemoryRunLog",
    "SqliteRunLog",
    "EventBus",
    "StateChangeEvent",
    "LoggingSink",
    "CollectingSink",
    "ArtifactRef",
    "ParameterStore",
    "InMemoryArtifactTransfer",
    "LocalFileArtifactTransfer",
    "Clock",
    "SystemClock",
    "ManualClock",
    # Errors
    "PytaxisError",
    "ErrorKind",
    "ValidationError",
    "ConfigError",
    "EvalError",
    "ExpressionSyntaxError",
    "ExpressionTypeError",
    "UnresolvedReferenceError",
    "ExecutionError",
    "TaskTimeoutError",
    "InvariantViolation",
    "DuplicateOutputError",
    "InvalidTransitionError",
    "RunNotFoundError",
    "StorageError",
]
