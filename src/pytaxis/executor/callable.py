"""In-process executor that runs registered async handlers.

Usage:
    executor = CallableExecutor()

    @executor.handler("build")
    async def build(ctx: TaskContext) -> dict:
        return {"image": f"registry/app:{ctx.inputs['version']}"}

Handlers are looked up by the `handler` field of a CallableSpec, or by the
task name when the template carries no spec. A handler returns the outputs
mapping (or None for no outputs), or a TaskResult for full control.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable, Mapping
from typing import Any

from pytaxis.errors import ExecutionError, ErrorKind
from pytaxis.executor.base import TaskContext, TaskResult
from pytaxis.models.definition import CallableSpec, ExecutorSpec

logger = logging.getLogger(__name__)

Handler = Callable[[TaskContext], Awaitable[Any]]


class CallableExecutor:
    """Executor backed by a registry of async callables."""

    def __init__(self) -> None:
        self._handlers: dict[str, Handler] = {}
        self._running: dict[tuple[str, str], asyncio.Task] = {}
        self.cancelled: list[tuple[str, str]] = []

    def __len__(self) -> int:
        return len(self._handlers)

    def __contains__(self, name: str) -> bool:
        return name in self._handlers

    def register(self, name: str, handler: Handler) -> None:
        """Register `handler` under `name`, replacing any previous one."""
        if not inspect.iscoroutinefunction(handler):
            raise TypeError(f"handler '{name}' must be an async function")
        if name in self._handlers:
            logger.debug(f"Replacing handler '{name}'")
        self._handlers[name] = handler

    def handler(self, name: str) -> Callable[[Handler], Handler]:
        """Decorator form of register()."""

        def decorator(fn: Handler) -> Handler:
            self.register(name, fn)
            return fn

        return decorator

    def _lookup(self, spec: ExecutorSpec | None, task_name: str) -> Handler | None:
        if isinstance(spec, CallableSpec):
            return self._handlers.get(spec.handler)
        return self._handlers.get(task_name)

    async def dispatch(
        self,
        spec: ExecutorSpec | None,
        inputs: Mapping[str, Any],
        context: TaskContext,
    ) -> TaskResult:
        fn = self._lookup(spec, context.task_name)
        if fn is None:
            name = spec.handler if isinstance(spec, CallableSpec) else context.task_name
            return TaskResult.failure(f"no handler registered for '{name}'", retryable=False)

        key = (context.run_id, context.task_name)
        self._running[key] = asyncio.current_task()
        try:
            result = await fn(context)
        except ExecutionError as e:
            return TaskResult.failure(str(e), retryable=e.is_retryable(), error_kind=e.error_kind)
        except Exception as e:
            # Errors are retryable unless they say otherwise
            retryable = e.is_retryable() if hasattr(e, "is_retryable") else True
            logger.debug(
                f"Handler for task '{context.task_name}' raised {type(e).__name__}: {e} "
                f"(retryable={retryable})"
            )
            return TaskResult.failure(
                f"{type(e).__name__}: {e}",
                retryable=retryable,
                error_kind=ErrorKind.EXECUTION.value,
            )
        finally:
            self._running.pop(key, None)

        if isinstance(result, TaskResult):
            return result
        if result is None:
            return TaskResult.success()
        if isinstance(result, Mapping):
            return TaskResult.success(dict(result))
        return TaskResult.failure(
            f"handler for task '{context.task_name}' returned {type(result).__name__}, "
            "expected a mapping of outputs",
            retryable=False,
        )

    async def cancel(self, run_id: str, task_name: str) -> None:
        """Record the cancel request. The scheduler cancels the dispatch itself."""
        self.cancelled.append((run_id, task_name))
        if (run_id, task_name) in self._running:
            logger.debug(f"Cancel requested for running task '{task_name}' of run {run_id}")
