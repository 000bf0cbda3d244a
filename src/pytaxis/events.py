"""State change notifications.

The scheduler publishes a StateChangeEvent on every task transition.
Publishing never blocks and never fails: events go into a bounded queue
that a background task drains into the registered sinks. When the queue
is full the event is dropped with a warning. Sink errors are logged and
do not reach the scheduler.

Usage:
    sink = CollectingSink()
    bus = EventBus([sink, LoggingSink()])
    coordinator = RunCoordinator(executor, events=bus)
    ...
    await bus.flush()
    sink.states_of(run_id, "deploy")[-2:]  # [RUNNING, SUCCEEDED]
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Protocol, runtime_checkable

from pytaxis.models.instance import utcnow
from pytaxis.models.status import TaskState

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StateChangeEvent:
    run_id: str
    task_name: str
    old_state: TaskState
    new_state: TaskState
    timestamp: datetime = field(default_factory=utcnow)

    def __str__(self) -> str:
        return (
            f"[{self.run_id}] {self.task_name}: "
            f"{self.old_state.value} -> {self.new_state.value}"
        )


@runtime_checkable
class EventSink(Protocol):
    async def handle(self, event: StateChangeEvent) -> None: ...


class LoggingSink:
    """Writes every event to a logger."""

    def __init__(self, log: logging.Logger | None = None, level: int = logging.INFO):
        self._log = log or logger
        self._level = level

    async def handle(self, event: StateChangeEvent) -> None:
        self._log.log(self._level, str(event))


class CollectingSink:
    """Keeps every event in memory. Intended for tests and debugging."""

    def __init__(self) -> None:
        self.events: list[StateChangeEvent] = []

    def __len__(self) -> int:
        return len(self.events)

    async def handle(self, event: StateChangeEvent) -> None:
        self.events.append(event)

    def for_run(self, run_id: str) -> list[StateChangeEvent]:
        return [e for e in self.events if e.run_id == run_id]

    def states_of(self, run_id: str, task_name: str) -> list[TaskState]:
        """Successive states entered by one task instance."""
        return [
            e.new_state for e in self.events if e.run_id == run_id and e.task_name == task_name
        ]

    def clear(self) -> None:
        self.events.clear()


class EventBus:
    """
    Fan-out of state change events to sinks.

    Attributes:
        dropped: Number of events discarded because the queue was full
    """

    def __init__(self, sinks: Iterable[EventSink] | None = None, maxsize: int = 1000):
        self._sinks: list[EventSink] = list(sinks or [])
        self._queue: asyncio.Queue[StateChangeEvent] = asyncio.Queue(maxsize=maxsize)
        self._drain_task: asyncio.Task | None = None
        self.dropped = 0

    def __repr__(self) -> str:
        return f"EventBus(sinks={len(self._sinks)}, queued={self._queue.qsize()})"

    def add_sink(self, sink: EventSink) -> None:
        self._sinks.append(sink)

    def publish(self, event: StateChangeEvent) -> None:
        """Queue an event for delivery. Never blocks."""
        if self._drain_task is None or self._drain_task.done():
            self._drain_task = asyncio.get_running_loop().create_task(self._drain())
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning(f"Event queue full, dropping event: {event}")

    async def _drain(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                for sink in self._sinks:
                    try:
                        await sink.handle(event)
                    except Exception as e:
                        logger.error(f"Event sink {type(sink).__name__} failed on {event}: {e}")
            finally:
                self._queue.task_done()

    async def flush(self) -> None:
        """Wait until every queued event has been delivered."""
        if self._drain_task is not None and not self._drain_task.done():
            await self._queue.join()

    async def close(self) -> None:
        """Deliver queued events, then stop the background task."""
        await self.flush()
        if self._drain_task is not None and not self._drain_task.done():
            self._drain_task.cancel()
            try:
                await self._drain_task
            except asyncio.CancelledError:
                pass
        self._drain_task = None
