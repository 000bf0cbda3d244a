"""Redis-backed run log.

Lets status queries survive a process restart and be served from another
machine.

Data Structures:
- pytaxis:runs (ZSET): run ids, score = created_at milliseconds
- pytaxis:run:{run_id} (HASH): run record fields
- pytaxis:tasks:{run_id} (ZSET): task names, score = created_at milliseconds
- pytaxis:task:{run_id}:{task_name} (HASH): task instance fields

Design: Adapter Pattern
Adapts the Redis key-value store to the RunLog interface.
"""

from __future__ import annotations

import json

try:
    import redis.asyncio as redis
except ImportError:
    raise ImportError("redis-py is required for RedisRunLog. Install with: pip install redis")

from pytaxis.models.instance import Run, TaskInstance
from pytaxis.models.status import RunStatus, TaskState
from pytaxis.storage.base import (
    RunLog,
    StorageError,
    dump_error,
    dump_value,
    from_millis,
    load_error,
    load_value,
    to_millis,
)

KEY_PREFIX = "pytaxis"


class RedisRunLog(RunLog):
    """Redis run log using connection pooling.

    Usage:
        storage = RedisRunLog("redis://localhost:6379")
        await storage.connect()
    """

    def __init__(self, redis_url: str = "redis://localhost:6379", max_connections: int = 16):
        self._redis_url = redis_url
        self._max_connections = max_connections
        self._redis: redis.Redis | None = None

    def __repr__(self) -> str:
        return f"RedisRunLog({self._redis_url})"

    async def connect(self) -> None:
        """Establish Redis connection pool."""
        self._redis = redis.from_url(
            self._redis_url,
            decode_responses=False,  # Values are pickled bytes
            max_connections=self._max_connections,
        )

    async def ping(self) -> bool:
        self._check_connected()
        return bool(await self._redis.ping())

    async def close(self) -> None:
        """Close Redis connection pool."""
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None

    def _check_connected(self) -> None:
        if self._redis is None:
            raise StorageError("Not connected. Call connect() first.")

    @staticmethod
    def _run_key(run_id: str) -> str:
        return f"{KEY_PREFIX}:run:{run_id}"

    @staticmethod
    def _tasks_key(run_id: str) -> str:
        return f"{KEY_PREFIX}:tasks:{run_id}"

    @staticmethod
    def _task_key(run_id: str, task_name: str) -> str:
        return f"{KEY_PREFIX}:task:{run_id}:{task_name}"

    async def save_run(self, run: Run) -> None:
        self._check_connected()
        mapping = {
            "run_id": run.run_id,
            "workflow_name": run.workflow_name,
            "definition_hash": run.definition_hash,
            "parameters": dump_value(run.parameters),
            "status": run.status.value,
            "error": dump_error(run.error) or "",
            "cancel_requested": "1" if run.cancel_requested else "0",
            "created_at": to_millis(run.created_at),
            "started_at": to_millis(run.started_at) or "",
            "finished_at": to_millis(run.finished_at) or "",
            "updated_at": to_millis(run.updated_at),
        }
        async with self._redis.pipeline(transaction=True) as pipe:
            await pipe.hset(self._run_key(run.run_id), mapping=mapping)
            await pipe.zadd(f"{KEY_PREFIX}:runs", {run.run_id: to_millis(run.created_at)})
            await pipe.execute()

    async def get_run(self, run_id: str) -> Run | None:
        self._check_connected()
        data = await self._redis.hgetall(self._run_key(run_id))
        if not data:
            return None
        return self._parse_run(data)

    async def list_runs(
        self, workflow_name: str | None = None, status: RunStatus | None = None
    ) -> list[Run]:
        self._check_connected()
        runs = []
        for run_id in await self._redis.zrange(f"{KEY_PREFIX}:runs", 0, -1):
            run = await self.get_run(run_id.decode())
            if run is None:
                continue
            if workflow_name is not None and run.workflow_name != workflow_name:
                continue
            if status is not None and run.status != status:
                continue
            runs.append(run)
        return runs

    async def save_task_instance(self, instance: TaskInstance) -> None:
        self._check_connected()
        mapping = {
            "run_id": instance.run_id,
            "task_name": instance.task_name,
            "state": instance.state.value,
            "attempt": str(instance.attempt),
            "inputs": dump_value(instance.inputs),
            "outputs": dump_value(instance.outputs),
            "error": dump_error(instance.error) or "",
            "mandatory": "1" if instance.mandatory else "0",
            "backoff_history": json.dumps(instance.backoff_history),
            "created_at": to_millis(instance.created_at),
            "started_at": to_millis(instance.started_at) or "",
            "finished_at": to_millis(instance.finished_at) or "",
            "updated_at": to_millis(instance.updated_at),
        }
        async with self._redis.pipeline(transaction=True) as pipe:
            await pipe.hset(self._task_key(instance.run_id, instance.task_name), mapping=mapping)
            await pipe.zadd(
                self._tasks_key(instance.run_id),
                {instance.task_name: to_millis(instance.created_at)},
            )
            await pipe.execute()

    async def get_task_instances(self, run_id: str) -> list[TaskInstance]:
        self._check_connected()
        instances = []
        for name in await self._redis.zrange(self._tasks_key(run_id), 0, -1):
            data = await self._redis.hgetall(self._task_key(run_id, name.decode()))
            if data:
                instances.append(self._parse_instance(data))
        return instances

    async def reset(self) -> None:
        """Delete all pytaxis:* keys. Other Redis data is untouched."""
        self._check_connected()
        keys = []
        async for key in self._redis.scan_iter(match=f"{KEY_PREFIX}:*"):
            keys.append(key)
        if keys:
            await self._redis.delete(*keys)

    @staticmethod
    def _text(data: dict, field: str) -> str:
        return data[field.encode()].decode()

    def _parse_run(self, data: dict) -> Run:
        return Run(
            run_id=self._text(data, "run_id"),
            workflow_name=self._text(data, "workflow_name"),
            definition_hash=self._text(data, "definition_hash"),
            parameters=load_value(data[b"parameters"]) or {},
            status=RunStatus(self._text(data, "status")),
            error=load_error(data.get(b"error")),
            cancel_requested=data.get(b"cancel_requested") == b"1",
            created_at=from_millis(data.get(b"created_at")),
            started_at=from_millis(data.get(b"started_at")),
            finished_at=from_millis(data.get(b"finished_at")),
            updated_at=from_millis(data.get(b"updated_at")),
        )

    def _parse_instance(self, data: dict) -> TaskInstance:
        backoff = data.get(b"backoff_history")
        return TaskInstance(
            run_id=self._text(data, "run_id"),
            task_name=self._text(data, "task_name"),
            state=TaskState(self._text(data, "state")),
            attempt=int(data[b"attempt"]),
            inputs=load_value(data.get(b"inputs")) or {},
            outputs=load_value(data.get(b"outputs")) or {},
            error=load_error(data.get(b"error")),
            mandatory=data.get(b"mandatory") == b"1",
            backoff_history=json.loads(backoff) if backoff else [],
            created_at=from_millis(data.get(b"created_at")),
            started_at=from_millis(data.get(b"started_at")),
            finished_at=from_millis(data.get(b"finished_at")),
            updated_at=from_millis(data.get(b"updated_at")),
        )
