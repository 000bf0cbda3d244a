"""SQLite-backed storage implementation.

Design Pattern: Adapter Pattern
SqliteRunLog adapts a SQLite database to the RunLog interface.

Implementation details:
- aiosqlite for async operations
- WAL mode for concurrent reads
- Upserts keyed by run_id and (run_id, task_name)
- Values pickled into BLOB columns, timestamps as INTEGER milliseconds
"""

from __future__ import annotations

import asyncio
import json
from pathlib import Path

import aiosqlite

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

_RUN_COLUMNS = (
    "run_id, workflow_name, definition_hash, parameters, status, error, "
    "cancel_requested, created_at, started_at, finished_at, updated_at"
)

_TASK_COLUMNS = (
    "run_id, task_name, state, attempt, inputs, outputs, error, mandatory, "
    "backoff_history, created_at, started_at, finished_at, updated_at"
)


class SqliteRunLog(RunLog):
    """SQLite-backed durable storage.

    After __init__, the instance is not yet usable. Call connect() first.

    Usage:
        storage = SqliteRunLog("runs.db")
        await storage.connect()
        try:
            coordinator = RunCoordinator(executor, storage=storage)
            ...
        finally:
            await storage.close()
    """

    def __init__(self, db_path: str):
        self.db_path = db_path
        self._connection: aiosqlite.Connection | None = None
        self._lock = asyncio.Lock()  # Serialize access to shared connection

    @classmethod
    async def in_memory(cls) -> SqliteRunLog:
        """
        Create an in-memory SQLite storage for testing.

        Example:
            storage = await SqliteRunLog.in_memory()
            # Ready to use immediately
        """
        instance = cls(":memory:")
        await instance.connect()
        return instance

    def __repr__(self) -> str:
        if self.db_path == ":memory:":
            return "SqliteRunLog(in-memory)"
        return f"SqliteRunLog({self.db_path})"

    async def connect(self) -> None:
        """Open database connection and initialize schema."""
        if self._connection is not None:
            return

        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        self._connection = await aiosqlite.connect(
            self.db_path,
            timeout=5.0,
            isolation_level=None,  # Autocommit mode
        )

        # In-memory databases report "memory" and don't support WAL
        cursor = await self._connection.execute("PRAGMA journal_mode=WAL")
        result = await cursor.fetchone()
        await cursor.close()
        if result:
            mode = result[0].upper()
            if mode not in ("WAL", "MEMORY"):
                raise StorageError(f"Failed to enable WAL mode, got: {result[0]}")

        await self._connection.execute("PRAGMA synchronous=NORMAL")
        await self._connection.execute("PRAGMA busy_timeout=5000")
        await self._create_schema()
        await self._connection.commit()

    async def _create_schema(self) -> None:
        await self._connection.execute("""
            CREATE TABLE IF NOT EXISTS runs (
                run_id TEXT PRIMARY KEY,
                workflow_name TEXT NOT NULL,
                definition_hash TEXT NOT NULL,
                parameters BLOB,
                status TEXT CHECK( status IN (
                    'PENDING','RUNNING','SUCCEEDED','FAILED','CANCELLED','ERRORED'
                ) ) NOT NULL,
                error TEXT,
                cancel_requested INTEGER NOT NULL DEFAULT 0,
                created_at INTEGER NOT NULL,
                started_at INTEGER,
                finished_at INTEGER,
                updated_at INTEGER NOT NULL
            )
        """)

        await self._connection.execute("""
            CREATE INDEX IF NOT EXISTS idx_runs_workflow
            ON runs(workflow_name, created_at)
        """)

        await self._connection.execute("""
            CREATE TABLE IF NOT EXISTS task_instances (
                run_id TEXT NOT NULL,
                task_name TEXT NOT NULL,
                state TEXT NOT NULL,
                attempt INTEGER NOT NULL DEFAULT 0,
                inputs BLOB,
                outputs BLOB,
                error TEXT,
                mandatory INTEGER NOT NULL DEFAULT 1,
                backoff_history TEXT,
                created_at INTEGER NOT NULL,
                started_at INTEGER,
                finished_at INTEGER,
                updated_at INTEGER NOT NULL,
                PRIMARY KEY (run_id, task_name)
            )
        """)

    async def save_run(self, run: Run) -> None:
        self._check_connected()
        async with self._lock:
            await self._connection.execute(
                f"""
                INSERT INTO runs ({_RUN_COLUMNS})
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(run_id) DO UPDATE SET
                    parameters = excluded.parameters,
                    status = excluded.status,
                    error = excluded.error,
                    cancel_requested = excluded.cancel_requested,
                    started_at = excluded.started_at,
                    finished_at = excluded.finished_at,
                    updated_at = excluded.updated_at
            """,
                (
                    run.run_id,
                    run.workflow_name,
                    run.definition_hash,
                    dump_value(run.parameters),
                    run.status.value,
                    dump_error(run.error),
                    1 if run.cancel_requested else 0,
                    to_millis(run.created_at),
                    to_millis(run.started_at),
                    to_millis(run.finished_at),
                    to_millis(run.updated_at),
                ),
            )
            await self._connection.commit()

    async def get_run(self, run_id: str) -> Run | None:
        """Returns None when not found (not an error condition)."""
        self._check_connected()
        async with self._lock:
            cursor = await self._connection.execute(
                f"SELECT {_RUN_COLUMNS} FROM runs WHERE run_id = ?", (run_id,)
            )
            row = await cursor.fetchone()
            await cursor.close()
        return self._row_to_run(row) if row is not None else None

    async def list_runs(
        self, workflow_name: str | None = None, status: RunStatus | None = None
    ) -> list[Run]:
        self._check_connected()
        clauses, args = [], []
        if workflow_name is not None:
            clauses.append("workflow_name = ?")
            args.append(workflow_name)
        if status is not None:
            clauses.append("status = ?")
            args.append(status.value)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        async with self._lock:
            cursor = await self._connection.execute(
                f"SELECT {_RUN_COLUMNS} FROM runs {where} ORDER BY created_at, rowid",
                tuple(args),
            )
            rows = await cursor.fetchall()
            await cursor.close()
        return [self._row_to_run(row) for row in rows]

    async def save_task_instance(self, instance: TaskInstance) -> None:
        self._check_connected()
        async with self._lock:
            await self._connection.execute(
                f"""
                INSERT INTO task_instances ({_TASK_COLUMNS})
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(run_id, task_name) DO UPDATE SET
                    state = excluded.state,
                    attempt = excluded.attempt,
                    inputs = excluded.inputs,
                    outputs = excluded.outputs,
                    error = excluded.error,
                    backoff_history = excluded.backoff_history,
                    started_at = excluded.started_at,
                    finished_at = excluded.finished_at,
                    updated_at = excluded.updated_at
            """,
                (
                    instance.run_id,
                    instance.task_name,
                    instance.state.value,
                    instance.attempt,
                    dump_value(instance.inputs),
                    dump_value(instance.outputs),
                    dump_error(instance.error),
                    1 if instance.mandatory else 0,
                    json.dumps(instance.backoff_history),
                    to_millis(instance.created_at),
                    to_millis(instance.started_at),
                    to_millis(instance.finished_at),
                    to_millis(instance.updated_at),
                ),
            )
            await self._connection.commit()

    async def get_task_instances(self, run_id: str) -> list[TaskInstance]:
        self._check_connected()
        async with self._lock:
            cursor = await self._connection.execute(
                f"""
                SELECT {_TASK_COLUMNS} FROM task_instances
                WHERE run_id = ?
                ORDER BY created_at, rowid
            """,
                (run_id,),
            )
            rows = await cursor.fetchall()
            await cursor.close()
        return [self._row_to_instance(row) for row in rows]

    async def reset(self) -> None:
        """Clear all data. After reset, storage is empty but functional."""
        self._check_connected()
        async with self._lock:
            await self._connection.execute("DELETE FROM task_instances")
            await self._connection.execute("DELETE FROM runs")
            await self._connection.commit()

    async def close(self) -> None:
        if self._connection is not None:
            await self._connection.close()
            self._connection = None

    def _check_connected(self) -> None:
        if self._connection is None:
            raise StorageError("Not connected. Call connect() first.")

    @staticmethod
    def _row_to_run(row: tuple) -> Run:
        """Row format matches _RUN_COLUMNS."""
        return Run(
            run_id=row[0],
            workflow_name=row[1],
            definition_hash=row[2],
            parameters=load_value(row[3]) or {},
            status=RunStatus(row[4]),
            error=load_error(row[5]),
            cancel_requested=bool(row[6]),
            created_at=from_millis(row[7]),
            started_at=from_millis(row[8]),
            finished_at=from_millis(row[9]),
            updated_at=from_millis(row[10]),
        )

    @staticmethod
    def _row_to_instance(row: tuple) -> TaskInstance:
        """Row format matches _TASK_COLUMNS."""
        return TaskInstance(
            run_id=row[0],
            task_name=row[1],
            state=TaskState(row[2]),
            attempt=row[3],
            inputs=load_value(row[4]) or {},
            outputs=load_value(row[5]) or {},
            error=load_error(row[6]),
            mandatory=bool(row[7]),
            backoff_history=json.loads(row[8]) if row[8] else [],
            created_at=from_millis(row[9]),
            started_at=from_millis(row[10]),
            finished_at=from_millis(row[11]),
            updated_at=from_millis(row[12]),
        )
