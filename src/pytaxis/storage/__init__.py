"""Storage backends for run and task-instance records.

Provides multiple storage implementations behind a common interface:
    - RunLog: Abstract interface
    - InMemoryRunLog: In-memory storage for tests
    - SqliteRunLog: SQLite-backed storage
    - RedisRunLog: Redis-backed storage

Design: Adapter Pattern + Dependency Inversion
    The coordinator and scheduler depend on RunLog, not on concrete
    backends, so backends can be swapped freely.
"""

from pytaxis.storage.base import RunLog, StorageError

# Backends are imported lazily so that aiosqlite and redis are only
# loaded when the corresponding backend is used.


def __getattr__(name: str):
    if name == "InMemoryRunLog":
        from pytaxis.storage.memory import InMemoryRunLog

        return InMemoryRunLog
    elif name == "SqliteRunLog":
        from pytaxis.storage.sqlite import SqliteRunLog

        return SqliteRunLog
    elif name == "RedisRunLog":
        from pytaxis.storage.redis import RedisRunLog

        return RedisRunLog
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


__all__ = [
    "RunLog",
    "StorageError",
    "InMemoryRunLog",
    "SqliteRunLog",
    "RedisRunLog",
]
