"""SQLite storage engine: connection, schema, transactions."""

import asyncio
import sqlite3
from collections.abc import AsyncIterator, Iterator
from contextlib import asynccontextmanager, contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any

import aiosqlite

from engram.core.errors import StorageError
from engram.core.logging import get_logger
from engram.core.typing import SQLParams

logger = get_logger("memory.engine")


# Python 3.12+ fix: Register datetime adapters explicitly
def _adapt_datetime(dt: datetime) -> str:
    """Convert datetime to ISO format string for SQLite storage."""
    return dt.isoformat()


def _convert_datetime(val: bytes) -> datetime:
    """Convert ISO format string from SQLite to datetime."""
    return datetime.fromisoformat(val.decode())


sqlite3.register_adapter(datetime, _adapt_datetime)
sqlite3.register_converter("DATETIME", _convert_datetime)

TABLES = """
CREATE TABLE IF NOT EXISTS memories (
    id TEXT PRIMARY KEY,
    content TEXT NOT NULL,
    scope TEXT NOT NULL DEFAULT 'global',
    generation INTEGER NOT NULL DEFAULT 0,
    tap_count INTEGER NOT NULL DEFAULT 0,
    review_count INTEGER NOT NULL DEFAULT 0,
    last_tapped_at DATETIME,
    last_reviewed_at DATETIME,
    created_at DATETIME NOT NULL,
    confidence REAL
);

-- Append-only: rows are never updated or deleted
CREATE TABLE IF NOT EXISTS events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    timestamp DATETIME NOT NULL,
    action TEXT NOT NULL,
    memory_id TEXT,  -- not a foreign key, the memory may be gone
    data TEXT  -- JSON object
);
"""

INDEXES = """
CREATE INDEX IF NOT EXISTS idx_memories_scope ON memories(scope);
CREATE INDEX IF NOT EXISTS idx_memories_generation ON memories(generation);
CREATE INDEX IF NOT EXISTS idx_events_timestamp ON events(timestamp);
CREATE INDEX IF NOT EXISTS idx_events_action ON events(action);
CREATE INDEX IF NOT EXISTS idx_events_memory_id ON events(memory_id);
"""

# Columns added after the first schema revision
MEMORY_COLUMNS = {
    "scope": "TEXT NOT NULL DEFAULT 'global'",
    "generation": "INTEGER NOT NULL DEFAULT 0",
    "review_count": "INTEGER NOT NULL DEFAULT 0",
    "last_reviewed_at": "DATETIME",
    "confidence": "REAL",
}

# Early revisions stored unix seconds
TIMESTAMP_COLUMNS = {
    "memories": ("created_at", "last_tapped_at"),
    "events": ("timestamp",),
}


@contextmanager
def storage_errors(operation: str) -> Iterator[None]:
    """Re-raise sqlite failures as StorageError."""
    try:
        yield
    except sqlite3.Error as e:
        logger.error(f"{operation} failed: {e}")
        raise StorageError(f"{operation} failed: {e}") from e


class Predicates:
    """AND-combined WHERE clause with bound parameters.

    Column names come from code, values are always bound.
    """

    def __init__(self) -> None:
        self.clauses: list[str] = []
        self.params: SQLParams = []

    def equals(self, column: str, value: Any) -> "Predicates":
        if value is not None:
            self.clauses.append(f"{column} = ?")
            self.params.append(value)
        return self

    def any_of(self, column: str, values: list[Any] | None) -> "Predicates":
        if values:
            placeholders = ", ".join("?" for _ in values)
            self.clauses.append(f"{column} IN ({placeholders})")
            self.params.extend(values)
        return self

    def contains(self, column: str, substring: str) -> "Predicates":
        """Case-sensitive substring match (no LIKE wildcards)."""
        self.clauses.append(f"instr({column}, ?) > 0")
        self.params.append(substring)
        return self

    def at_least(self, column: str, value: Any) -> "Predicates":
        self.clauses.append(f"{column} >= ?")
        self.params.append(value)
        return self

    @property
    def sql(self) -> str:
        if not self.clauses:
            return ""
        return " WHERE " + " AND ".join(self.clauses)


class StorageEngine:
    """Single SQLite file in WAL mode with a bounded busy-wait.

    The connection runs in autocommit mode; writes go through
    transaction(), which holds the write lock from the first read.
    Tasks sharing the engine take turns: statements and transactions
    run under one asyncio lock, owned by a single task at a time.
    """

    def __init__(self, db_path: Path, busy_timeout: float = 5.0):
        self.db_path = db_path
        self.busy_timeout = busy_timeout
        self._conn: aiosqlite.Connection | None = None
        self._lock = asyncio.Lock()
        self._owner: asyncio.Task | None = None

    async def connect(self) -> None:
        """Open the database, enable WAL and create the schema if missing."""
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError(f"Cannot create data directory {self.db_path.parent}: {e}") from e

        with storage_errors(f"Opening {self.db_path}"):
            conn = await aiosqlite.connect(
                self.db_path,
                timeout=self.busy_timeout,
                isolation_level=None,
                detect_types=sqlite3.PARSE_DECLTYPES,
            )
            try:
                conn.row_factory = aiosqlite.Row
                await conn.execute("PRAGMA journal_mode=WAL")
                await conn.execute(f"PRAGMA busy_timeout = {int(self.busy_timeout * 1000)}")
                await conn.executescript(TABLES)
                await self._migrate(conn)
                await conn.executescript(INDEXES)
            except sqlite3.Error:
                await conn.close()
                raise
        self._conn = conn
        logger.info(f"Connected to memory store: {self.db_path}")

    async def _migrate(self, conn: aiosqlite.Connection) -> None:
        """Bring databases created by earlier revisions up to the current schema."""
        async with conn.execute("PRAGMA table_info(memories)") as cursor:
            existing = {row["name"] async for row in cursor}

        for column, ddl in MEMORY_COLUMNS.items():
            if column not in existing:
                await conn.execute(f"ALTER TABLE memories ADD COLUMN {column} {ddl}")
                logger.info(f"Migrated memories: added column {column}")

        for table, columns in TIMESTAMP_COLUMNS.items():
            for column in columns:
                await conn.execute(
                    f"UPDATE {table} "
                    f"SET {column} = strftime('%Y-%m-%dT%H:%M:%S', {column}, 'unixepoch', 'localtime') "
                    f"WHERE typeof({column}) = 'integer'"
                )
                # Later revisions stored 'YYYY-MM-DD HH:MM:SS+00:00'
                await conn.execute(
                    f"UPDATE {table} "
                    f"SET {column} = strftime('%Y-%m-%dT%H:%M:%S', {column}, 'localtime') "
                    f"WHERE typeof({column}) = 'text' "
                    f"AND (substr({column}, 11, 1) = ' ' "
                    f"OR {column} GLOB '*[+-][0-9][0-9]:[0-9][0-9]' "
                    f"OR {column} GLOB '*Z')"
                )

    async def close(self) -> None:
        """Close database connection."""
        if self._conn:
            await self._conn.close()
            self._conn = None

    @property
    def conn(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise RuntimeError("Storage engine not connected. Call connect() first.")
        return self._conn

    @asynccontextmanager
    async def exclusive(self) -> AsyncIterator[None]:
        """Keep other tasks off the connection for the block.

        Re-entrant within the owning task.
        """
        task = asyncio.current_task()
        if task is not None and self._owner is task:
            yield
            return
        async with self._lock:
            self._owner = task
            try:
                yield
            finally:
                self._owner = None

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """Run a block atomically. Rolls back on any error.

        Nested use in the same task joins the enclosing transaction,
        which alone commits. Other tasks wait until it finishes.
        """
        conn = self.conn
        async with self.exclusive():
            if conn.in_transaction:
                yield conn
                return
            with storage_errors("Beginning transaction"):
                await conn.execute("BEGIN IMMEDIATE")
            try:
                with storage_errors("Transaction"):
                    yield conn
            except BaseException:
                await self._rollback(conn)
                raise
            try:
                with storage_errors("Commit"):
                    await conn.execute("COMMIT")
            except StorageError:
                await self._rollback(conn)
                raise

    async def _rollback(self, conn: aiosqlite.Connection) -> None:
        if conn.in_transaction:
            with storage_errors("Rollback"):
                await conn.execute("ROLLBACK")

    async def execute(self, sql: str, params: SQLParams | tuple = ()) -> int:
        """Execute a statement, return the number of affected rows."""
        async with self.exclusive():
            with storage_errors("Statement"):
                async with self.conn.execute(sql, params) as cursor:
                    return cursor.rowcount

    async def insert(self, sql: str, params: SQLParams | tuple = ()) -> int:
        """Execute an INSERT, return the new rowid."""
        async with self.exclusive():
            with storage_errors("Insert"):
                async with self.conn.execute(sql, params) as cursor:
                    return cursor.lastrowid or 0

    async def fetchone(self, sql: str, params: SQLParams | tuple = ()) -> aiosqlite.Row | None:
        async with self.exclusive():
            with storage_errors("Query"):
                async with self.conn.execute(sql, params) as cursor:
                    return await cursor.fetchone()

    async def fetchall(self, sql: str, params: SQLParams | tuple = ()) -> list[aiosqlite.Row]:
        async with self.exclusive():
            with storage_errors("Query"):
                async with self.conn.execute(sql, params) as cursor:
                    return list(await cursor.fetchall())
