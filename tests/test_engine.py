"""Tests for the SQLite storage engine."""

import asyncio
import sqlite3
import time
from datetime import datetime, timezone
from pathlib import Path

import pytest

from engram.core.errors import StorageError
from engram.memory.engine import Predicates, StorageEngine
from engram.memory.ledger import EventLedger
from engram.memory.store import SQLiteMemoryStore


@pytest.fixture
async def engine(tmp_path: Path):
    """Create a temporary storage engine."""
    engine = StorageEngine(tmp_path / "data" / "engram.db")
    await engine.connect()
    yield engine
    await engine.close()


async def _count(engine: StorageEngine, table: str) -> int:
    row = await engine.fetchone(f"SELECT COUNT(*) FROM {table}")
    return row[0]


@pytest.mark.asyncio
async def test_connect_creates_parent_directory(engine: StorageEngine):
    """Connecting creates the data directory and the file."""
    assert engine.db_path.parent.is_dir()
    assert engine.db_path.exists()


@pytest.mark.asyncio
async def test_wal_and_busy_timeout(engine: StorageEngine):
    """WAL journal and a 5s busy-wait are configured."""
    row = await engine.fetchone("PRAGMA journal_mode")
    assert row[0].lower() == "wal"
    row = await engine.fetchone("PRAGMA busy_timeout")
    assert row[0] == 5000


@pytest.mark.asyncio
async def test_schema_created(engine: StorageEngine):
    """Tables and indexes exist after connect."""
    rows = await engine.fetchall("SELECT name FROM sqlite_master WHERE type IN ('table', 'index')")
    names = {row["name"] for row in rows}
    assert {"memories", "events"} <= names
    assert {
        "idx_events_timestamp",
        "idx_events_action",
        "idx_events_memory_id",
        "idx_memories_scope",
        "idx_memories_generation",
    } <= names


@pytest.mark.asyncio
async def test_schema_init_is_idempotent(tmp_path: Path):
    """Opening the same file repeatedly keeps existing data."""
    db_path = tmp_path / "engram.db"
    first = StorageEngine(db_path)
    await first.connect()
    await first.execute(
        "INSERT INTO events (timestamp, action) VALUES ('2026-01-01T00:00:00', 'ADD')"
    )
    await first.close()

    second = StorageEngine(db_path)
    await second.connect()
    assert await _count(second, "events") == 1
    await second.close()


def test_not_connected_raises(tmp_path: Path):
    """Using the engine before connect() is a programming error."""
    engine = StorageEngine(tmp_path / "engram.db")
    with pytest.raises(RuntimeError):
        engine.conn


@pytest.mark.asyncio
async def test_open_failure_is_storage_error(tmp_path: Path):
    """A path that cannot be opened as a database raises StorageError."""
    directory = tmp_path / "taken"
    directory.mkdir()
    engine = StorageEngine(directory)
    with pytest.raises(StorageError):
        await engine.connect()


@pytest.mark.asyncio
async def test_transaction_rolls_back_on_error(engine: StorageEngine):
    """Nothing written inside a failed transaction survives."""
    with pytest.raises(RuntimeError):
        async with engine.transaction():
            await engine.execute(
                "INSERT INTO events (timestamp, action) VALUES ('2026-01-01T00:00:00', 'ADD')"
            )
            raise RuntimeError("boom")
    assert await _count(engine, "events") == 0


@pytest.mark.asyncio
async def test_sql_error_inside_transaction_is_storage_error(engine: StorageEngine):
    """sqlite failures surface as StorageError and roll back."""
    with pytest.raises(StorageError):
        async with engine.transaction():
            await engine.execute(
                "INSERT INTO events (timestamp, action) VALUES ('2026-01-01T00:00:00', 'ADD')"
            )
            await engine.execute("INSERT INTO no_such_table VALUES (1)")
    assert await _count(engine, "events") == 0
    assert not engine.conn.in_transaction


@pytest.mark.asyncio
async def test_nested_transaction_joins_outer(engine: StorageEngine):
    """An inner block commits or rolls back with its outer transaction."""
    with pytest.raises(RuntimeError):
        async with engine.transaction():
            async with engine.transaction():
                await engine.execute(
                    "INSERT INTO events (timestamp, action) VALUES ('2026-01-01T00:00:00', 'TAP')"
                )
            raise RuntimeError("outer fails")
    assert await _count(engine, "events") == 0


@pytest.mark.asyncio
async def test_migrates_legacy_database(tmp_path: Path):
    """Databases from the first schema revision are upgraded in place."""
    db_path = tmp_path / "legacy.db"
    conn = sqlite3.connect(db_path)
    conn.executescript(
        """
        CREATE TABLE memories (
            id TEXT PRIMARY KEY,
            content TEXT NOT NULL,
            tap_count INTEGER NOT NULL DEFAULT 0,
            last_tapped_at INTEGER,
            created_at INTEGER NOT NULL
        );
        CREATE TABLE events (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            timestamp INTEGER NOT NULL,
            action TEXT NOT NULL,
            memory_id TEXT,
            data TEXT
        );
        INSERT INTO memories (id, content, tap_count, created_at)
            VALUES ('old-1', 'legacy fact', 2, 1700000000);
        INSERT INTO events (timestamp, action, memory_id, data)
            VALUES (1700000000, 'ADD', 'old-1', '{"content":"legacy fact"}');
        """
    )
    conn.commit()
    conn.close()

    engine = StorageEngine(db_path)
    await engine.connect()
    store = SQLiteMemoryStore(engine)

    memory = await store.get("old-1")
    assert memory is not None
    assert memory.scope == "global"
    assert memory.generation == 0
    assert memory.review_count == 0
    assert memory.tap_count == 2
    assert memory.created_at.year == 2023

    events = await EventLedger(engine).query(limit=10)
    assert events[0].data == {"content": "legacy fact"}
    assert events[0].timestamp.year == 2023
    await engine.close()


def test_predicates_compose():
    """Only non-empty filters become clauses; values stay bound."""
    where = Predicates().equals("scope", "global").equals("generation", None)
    assert where.sql == " WHERE scope = ?"
    assert where.params == ["global"]

    where = Predicates().any_of("scope", ["a", "b"]).equals("generation", 0)
    assert where.sql == " WHERE scope IN (?, ?) AND generation = ?"
    assert where.params == ["a", "b", 0]

    assert Predicates().any_of("scope", []).sql == ""


@pytest.mark.asyncio
async def test_transactions_from_separate_tasks_do_not_join(engine: StorageEngine):
    """A second task waits for the first transaction instead of riding on it."""

    async def failing():
        async with engine.transaction():
            await engine.execute(
                "INSERT INTO events (timestamp, action) VALUES ('2026-01-01T00:00:00', 'ADD')"
            )
            await asyncio.sleep(0.01)
            raise RuntimeError("boom")

    async def succeeding():
        await asyncio.sleep(0)
        async with engine.transaction():
            await engine.execute(
                "INSERT INTO events (timestamp, action) VALUES ('2026-01-01T00:00:00', 'TAP')"
            )

    results = await asyncio.gather(failing(), succeeding(), return_exceptions=True)

    assert isinstance(results[0], RuntimeError)
    assert results[1] is None
    rows = await engine.fetchall("SELECT action FROM events")
    assert [row["action"] for row in rows] == ["TAP"]


@pytest.mark.asyncio
async def test_locked_writer_waits_then_fails_while_reads_continue(tmp_path: Path):
    """Another connection's write lock blocks writes for busy_timeout, not reads."""
    db_path = tmp_path / "engram.db"
    engine = StorageEngine(db_path, busy_timeout=0.3)
    await engine.connect()
    store = SQLiteMemoryStore(engine)
    memory_id = await store.add("shared fact")

    holder = StorageEngine(db_path)
    await holder.connect()
    await holder.execute("BEGIN IMMEDIATE")
    try:
        started = time.monotonic()
        with pytest.raises(StorageError):
            await store.tap(memory_id)
        assert time.monotonic() - started >= 0.25

        memory = await store.get(memory_id)
        assert memory is not None
        assert memory.tap_count == 0
    finally:
        await holder.execute("ROLLBACK")
        await holder.close()

    assert await store.tap(memory_id)
    assert (await store.get(memory_id)).tap_count == 1
    await engine.close()


@pytest.mark.asyncio
async def test_migrates_text_timestamps_with_offsets(tmp_path: Path):
    """Offset and space-separated timestamps become naive local ISO text."""
    db_path = tmp_path / "legacy.db"
    conn = sqlite3.connect(db_path)
    conn.executescript(
        """
        CREATE TABLE memories (
            id TEXT PRIMARY KEY,
            content TEXT NOT NULL,
            scope TEXT NOT NULL DEFAULT 'global',
            generation INTEGER NOT NULL DEFAULT 0,
            tap_count INTEGER NOT NULL DEFAULT 0,
            review_count INTEGER NOT NULL DEFAULT 0,
            last_tapped_at TEXT,
            last_reviewed_at TEXT,
            created_at TEXT NOT NULL
        );
        CREATE TABLE events (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            timestamp TEXT NOT NULL,
            action TEXT NOT NULL,
            memory_id TEXT,
            data TEXT
        );
        INSERT INTO memories (id, content, created_at, last_tapped_at)
            VALUES ('old-1', 'legacy fact', '2024-03-01 12:00:00+00:00', '2024-03-01T12:00:00Z');
        INSERT INTO events (timestamp, action, memory_id)
            VALUES ('2024-03-01 12:00:00+00:00', 'ADD', 'old-1');
        INSERT INTO events (timestamp, action, memory_id)
            VALUES ('2024-03-02T08:30:00', 'TAP', 'old-1');
        """
    )
    conn.commit()
    conn.close()

    expected = datetime(2024, 3, 1, 12, tzinfo=timezone.utc).astimezone().replace(tzinfo=None)

    engine = StorageEngine(db_path)
    await engine.connect()

    rows = await engine.fetchall("SELECT CAST(timestamp AS TEXT) AS ts FROM events ORDER BY id")
    assert [row["ts"] for row in rows] == [expected.isoformat(), "2024-03-02T08:30:00"]

    memory = await SQLiteMemoryStore(engine).get("old-1")
    assert memory.created_at == expected
    assert memory.created_at.tzinfo is None
    assert memory.last_tapped_at == expected

    events = await EventLedger(engine).query(limit=10)
    assert all(event.timestamp.tzinfo is None for event in events)
    await engine.close()
