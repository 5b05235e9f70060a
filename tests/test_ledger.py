"""Tests for the append-only event ledger."""

from pathlib import Path

import pytest

from engram.memory.base import Action
from engram.memory.engine import StorageEngine
from engram.memory.ledger import EventLedger


@pytest.fixture
async def ledger(tmp_path: Path):
    """Create a ledger over a temporary database."""
    engine = StorageEngine(tmp_path / "test.db")
    await engine.connect()
    yield EventLedger(engine)
    await engine.close()


@pytest.mark.asyncio
async def test_append_assigns_increasing_sequence(ledger: EventLedger):
    """Sequence ids define a total order."""
    first = await ledger.append(Action.ADD, "m1", {"content": "a"})
    second = await ledger.append(Action.TAP, "m1")
    assert second > first


@pytest.mark.asyncio
async def test_query_newest_first(ledger: EventLedger):
    """Query returns events by descending sequence id."""
    await ledger.append(Action.ADD, "m1", {"content": "a"})
    await ledger.append(Action.TAP, "m1")
    await ledger.append(Action.REMOVE, "m1")

    events = await ledger.query(limit=10)
    assert [e.action for e in events] == [Action.REMOVE, Action.TAP, Action.ADD]
    assert events[0].sequence_id > events[-1].sequence_id


@pytest.mark.asyncio
async def test_query_filters(ledger: EventLedger):
    """Action and memory filters combine with AND."""
    await ledger.append(Action.ADD, "m1", {"content": "a"})
    await ledger.append(Action.TAP, "m1")
    await ledger.append(Action.TAP, "m2")
    await ledger.append(Action.TAP, "m2")

    taps = await ledger.query(limit=10, action=Action.TAP)
    assert len(taps) == 3

    m1 = await ledger.query(limit=10, memory_id="m1")
    assert len(m1) == 2

    m2_taps = await ledger.query(limit=10, action=Action.TAP, memory_id="m2")
    assert len(m2_taps) == 2
    assert all(e.memory_id == "m2" for e in m2_taps)


@pytest.mark.asyncio
async def test_query_limit(ledger: EventLedger):
    """At most `limit` events are returned."""
    for _ in range(5):
        await ledger.append(Action.REVIEW, "m1")
    assert len(await ledger.query(limit=3)) == 3


@pytest.mark.asyncio
async def test_payload_is_structured(ledger: EventLedger):
    """Payloads with quotes and backslashes survive intact."""
    tricky = 'say "hi" \\ then {leave}'
    await ledger.append(Action.EDIT, "m1", {"old": tricky, "new": "plain"})
    (event,) = await ledger.query(limit=1)
    assert event.data == {"old": tricky, "new": "plain"}


@pytest.mark.asyncio
async def test_event_without_memory_or_payload(ledger: EventLedger):
    """memory_id and data are optional."""
    await ledger.append(Action.REVIEW)
    (event,) = await ledger.query(limit=1)
    assert event.memory_id is None
    assert event.data is None


@pytest.mark.asyncio
async def test_undecodable_payload_is_preserved(ledger: EventLedger):
    """Malformed payloads written by old versions are returned raw."""
    await ledger.engine.execute(
        "INSERT INTO events (timestamp, action, memory_id, data) VALUES (?, ?, ?, ?)",
        ("2026-01-01T00:00:00", "ADD", "m1", '{"content":"broken}'),
    )
    (event,) = await ledger.query(limit=1)
    assert event.data == {"raw": '{"content":"broken}'}
