"""Append-only event ledger.

Every mutation of a memory is paired with exactly one event, written in
the same transaction. Events outlive the memories they reference and are
never edited or deleted, so the ledger is the provenance record of the
store.
"""

import json
from collections.abc import Callable
from datetime import datetime

import aiosqlite

from engram.core.ids import now
from engram.core.logging import get_logger
from engram.core.typing import JSONDict
from engram.memory.base import Action, Event
from engram.memory.engine import Predicates, StorageEngine

logger = get_logger("memory.ledger")

EVENT_COLUMNS = "id, timestamp, action, memory_id, data"


def coerce_datetime(value: datetime | str | None) -> datetime | None:
    """Rows migrated from older schemas come back as plain ISO strings."""
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


class EventLedger:
    """Write-once audit log stored in the events table."""

    def __init__(self, engine: StorageEngine, clock: Callable[[], datetime] = now):
        self.engine = engine
        self.clock = clock

    async def append(
        self,
        action: Action,
        memory_id: str | None = None,
        data: JSONDict | None = None,
    ) -> int:
        """Append one event, return its sequence id."""
        sequence_id = await self.engine.insert(
            "INSERT INTO events (timestamp, action, memory_id, data) VALUES (?, ?, ?, ?)",
            (
                self.clock(),
                action.value,
                memory_id,
                json.dumps(data) if data is not None else None,
            ),
        )
        logger.debug(f"Event {sequence_id}: {action.value} {memory_id or '-'}")
        return sequence_id

    async def append_many(
        self,
        action: Action,
        memory_ids: list[str],
        data: JSONDict | None = None,
    ) -> None:
        """Append one event per memory id, all sharing a timestamp."""
        if not memory_ids:
            return
        timestamp = self.clock()
        payload = json.dumps(data) if data is not None else None
        for memory_id in memory_ids:
            await self.engine.insert(
                "INSERT INTO events (timestamp, action, memory_id, data) VALUES (?, ?, ?, ?)",
                (timestamp, action.value, memory_id, payload),
            )
        logger.debug(f"Appended {len(memory_ids)} {action.value} events")

    async def query(
        self,
        limit: int = 50,
        action: Action | None = None,
        memory_id: str | None = None,
    ) -> list[Event]:
        """Events newest first, optionally filtered by action and/or memory id."""
        where = (
            Predicates()
            .equals("action", action.value if action else None)
            .equals("memory_id", memory_id)
        )
        rows = await self.engine.fetchall(
            f"SELECT {EVENT_COLUMNS} FROM events{where.sql} ORDER BY id DESC LIMIT ?",
            [*where.params, max(limit, 0)],
        )
        return [row_to_event(row) for row in rows]


def _decode_payload(text: str | None) -> JSONDict | None:
    if not text:
        return None
    try:
        return json.loads(text)
    except ValueError:
        # Early revisions escaped payloads by hand
        logger.warning(f"Undecodable event payload: {text[:80]}")
        return {"raw": text}


def row_to_event(row: aiosqlite.Row) -> Event:
    return Event(
        sequence_id=row["id"],
        timestamp=coerce_datetime(row["timestamp"]),
        action=Action(row["action"]),
        memory_id=row["memory_id"],
        data=_decode_payload(row["data"]),
    )
