"""Read-only rollups over memories and the event ledger."""

import json
from collections.abc import Callable
from datetime import datetime, timedelta

from engram.core.ids import now
from engram.core.typing import JSONDict
from engram.memory.base import (
    Action,
    ActivitySummary,
    EnrichedEvent,
    HotMemory,
    MemoryStats,
)
from engram.memory.engine import Predicates, StorageEngine
from engram.memory.ledger import row_to_event


def describe_payload(action: Action, data: JSONDict) -> str:
    if action is Action.EDIT and "new" in data:
        return f"{data.get('old', '')} -> {data['new']}"
    if "content" in data:
        return str(data["content"])
    return json.dumps(data, sort_keys=True)


class MemoryQueries:
    """Hot memories, daily activity, stats and display-ready event listings."""

    def __init__(self, engine: StorageEngine, clock: Callable[[], datetime] = now):
        self.engine = engine
        self.clock = clock

    async def hot_memories(self, window_secs: int = 86400, limit: int = 10) -> list[HotMemory]:
        """Memories with the most taps in the last window_secs seconds."""
        end = self.clock()
        start = end - timedelta(seconds=window_secs)
        rows = await self.engine.fetchall(
            """SELECT m.id, m.content, COUNT(e.id) AS recent_taps, m.tap_count
               FROM memories m
               JOIN events e
                 ON e.memory_id = m.id
                AND e.action = ?
                AND e.timestamp >= ?
                AND e.timestamp <= ?
               GROUP BY m.id
               ORDER BY recent_taps DESC, m.tap_count DESC, m.id
               LIMIT ?""",
            (Action.TAP.value, start, end, max(limit, 0)),
        )
        return [
            HotMemory(
                id=row["id"],
                content=row["content"],
                recent_taps=row["recent_taps"],
                total_taps=row["tap_count"],
            )
            for row in rows
        ]

    async def activity_by_day(self, days: int = 7) -> list[ActivitySummary]:
        """Per-day ADD/TAP/REMOVE/REVIEW counts, most recent day first.

        Timestamps are stored in local time, so date() yields the local
        calendar day.
        """
        cutoff = self.clock() - timedelta(days=days)
        rows = await self.engine.fetchall(
            """SELECT date(timestamp) AS day,
                      SUM(CASE WHEN action = 'ADD' THEN 1 ELSE 0 END) AS adds,
                      SUM(CASE WHEN action = 'TAP' THEN 1 ELSE 0 END) AS taps,
                      SUM(CASE WHEN action = 'REMOVE' THEN 1 ELSE 0 END) AS removes,
                      SUM(CASE WHEN action = 'REVIEW' THEN 1 ELSE 0 END) AS reviews
               FROM events
               WHERE timestamp >= ?
               GROUP BY day
               ORDER BY day DESC""",
            (cutoff,),
        )
        return [
            ActivitySummary(
                period=row["day"],
                adds=row["adds"],
                taps=row["taps"],
                removes=row["removes"],
                reviews=row["reviews"],
            )
            for row in rows
        ]

    async def stats(self) -> MemoryStats:
        row = await self.engine.fetchone(
            """SELECT COUNT(*) AS total,
                      SUM(CASE WHEN generation = 0 THEN 1 ELSE 0 END) AS gen0,
                      SUM(CASE WHEN generation = 1 THEN 1 ELSE 0 END) AS gen1,
                      SUM(CASE WHEN generation = 2 THEN 1 ELSE 0 END) AS gen2,
                      COALESCE(SUM(tap_count), 0) AS taps,
                      COALESCE(SUM(review_count), 0) AS reviews,
                      SUM(CASE WHEN tap_count = 0 THEN 1 ELSE 0 END) AS never_tapped
               FROM memories"""
        )
        scopes = await self.engine.fetchall(
            "SELECT scope, COUNT(*) AS n FROM memories GROUP BY scope ORDER BY n DESC, scope"
        )
        if row is None or not row["total"]:
            return MemoryStats()
        return MemoryStats(
            total=row["total"],
            by_generation=[row["gen0"], row["gen1"], row["gen2"]],
            total_taps=row["taps"],
            total_reviews=row["reviews"],
            never_tapped=row["never_tapped"],
            scopes=[(s["scope"], s["n"]) for s in scopes],
        )

    async def enriched_events(
        self,
        limit: int = 50,
        action: Action | None = None,
        memory_id: str | None = None,
    ) -> list[EnrichedEvent]:
        """Events newest first, each with a human-readable content line.

        Payload-less events (TAP, REVIEW) borrow the referenced memory's
        current content.
        """
        where = (
            Predicates()
            .equals("e.action", action.value if action else None)
            .equals("e.memory_id", memory_id)
        )
        rows = await self.engine.fetchall(
            f"""SELECT e.id, e.timestamp, e.action, e.memory_id, e.data,
                       m.content AS memory_content
                FROM events e
                LEFT JOIN memories m ON m.id = e.memory_id
                {where.sql}
                ORDER BY e.id DESC
                LIMIT ?""",
            [*where.params, max(limit, 0)],
        )

        enriched = []
        for row in rows:
            event = row_to_event(row)
            if event.data:
                content = describe_payload(event.action, event.data)
            elif event.memory_id is None:
                content = "(none)"
            elif row["memory_content"] is not None:
                content = row["memory_content"]
            else:
                content = "(memory not found)"
            enriched.append(
                EnrichedEvent(
                    sequence_id=event.sequence_id,
                    timestamp=event.timestamp,
                    action=event.action,
                    memory_id=event.memory_id,
                    content=content,
                )
            )
        return enriched
