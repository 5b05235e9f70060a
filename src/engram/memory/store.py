"""SQLite memory store with engagement counters and an event ledger."""

from collections.abc import Callable
from dataclasses import replace
from datetime import datetime

import aiosqlite

from engram.core.ids import generate_id, now
from engram.core.logging import get_logger
from engram.core.typing import JSONDict
from engram.memory.base import Action, Generation, Memory, MemoryStore
from engram.memory.engine import Predicates, StorageEngine
from engram.memory.ledger import EventLedger, coerce_datetime

logger = get_logger("memory.store")

MEMORY_COLUMNS = (
    "id, content, scope, generation, tap_count, review_count, "
    "last_tapped_at, last_reviewed_at, created_at, confidence"
)

ORDER_RECENT = "created_at DESC, rowid DESC"
ORDER_RANKED = "generation DESC, tap_count DESC, created_at DESC, rowid DESC"


def row_to_memory(row: aiosqlite.Row) -> Memory:
    return Memory(
        id=row["id"],
        content=row["content"],
        scope=row["scope"],
        generation=row["generation"],
        tap_count=row["tap_count"],
        review_count=row["review_count"],
        last_tapped_at=coerce_datetime(row["last_tapped_at"]),
        last_reviewed_at=coerce_datetime(row["last_reviewed_at"]),
        created_at=coerce_datetime(row["created_at"]),
        confidence=row["confidence"],
    )


class SQLiteMemoryStore(MemoryStore):
    """SQLite-backed memory store.

    Holds no cached records: every call reads the database. Each mutation
    and its ledger event commit together in one transaction.
    """

    def __init__(
        self,
        engine: StorageEngine,
        ledger: EventLedger | None = None,
        clock: Callable[[], datetime] = now,
    ):
        self.engine = engine
        self.clock = clock
        self.ledger = ledger or EventLedger(engine, clock)

    async def add(self, content: str, scope: str = "global", confidence: float | None = None) -> str:
        """Store a new ephemeral memory, return its id."""
        memory_id = generate_id()
        payload: JSONDict = {"content": content, "scope": scope}
        if confidence is not None:
            payload["confidence"] = confidence

        async with self.engine.transaction():
            await self.engine.execute(
                f"INSERT INTO memories ({MEMORY_COLUMNS}) "
                "VALUES (?, ?, ?, 0, 0, 0, NULL, NULL, ?, ?)",
                (memory_id, content, scope, self.clock(), confidence),
            )
            await self.ledger.append(Action.ADD, memory_id, payload)

        logger.info(f"Added memory {memory_id} ({scope})")
        return memory_id

    async def get(self, memory_id: str) -> Memory | None:
        """Get specific memory by ID."""
        row = await self.engine.fetchone(
            f"SELECT {MEMORY_COLUMNS} FROM memories WHERE id = ?", (memory_id,)
        )
        return row_to_memory(row) if row else None

    async def list_memories(
        self,
        scope: str | None = None,
        generation: int | None = None,
        ranked: bool = False,
    ) -> list[Memory]:
        """List memories, newest first.

        With ranked=True, the most established memories come first:
        generation, then tap count, then recency.
        """
        where = Predicates().equals("scope", scope).equals("generation", generation)
        order = ORDER_RANKED if ranked else ORDER_RECENT
        rows = await self.engine.fetchall(
            f"SELECT {MEMORY_COLUMNS} FROM memories{where.sql} ORDER BY {order}",
            where.params,
        )
        return [row_to_memory(row) for row in rows]

    async def edit(self, memory_id: str, content: str) -> bool:
        """Replace memory content. Returns False if the memory does not exist."""
        async with self.engine.transaction():
            row = await self.engine.fetchone(
                "SELECT content FROM memories WHERE id = ?", (memory_id,)
            )
            if row is None:
                return False
            await self.engine.execute(
                "UPDATE memories SET content = ? WHERE id = ?", (content, memory_id)
            )
            await self.ledger.append(Action.EDIT, memory_id, {"old": row["content"], "new": content})

        logger.info(f"Edited memory {memory_id}")
        return True

    async def remove(self, memory_id: str) -> bool:
        """Delete memory. Returns False if the memory does not exist."""
        async with self.engine.transaction():
            row = await self.engine.fetchone(
                "SELECT content FROM memories WHERE id = ?", (memory_id,)
            )
            if row is None:
                return False
            await self.engine.execute("DELETE FROM memories WHERE id = ?", (memory_id,))
            await self.ledger.append(Action.REMOVE, memory_id, {"content": row["content"]})

        logger.info(f"Removed memory {memory_id}")
        return True

    async def tap(self, memory_id: str) -> bool:
        """Increment tap count. Returns False, with no event, if the memory does not exist."""
        async with self.engine.transaction():
            updated = await self.engine.execute(
                "UPDATE memories SET tap_count = tap_count + 1, last_tapped_at = ? WHERE id = ?",
                (self.clock(), memory_id),
            )
            if not updated:
                return False
            await self.ledger.append(Action.TAP, memory_id)

        logger.debug(f"Tapped memory {memory_id}")
        return True

    async def tap_by_match(self, substring: str) -> list[str]:
        """Tap every memory whose content contains substring (case-sensitive).

        Returns the tapped ids. An empty substring matches nothing.
        """
        if not substring:
            return []

        where = Predicates().contains("content", substring)
        async with self.engine.transaction():
            rows = await self.engine.fetchall(
                f"SELECT id FROM memories{where.sql} ORDER BY {ORDER_RECENT}", where.params
            )
            ids = [row["id"] for row in rows]
            if ids:
                await self.engine.execute(
                    f"UPDATE memories SET tap_count = tap_count + 1, last_tapped_at = ?{where.sql}",
                    [self.clock(), *where.params],
                )
                await self.ledger.append_many(Action.TAP, ids)

        logger.debug(f"Tapped {len(ids)} memories matching {substring!r}")
        return ids

    async def mark_reviewed(self, scopes: list[str] | None = None) -> list[Memory]:
        """Record that memories were surfaced into an agent's context.

        Selects memories in the given scopes (all memories if none given),
        in ranked order, and counts one review for each. Being shown counts
        as a review whether or not the memory is tapped afterwards; this is
        what lets GC tell useful memories from noise.

        Returns the reviewed memories with their updated counters.
        """
        where = Predicates().any_of("scope", scopes)
        reviewed_at = self.clock()
        async with self.engine.transaction():
            rows = await self.engine.fetchall(
                f"SELECT {MEMORY_COLUMNS} FROM memories{where.sql} ORDER BY {ORDER_RANKED}",
                where.params,
            )
            memories = [row_to_memory(row) for row in rows]
            if memories:
                await self.engine.execute(
                    "UPDATE memories SET review_count = review_count + 1, "
                    f"last_reviewed_at = ?{where.sql}",
                    [reviewed_at, *where.params],
                )
                await self.ledger.append_many(Action.REVIEW, [m.id for m in memories])

        logger.debug(f"Reviewed {len(memories)} memories (scopes: {scopes or 'all'})")
        return [
            replace(m, review_count=m.review_count + 1, last_reviewed_at=reviewed_at)
            for m in memories
        ]

    async def promote(self, memory_id: str) -> bool:
        """Move a memory up one generation.

        Returns False if the memory does not exist or is already permanent.
        """
        async with self.engine.transaction():
            row = await self.engine.fetchone(
                "SELECT generation FROM memories WHERE id = ?", (memory_id,)
            )
            if row is None or row["generation"] >= Generation.PERMANENT:
                return False
            current = row["generation"]
            await self.engine.execute(
                "UPDATE memories SET generation = ? WHERE id = ?", (current + 1, memory_id)
            )
            await self.ledger.append(
                Action.PROMOTE, memory_id, {"from": current, "to": current + 1}
            )

        logger.info(f"Promoted memory {memory_id}: gen{current} -> gen{current + 1}")
        return True

    async def expire(self, memory_id: str, ratio: float, reason: str = "low_engagement") -> bool:
        """Delete a memory on behalf of GC. Returns False if it does not exist."""
        async with self.engine.transaction():
            deleted = await self.engine.execute("DELETE FROM memories WHERE id = ?", (memory_id,))
            if not deleted:
                return False
            await self.ledger.append(
                Action.EXPIRE, memory_id, {"reason": reason, "ratio": round(ratio, 4)}
            )

        logger.info(f"Expired memory {memory_id} ({reason}, ratio {ratio:.2f})")
        return True
