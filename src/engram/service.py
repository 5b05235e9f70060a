"""Engram service: the single entry point for CLI, TUI and analyzers.

Wires the storage engine, ledger, store, garbage collector and queries
together from one Settings object. Consumers never touch the engine.
"""

from collections.abc import Callable
from datetime import datetime
from typing import Any

from engram.core.config import Settings, get_settings
from engram.core.ids import now
from engram.memory.base import (
    Action,
    ActivitySummary,
    EnrichedEvent,
    Event,
    HotMemory,
    Memory,
    MemoryStats,
)
from engram.memory.engine import StorageEngine
from engram.memory.gc import EngagementPolicy, GarbageCollector, GcPolicy, GcResult
from engram.memory.ledger import EventLedger
from engram.memory.queries import MemoryQueries
from engram.memory.store import SQLiteMemoryStore


class Engram:
    """Memory lifecycle service.

    Usage:
        async with Engram(settings) as engram:
            memory_id = await engram.add("Tests run with pytest -x", scope="project:/src/app")
    """

    def __init__(self, settings: Settings | None = None, clock: Callable[[], datetime] = now):
        self.settings = settings or get_settings()
        self.engine = StorageEngine(self.settings.database_path, self.settings.busy_timeout)
        self.ledger = EventLedger(self.engine, clock)
        self.store = SQLiteMemoryStore(self.engine, self.ledger, clock)
        self.collector = GarbageCollector(self.store)
        self.queries = MemoryQueries(self.engine, clock)

    async def connect(self) -> None:
        await self.engine.connect()

    async def close(self) -> None:
        await self.engine.close()

    async def __aenter__(self) -> "Engram":
        await self.connect()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()

    # Memory store

    async def add(self, content: str, scope: str = "global", confidence: float | None = None) -> str:
        return await self.store.add(content, scope, confidence)

    async def get(self, memory_id: str) -> Memory | None:
        return await self.store.get(memory_id)

    async def list_memories(
        self,
        scope: str | None = None,
        generation: int | None = None,
        ranked: bool = False,
    ) -> list[Memory]:
        return await self.store.list_memories(scope, generation, ranked)

    async def edit(self, memory_id: str, content: str) -> bool:
        return await self.store.edit(memory_id, content)

    async def remove(self, memory_id: str) -> bool:
        return await self.store.remove(memory_id)

    async def tap(self, memory_id: str) -> bool:
        return await self.store.tap(memory_id)

    async def tap_by_match(self, substring: str) -> list[str]:
        return await self.store.tap_by_match(substring)

    async def mark_reviewed(self, scopes: list[str] | None = None) -> list[Memory]:
        return await self.store.mark_reviewed(scopes)

    async def promote(self, memory_id: str) -> bool:
        return await self.store.promote(memory_id)

    # Garbage collection

    async def run_gc(
        self,
        min_reviews: int | None = None,
        min_ratio: float | None = None,
        promote_threshold: int | None = None,
        dry_run: bool = False,
    ) -> GcResult:
        """Run the engagement policy; unset thresholds come from settings."""
        policy = EngagementPolicy(
            min_reviews=self.settings.gc_min_reviews if min_reviews is None else min_reviews,
            min_ratio=self.settings.gc_min_ratio if min_ratio is None else min_ratio,
            promote_threshold=(
                self.settings.gc_promote_threshold
                if promote_threshold is None
                else promote_threshold
            ),
        )
        return await self.collector.run(policy, dry_run=dry_run)

    async def run_policy(self, policy: GcPolicy, dry_run: bool = False) -> GcResult:
        return await self.collector.run(policy, dry_run=dry_run)

    # Queries

    async def hot_memories(
        self,
        window_secs: int | None = None,
        limit: int | None = None,
    ) -> list[HotMemory]:
        return await self.queries.hot_memories(
            self.settings.hot_window_secs if window_secs is None else window_secs,
            self.settings.hot_limit if limit is None else limit,
        )

    async def activity_by_day(self, days: int | None = None) -> list[ActivitySummary]:
        return await self.queries.activity_by_day(
            self.settings.activity_days if days is None else days
        )

    async def stats(self) -> MemoryStats:
        return await self.queries.stats()

    async def query_events(
        self,
        limit: int = 50,
        action: Action | None = None,
        memory_id: str | None = None,
    ) -> list[Event]:
        return await self.ledger.query(limit, action, memory_id)

    async def enriched_events(
        self,
        limit: int = 50,
        action: Action | None = None,
        memory_id: str | None = None,
    ) -> list[EnrichedEvent]:
        return await self.queries.enriched_events(limit, action, memory_id)
