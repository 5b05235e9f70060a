"""
Generational garbage collection.

Memories start in generation 0. Each time one is shown to the agent it
collects a review; each time the agent uses it, a tap. A GC pass compares
the two:

- gen0 memories reviewed at least `min_reviews` times whose tap/review
  ratio is below `min_ratio` are expired (deleted)
- gen0 memories that clear the ratio and have `promote_threshold` taps
  move to gen1
- gen1 memories with twice that many taps move to gen2 (permanent)

Everything else is kept until a later pass. GC only runs when asked.

Policies are pluggable: `classify` sees one memory at a time and decides
its fate from that memory's own counters, so a pass gives the same result
in any order and a second pass with no new activity changes nothing.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from enum import Enum

from engram.core.logging import get_logger
from engram.memory.base import Generation, Memory
from engram.memory.store import SQLiteMemoryStore

logger = get_logger("memory.gc")


class Verdict(Enum):
    KEEP = "keep"
    EXPIRE = "expire"
    PROMOTE = "promote"


@dataclass(frozen=True)
class Decision:
    verdict: Verdict
    ratio: float = 0.0
    to_generation: int | None = None

    @classmethod
    def keep(cls, memory: Memory) -> "Decision":
        return cls(Verdict.KEEP, memory.ratio)

    @classmethod
    def expire(cls, memory: Memory) -> "Decision":
        return cls(Verdict.EXPIRE, memory.ratio)

    @classmethod
    def promote(cls, memory: Memory) -> "Decision":
        return cls(Verdict.PROMOTE, memory.ratio, memory.generation + 1)


class GcPolicy(ABC):
    """Decides the fate of a single memory."""

    @abstractmethod
    def classify(self, memory: Memory) -> Decision:
        ...


class EngagementPolicy(GcPolicy):
    """Expire or promote based on the tap/review ratio."""

    def __init__(self, min_reviews: int = 5, min_ratio: float = 0.2, promote_threshold: int = 3):
        if min_reviews < 1:
            raise ValueError(f"min_reviews must be at least 1, got {min_reviews}")
        if not 0.0 <= min_ratio <= 1.0:
            raise ValueError(f"min_ratio must be within [0, 1], got {min_ratio}")
        if promote_threshold < 1:
            raise ValueError(f"promote_threshold must be at least 1, got {promote_threshold}")
        self.min_reviews = min_reviews
        self.min_ratio = min_ratio
        self.promote_threshold = promote_threshold

    def classify(self, memory: Memory) -> Decision:
        if memory.generation == Generation.EPHEMERAL:
            if memory.review_count < self.min_reviews:
                return Decision.keep(memory)
            if memory.ratio < self.min_ratio:
                return Decision.expire(memory)
            if memory.tap_count >= self.promote_threshold:
                return Decision.promote(memory)
            return Decision.keep(memory)

        if memory.generation == Generation.SURVIVING:
            if memory.tap_count >= 2 * self.promote_threshold:
                return Decision.promote(memory)

        return Decision.keep(memory)

    def __repr__(self) -> str:
        return (
            f"EngagementPolicy(min_reviews={self.min_reviews}, "
            f"min_ratio={self.min_ratio}, promote_threshold={self.promote_threshold})"
        )


class ManualPolicy(GcPolicy):
    """Never changes anything on its own.

    Lifecycle is driven by explicit remove/promote calls instead.
    """

    def classify(self, memory: Memory) -> Decision:
        return Decision.keep(memory)

    def __repr__(self) -> str:
        return "ManualPolicy()"


@dataclass
class GcOutcome:
    id: str
    content: str
    tap_count: int
    review_count: int
    ratio: float
    from_generation: int
    to_generation: int | None = None  # None when expired


@dataclass
class GcResult:
    expired: list[GcOutcome] = field(default_factory=list)
    promoted: list[GcOutcome] = field(default_factory=list)
    dry_run: bool = False

    @property
    def changed(self) -> bool:
        return bool(self.expired or self.promoted)


def plan(memories: list[Memory], policy: GcPolicy, dry_run: bool = False) -> GcResult:
    """Classify memories without touching storage.

    A promoted memory is classified again at its new generation, so one
    pass can carry it from gen0 to gen2.
    """
    result = GcResult(dry_run=dry_run)
    for memory in memories:
        current = memory
        while True:
            decision = policy.classify(current)

            if decision.verdict is Verdict.EXPIRE:
                result.expired.append(
                    GcOutcome(
                        id=current.id,
                        content=current.content,
                        tap_count=current.tap_count,
                        review_count=current.review_count,
                        ratio=decision.ratio,
                        from_generation=current.generation,
                    )
                )
                break

            if decision.verdict is Verdict.PROMOTE:
                target = decision.to_generation
                if target != current.generation + 1 or target > Generation.PERMANENT:
                    raise ValueError(
                        f"{policy!r} promoted {current.id} from gen{current.generation} to gen{target}"
                    )
                result.promoted.append(
                    GcOutcome(
                        id=current.id,
                        content=current.content,
                        tap_count=current.tap_count,
                        review_count=current.review_count,
                        ratio=decision.ratio,
                        from_generation=current.generation,
                        to_generation=target,
                    )
                )
                current = replace(current, generation=target)
                continue

            break
    return result


class GarbageCollector:
    """Applies a policy to every gen0 and gen1 memory in one transaction."""

    def __init__(self, store: SQLiteMemoryStore):
        self.store = store

    async def _candidates(self) -> list[Memory]:
        memories = await self.store.list_memories(generation=Generation.EPHEMERAL, ranked=True)
        memories += await self.store.list_memories(generation=Generation.SURVIVING, ranked=True)
        return memories

    async def run(self, policy: GcPolicy, dry_run: bool = False) -> GcResult:
        """Run one GC pass.

        With dry_run=True the same classification is computed and returned
        but nothing is written: no deletions, no promotions, no events.
        """
        if dry_run:
            async with self.store.engine.exclusive():
                result = plan(await self._candidates(), policy, dry_run=True)
            logger.info(
                f"GC dry run with {policy!r}: would expire {len(result.expired)}, "
                f"promote {len(result.promoted)}"
            )
            return result

        async with self.store.engine.transaction():
            result = plan(await self._candidates(), policy)
            for outcome in result.expired:
                await self.store.expire(outcome.id, outcome.ratio)
            for outcome in result.promoted:
                await self.store.promote(outcome.id)

        logger.info(
            f"GC with {policy!r}: expired {len(result.expired)}, promoted {len(result.promoted)}"
        )
        return result
