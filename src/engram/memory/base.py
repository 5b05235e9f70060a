"""
Memory records, ledger events and store interface.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum, IntEnum

from engram.core.typing import JSONDict


class Generation(IntEnum):
    EPHEMERAL = 0
    SURVIVING = 1
    PERMANENT = 2


class Action(Enum):
    ADD = "ADD"
    EDIT = "EDIT"
    TAP = "TAP"
    REVIEW = "REVIEW"
    REMOVE = "REMOVE"
    EXPIRE = "EXPIRE"
    PROMOTE = "PROMOTE"


@dataclass
class Memory:
    """Single memory record."""

    id: str
    content: str
    scope: str
    created_at: datetime
    generation: int = Generation.EPHEMERAL
    tap_count: int = 0
    review_count: int = 0
    last_tapped_at: datetime | None = None
    last_reviewed_at: datetime | None = None
    confidence: float | None = None

    @property
    def ratio(self) -> float:
        """Engagement ratio: taps per review (0.0 when never reviewed)."""
        if self.review_count == 0:
            return 0.0
        return self.tap_count / self.review_count


@dataclass
class Event:
    """Immutable ledger entry."""

    sequence_id: int
    timestamp: datetime
    action: Action
    memory_id: str | None = None
    data: JSONDict | None = None


@dataclass
class EnrichedEvent:
    """Ledger entry with a display line resolved for presentation."""

    sequence_id: int
    timestamp: datetime
    action: Action
    memory_id: str | None
    content: str


@dataclass
class HotMemory:
    id: str
    content: str
    recent_taps: int
    total_taps: int


@dataclass
class ActivitySummary:
    """Event counts for one local calendar day."""

    period: str  # YYYY-MM-DD
    adds: int = 0
    taps: int = 0
    removes: int = 0
    reviews: int = 0


@dataclass
class MemoryStats:
    total: int = 0
    by_generation: list[int] = field(default_factory=lambda: [0, 0, 0])
    total_taps: int = 0
    total_reviews: int = 0
    never_tapped: int = 0
    scopes: list[tuple[str, int]] = field(default_factory=list)


class MemoryStore(ABC):
    """Abstract memory storage interface."""

    @abstractmethod
    async def add(self, content: str, scope: str = "global", confidence: float | None = None) -> str:
        """Store a new generation-0 memory, return its id."""
        ...

    @abstractmethod
    async def get(self, memory_id: str) -> Memory | None:
        """Get specific memory by ID."""
        ...

    @abstractmethod
    async def list_memories(
        self,
        scope: str | None = None,
        generation: int | None = None,
        ranked: bool = False,
    ) -> list[Memory]:
        """List memories matching the optional filters."""
        ...

    @abstractmethod
    async def edit(self, memory_id: str, content: str) -> bool:
        """Replace memory content."""
        ...

    @abstractmethod
    async def remove(self, memory_id: str) -> bool:
        """Delete memory."""
        ...

    @abstractmethod
    async def tap(self, memory_id: str) -> bool:
        """Record that a memory was used."""
        ...

    @abstractmethod
    async def tap_by_match(self, substring: str) -> list[str]:
        """Tap every memory whose content contains substring."""
        ...

    @abstractmethod
    async def mark_reviewed(self, scopes: list[str] | None = None) -> list[Memory]:
        """Record that memories were surfaced into context, return them."""
        ...
