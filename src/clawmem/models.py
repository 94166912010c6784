"""Data models for the memory engine."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .utils import hash_content

MEMORY_CATEGORIES = (
    "identity",
    "preferences",
    "goals",
    "technical",
    "infrastructure",
    "projects",
    "relationships",
    "life_events",
    "health",
    "finance",
    "assistant",
    "knowledge",
    "other",
)


class MemoryType(Enum):
    """Kind of memory, drives retention and ranking."""

    FACT = "fact"
    PREFERENCE = "preference"
    EPISODE = "episode"

    @classmethod
    def parse(cls, value: object) -> "MemoryType | None":
        """Return the member for a raw value, or None if it is not one."""
        if isinstance(value, MemoryType):
            return value
        if isinstance(value, str):
            try:
                return cls(value.strip().lower())
            except ValueError:
                return None
        return None


class DedupAction(Enum):
    """Outcome of deduplicating a candidate memory."""

    ADD = "add"
    UPDATE = "update"
    SKIP = "skip"
    EXTEND = "extend"


class HistoryAction(Enum):
    """Kind of change recorded in the history ledger."""

    ADD = "add"
    UPDATE = "update"
    DELETE = "delete"


@dataclass
class MemoryRecord:
    """A single versioned memory.

    Attributes:
        id: Unique id (uuid4 hex string).
        memory: The fact text, third person.
        user_id: Owner; every query is scoped by it.
        category: One of MEMORY_CATEGORIES.
        memory_type: fact, preference or episode.
        created_at: ISO timestamp when stored.
        updated_at: ISO timestamp of the last change.
        is_latest: False once superseded by an update.
        version: Starts at 1, incremented along an update chain.
        event_date: When the fact happened, if known.
        hash: Normalized content hash.
        metadata: Free-form extra data.
        score: Relevance, only set on search results.
    """

    id: str
    memory: str
    user_id: str
    created_at: str
    updated_at: str
    category: str = "other"
    memory_type: MemoryType = MemoryType.FACT
    is_latest: bool = True
    version: int = 1
    event_date: str | None = None
    hash: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)
    score: float | None = None

    def __post_init__(self) -> None:
        if not self.hash:
            self.hash = hash_content(self.memory)

    @property
    def reference_date(self) -> str:
        """The date a memory is about: event date, else creation time."""
        return self.event_date or self.created_at

    def to_payload(self) -> dict[str, Any]:
        """Serialize to the JSON payload stored alongside the vector."""
        return {
            "memory": self.memory,
            "userId": self.user_id,
            "category": self.category,
            "memoryType": self.memory_type.value,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
            "isLatest": self.is_latest,
            "version": self.version,
            "eventDate": self.event_date,
            "hash": self.hash,
            "metadata": self.metadata,
        }

    @classmethod
    def from_payload(
        cls, record_id: str, payload: dict[str, Any], score: float | None = None
    ) -> "MemoryRecord":
        """Build a record from a stored payload, tolerating missing keys."""
        memory = str(payload.get("memory") or "")
        created_at = str(payload.get("createdAt") or "")
        metadata = payload.get("metadata")
        return cls(
            id=record_id,
            memory=memory,
            user_id=str(payload.get("userId") or ""),
            category=str(payload.get("category") or "other"),
            memory_type=MemoryType.parse(payload.get("memoryType")) or MemoryType.FACT,
            created_at=created_at,
            updated_at=str(payload.get("updatedAt") or created_at),
            is_latest=payload.get("isLatest") is not False,
            version=int(payload.get("version") or 1),
            event_date=payload.get("eventDate") or None,
            hash=str(payload.get("hash") or hash_content(memory)),
            metadata=metadata if isinstance(metadata, dict) else {},
            score=score,
        )


@dataclass
class ExtractedMemory:
    """A candidate fact produced by the extraction adapter."""

    memory: str
    category: str
    memory_type: MemoryType
    event_date: str | None = None


@dataclass(frozen=True)
class DedupDecision:
    """Arbitration result for one candidate memory."""

    action: DedupAction
    target_id: str | None = None
    reason: str = ""


@dataclass
class HistoryEntry:
    """One immutable row of the audit ledger."""

    id: str
    memory_id: str
    action: HistoryAction
    previous_value: str | None
    new_value: str | None
    user_id: str
    created_at: str


@dataclass
class Entity:
    """A named node in the lineage graph, unique per (name, user_id)."""

    name: str
    type: str
    user_id: str
    id: str | None = None
    created_at: str | None = None
    updated_at: str | None = None


@dataclass
class GraphRelation:
    """A directed relationship between two entities."""

    source_name: str
    relationship: str
    target_name: str
    source_id: str = ""
    target_id: str = ""
    confidence: float = 1.0
    created_at: str | None = None


@dataclass
class LineageEdge:
    """An UPDATES or EXTENDS edge between two memory records."""

    source_id: str
    target_id: str
    kind: str
    reason: str | None = None
    created_at: str | None = None


@dataclass
class RetentionRules:
    """Retention in days per memory type; 0 means never expire."""

    fact: int = 0
    preference: int = 0
    episode: int = 0

    def days_for(self, memory_type: MemoryType) -> int:
        return int(getattr(self, memory_type.value, 0) or 0)

    @property
    def enabled(self) -> bool:
        return any(days > 0 for days in (self.fact, self.preference, self.episode))


@dataclass
class AddResult:
    """Outcome of Memory.add()."""

    added: list[MemoryRecord] = field(default_factory=list)
    updated: list[MemoryRecord] = field(default_factory=list)
    deduplicated: int = 0
    graph_relations: list[GraphRelation] = field(default_factory=list)


@dataclass
class RetentionResult:
    """Outcome of a retention sweep."""

    expired: list[MemoryRecord] = field(default_factory=list)
    deleted: int = 0


@dataclass
class UserProfile:
    """Latest memories of a user grouped into stable and changing sections."""

    user_id: str
    identity: list[MemoryRecord] = field(default_factory=list)
    preferences: list[MemoryRecord] = field(default_factory=list)
    technical: list[MemoryRecord] = field(default_factory=list)
    relationships: list[MemoryRecord] = field(default_factory=list)
    goals: list[MemoryRecord] = field(default_factory=list)
    projects: list[MemoryRecord] = field(default_factory=list)
    life_events: list[MemoryRecord] = field(default_factory=list)
    other: list[MemoryRecord] = field(default_factory=list)
    generated_at: str | None = None

    def sections(self) -> list[tuple[str, list[MemoryRecord]]]:
        """Non-empty sections in display order."""
        ordered = [
            ("Identity", self.identity),
            ("Preferences", self.preferences),
            ("Technical", self.technical),
            ("Relationships", self.relationships),
            ("Goals", self.goals),
            ("Projects", self.projects),
            ("Life Events", self.life_events),
            ("Other", self.other),
        ]
        return [(title, items) for title, items in ordered if items]

    def summary(self) -> str:
        """Plain-text rendering, one bullet per memory."""
        blocks = []
        for title, items in self.sections():
            lines = "\n".join(f"- {m.memory}" for m in items)
            blocks.append(f"### {title}\n{lines}")
        return "\n\n".join(blocks)
