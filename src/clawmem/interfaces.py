"""Backend contracts for the memory engine.

Every collaborator is injected into Memory as an object satisfying one of
these Protocols, so tests can pass in-memory fakes and deployments can swap
backends without touching the orchestration code.
"""

from dataclasses import dataclass
from typing import Any, Protocol, Sequence

from .models import Entity, GraphRelation, HistoryAction, HistoryEntry, LineageEdge

Filters = dict[str, Any]
"""Store filters: user_id, is_latest, category, memory_type, from_date, to_date."""


@dataclass
class StoreResult:
    """A row returned by the vector store."""

    id: str
    payload: dict[str, Any]
    score: float = 1.0


class LLM(Protocol):
    """Chat completion client."""

    async def complete(
        self, messages: list[dict[str, str]], json_mode: bool = False
    ) -> str:
        """Return the assistant text for a list of chat messages."""
        ...


class Embedder(Protocol):
    """Text embedding client producing fixed-dimension vectors."""

    @property
    def dimension(self) -> int:
        ...

    async def embed(self, text: str) -> list[float]:
        ...

    async def embed_batch(self, texts: Sequence[str]) -> list[list[float]]:
        """Embed many texts; the output order matches the input order."""
        ...


class Reranker(Protocol):
    """Reorders search candidates for a query."""

    async def rerank(
        self, query: str, candidates: list[StoreResult], top_k: int | None = None
    ) -> list[StoreResult]:
        ...


class VectorStore(Protocol):
    """Versioned multi-index memory store."""

    @property
    def ann_available(self) -> bool:
        ...

    def insert(
        self,
        vectors: Sequence[Sequence[float]],
        ids: Sequence[str],
        payloads: Sequence[dict[str, Any]],
    ) -> None:
        ...

    def search(
        self, vector: Sequence[float], limit: int, filters: Filters | None = None
    ) -> list[StoreResult]:
        ...

    def keyword_search(
        self, text: str, limit: int, filters: Filters | None = None
    ) -> list[StoreResult]:
        ...

    def get(self, record_id: str) -> StoreResult | None:
        ...

    def list(
        self, filters: Filters | None = None, limit: int = 100, offset: int = 0
    ) -> tuple[list[StoreResult], int]:
        ...

    def count(self, filters: Filters | None = None) -> int:
        ...

    def update(
        self, record_id: str, vector: Sequence[float], payload: dict[str, Any]
    ) -> None:
        ...

    def update_payload(self, record_id: str, payload: dict[str, Any]) -> None:
        ...

    def find_by_hash(self, content_hash: str, user_id: str) -> StoreResult | None:
        ...

    def delete(self, record_id: str) -> bool:
        ...

    def delete_all(self, filters: Filters | None = None) -> int:
        ...

    def close(self) -> None:
        ...


class HistoryStore(Protocol):
    """Append-only audit ledger."""

    def add(
        self,
        memory_id: str,
        action: HistoryAction,
        previous_value: str | None,
        new_value: str | None,
        user_id: str,
    ) -> HistoryEntry:
        ...

    def get_history(self, memory_id: str) -> list[HistoryEntry]:
        ...

    def reset(self, user_id: str | None = None) -> int:
        ...

    def close(self) -> None:
        ...


class GraphStore(Protocol):
    """Entity graph plus memory lineage edges."""

    def add_entities(
        self,
        entities: Sequence[Entity],
        relations: Sequence[GraphRelation],
        user_id: str,
    ) -> list[GraphRelation]:
        ...

    def search(self, query: str, user_id: str, limit: int = 10) -> list[GraphRelation]:
        ...

    def get_all(self, user_id: str) -> list[GraphRelation]:
        ...

    def get_neighbors(self, entity_name: str, user_id: str) -> list[GraphRelation]:
        ...

    def get_entities(self, user_id: str) -> list[Entity]:
        ...

    def get_lineage(self, memory_id: str) -> list[LineageEdge]:
        ...

    def create_update(
        self, new_memory_id: str, old_memory_id: str, reason: str, user_id: str
    ) -> None:
        ...

    def create_extend(self, new_memory_id: str, old_memory_id: str, user_id: str) -> None:
        ...

    def delete_all(self, user_id: str) -> None:
        ...

    def close(self) -> None:
        ...
