"""Search pipeline: query embedding, ANN fetch, rerank and score blending."""

import logging
import time
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from .interfaces import LLM, Embedder, Filters, Reranker, StoreResult, VectorStore
from .models import MemoryRecord, MemoryType
from .prompts import build_rewrite_prompt
from .utils import Clock, age_in_days, utc_now

logger = logging.getLogger(__name__)

PREFERENCE_BOOST = 1.1
EPISODE_DECAY_FLOOR = 0.7
KEYWORD_WEIGHT = 0.7

REWRITE_MAX_CHARS = 15
REWRITE_MAX_WORDS = 4
REWRITE_MIN_RESULT_CHARS = 5


@dataclass
class SearchOptions:
    """Parameters of one search call."""

    user_id: str
    limit: int = 10
    threshold: float = 0.5
    category: str | None = None
    memory_type: MemoryType | None = None
    from_date: str | None = None
    to_date: str | None = None
    keyword_search: bool = False

    def filters(self) -> Filters:
        """Store filters for this search, restricted to latest records."""
        filters: Filters = {"user_id": self.user_id, "is_latest": True}
        if self.category:
            filters["category"] = self.category
        if self.memory_type is not None:
            filters["memory_type"] = self.memory_type.value
        if self.from_date:
            filters["from_date"] = self.from_date
        if self.to_date:
            filters["to_date"] = self.to_date
        return filters


class QueryEmbeddingCache:
    """Bounded TTL cache of query embeddings.

    Values are `(effective_query, vector)` pairs.

    Entries expire `ttl` seconds after insertion. When full, the least
    recently used entry is evicted.
    """

    def __init__(
        self,
        ttl: float = 60.0,
        max_size: int = 200,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl = ttl
        self.max_size = max_size
        self._clock = clock
        self._entries: OrderedDict[tuple, tuple[float, tuple[str, list[float]]]] = OrderedDict()
        self.hits = 0
        self.misses = 0

    def get(self, key: tuple) -> tuple[str, list[float]] | None:
        entry = self._entries.get(key)
        if entry is None:
            self.misses += 1
            return None
        stored_at, value = entry
        if self._clock() - stored_at >= self.ttl:
            del self._entries[key]
            self.misses += 1
            return None
        self._entries.move_to_end(key)
        self.hits += 1
        return value

    def put(self, key: tuple, value: tuple[str, list[float]]) -> None:
        self._entries[key] = (self._clock(), value)
        self._entries.move_to_end(key)
        while len(self._entries) > self.max_size:
            self._entries.popitem(last=False)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


async def rewrite_query(query: str, llm: LLM) -> str:
    """Expand a short query with the LLM.

    Only queries under 15 characters and under 4 words are sent. Any failure,
    or an expansion of 5 characters or less, returns the original query.
    """
    if len(query) >= REWRITE_MAX_CHARS or len(query.split()) >= REWRITE_MAX_WORDS:
        return query
    try:
        expanded = await llm.complete([{"role": "user", "content": build_rewrite_prompt(query)}])
    except Exception as e:
        logger.warning("Query rewrite failed, using original query: %s", e)
        return query
    cleaned = expanded.strip().strip("\"'").strip()
    return cleaned if len(cleaned) > REWRITE_MIN_RESULT_CHARS else query


def adjust_score(record: MemoryRecord, score: float, now: datetime) -> float:
    """Apply the memory-type weighting to a similarity score, capped at 1.0."""
    if record.memory_type is MemoryType.PREFERENCE:
        score *= PREFERENCE_BOOST
    elif record.memory_type is MemoryType.EPISODE:
        age = age_in_days(record.created_at, now)
        if age is not None:
            score *= max(EPISODE_DECAY_FLOOR, 1.0 - (max(age, 0.0) / 100.0) * 0.3)
    return min(score, 1.0)


class SearchPipeline:
    """Runs a query through embedding, fetch, rerank, filtering and blending.

    Steps:
        1. optional rewrite of short queries
        2. embed, through the instance's QueryEmbeddingCache
        3. fetch max(2 * limit, 10) latest records with all filters applied
        4. rerank
        5. drop results below the threshold
        6. weight by memory type
        7. optionally merge BM25 keyword hits by id, keeping the higher score
        8. sort descending and truncate to limit
    """

    def __init__(
        self,
        store: VectorStore,
        embedder: Embedder,
        reranker: Reranker,
        llm: LLM | None = None,
        enable_query_rewriting: bool = False,
        cache: QueryEmbeddingCache | None = None,
        clock: Clock = utc_now,
    ) -> None:
        self.store = store
        self.embedder = embedder
        self.reranker = reranker
        self.llm = llm
        self.enable_query_rewriting = enable_query_rewriting and llm is not None
        self.cache = cache or QueryEmbeddingCache()
        self._clock = clock

    async def embed_query(self, query: str, user_id: str) -> tuple[str, list[float]]:
        """Effective query text and its embedding. Cached.

        The effective text is the rewritten query when rewriting is enabled
        and produced an expansion, otherwise the query itself.
        """
        key = (user_id, query, self.enable_query_rewriting)
        cached = self.cache.get(key)
        if cached is not None:
            return cached

        text = query
        if self.enable_query_rewriting and self.llm is not None:
            text = await rewrite_query(query, self.llm)
            if text != query:
                logger.debug("Rewrote query %r -> %r", query, text)
        vector = await self.embedder.embed(text)
        self.cache.put(key, (text, vector))
        return text, vector

    async def search(self, query: str, options: SearchOptions) -> list[MemoryRecord]:
        """Ranked latest memories of one user for a query.

        Raises:
            EmbedderError: The query could not be embedded.
        """
        if not query.strip() or options.limit <= 0:
            return []

        filters = options.filters()
        effective_query, vector = await self.embed_query(query, options.user_id)
        fetch_limit = max(options.limit * 2, 10)
        candidates = self.store.search(vector, fetch_limit, filters)
        candidates = await self.reranker.rerank(query, candidates)

        now = self._clock()
        scored: dict[str, MemoryRecord] = {}
        for result in candidates:
            if result.score < options.threshold:
                continue
            record = MemoryRecord.from_payload(result.id, result.payload)
            record.score = adjust_score(record, result.score, now)
            if result.id not in scored or record.score > scored[result.id].score:
                scored[result.id] = record

        if options.keyword_search:
            for hit in self.store.keyword_search(effective_query, fetch_limit, filters):
                self._merge_keyword_hit(scored, hit)

        ranked = sorted(scored.values(), key=lambda r: r.score or 0.0, reverse=True)
        return ranked[: options.limit]

    @staticmethod
    def _merge_keyword_hit(scored: dict[str, MemoryRecord], hit: StoreResult) -> None:
        score = min(1.0, hit.score) * KEYWORD_WEIGHT
        existing = scored.get(hit.id)
        if existing is None:
            scored[hit.id] = MemoryRecord.from_payload(hit.id, hit.payload, score)
        elif score > (existing.score or 0.0):
            existing.score = score
