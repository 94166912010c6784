"""Memory engine: the public surface tying extraction, dedup, storage and search together."""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any, AsyncIterator, Callable

from groq import AsyncGroq

from .backends import (
    GroqLLM,
    NoopReranker,
    OpenAICompatEmbedder,
    OpenAICompatLLM,
    SqliteGraphStore,
    SqliteHistoryStore,
    SqliteVecStore,
)
from .config import MemoryConfig
from .dedup import Deduplicator
from .extraction import MemoryExtractor
from .models import (
    AddResult,
    DedupAction,
    Entity,
    ExtractedMemory,
    GraphRelation,
    HistoryAction,
    HistoryEntry,
    LineageEdge,
    MemoryRecord,
    MemoryType,
    RetentionResult,
    UserProfile,
)
from .parsing import parse_llm_object
from .prompts import ENTITY_PROMPT
from .retention import RetentionScanner
from .retrieval import QueryEmbeddingCache, SearchOptions, SearchPipeline
from .utils import Clock, hash_content, normalize_date, to_iso, utc_now

if TYPE_CHECKING:
    from .interfaces import LLM, Embedder, GraphStore, HistoryStore, Reranker, VectorStore
    from .logging import JSONLLogger

logger = logging.getLogger(__name__)

PAGE_SIZE = 1000

# Profile section -> categories it collects
PROFILE_SECTIONS = {
    "identity": ("identity",),
    "preferences": ("preferences",),
    "technical": ("technical", "infrastructure"),
    "relationships": ("relationships",),
    "goals": ("goals",),
    "projects": ("projects",),
    "life_events": ("life_events",),
    "other": ("knowledge", "health", "finance", "assistant", "other"),
}


def build_llm(config: MemoryConfig) -> LLM:
    """Create the LLM client named by config.llm.provider."""
    settings = config.llm
    if settings.provider == "groq":
        return GroqLLM(
            AsyncGroq(api_key=settings.api_key),
            model=settings.model,
            temperature=settings.temperature,
            max_tokens=settings.max_tokens,
            timeout=settings.timeout,
        )
    return OpenAICompatLLM(
        settings.base_url,
        api_key=settings.api_key,
        model=settings.model,
        temperature=settings.temperature,
        max_tokens=settings.max_tokens,
        timeout=settings.timeout,
        max_retries=settings.max_retries,
    )


def build_embedder(config: MemoryConfig) -> Embedder:
    settings = config.embedder
    return OpenAICompatEmbedder(
        settings.base_url,
        api_key=settings.api_key,
        model=settings.model,
        dimension=settings.dimension,
        batch_size=settings.batch_size,
        concurrency=settings.concurrency,
        timeout=settings.timeout,
        max_retries=settings.max_retries,
    )


class Memory:
    """Long-term memory for AI agents.

    Every backend can be injected; anything not passed in is built from the
    config (SQLite files under config.data_dir, HTTP or Groq clients).

    Example:
        async with Memory(load_config()) as memory:
            await memory.add([{"role": "user", "content": "I use Neovim"}], user_id="u1")
            results = await memory.search("editor", user_id="u1")

    Calls to add() for the same user are serialized, so two concurrent
    conversations cannot both arbitrate against the same stale state.
    """

    def __init__(
        self,
        config: MemoryConfig | None = None,
        *,
        llm: LLM | None = None,
        embedder: Embedder | None = None,
        vector_store: VectorStore | None = None,
        history_store: HistoryStore | None = None,
        graph_store: GraphStore | None = None,
        reranker: Reranker | None = None,
        event_log: JSONLLogger | None = None,
        clock: Clock = utc_now,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the engine.

        Args:
            config: Engine settings; defaults when omitted.
            llm: Chat client for extraction, arbitration and enrichment.
            embedder: Embedding client.
            vector_store: Memory store.
            history_store: Audit ledger.
            graph_store: Entity/lineage graph; ignored when config.enable_graph
                is False.
            reranker: Search reranker.
            event_log: Optional JSONL audit log of engine events.
            clock: Wall clock for timestamps and ages.
            monotonic: Clock for the query cache and timings.
        """
        self.config = config or MemoryConfig()
        self._clock = clock
        self._monotonic = monotonic
        self.event_log = event_log

        data_dir = self.config.data_dir
        self.llm = llm or build_llm(self.config)
        self.embedder = embedder or build_embedder(self.config)
        self.vector_store = vector_store or SqliteVecStore(
            data_dir / "vector.db",
            dimension=self.embedder.dimension,
            use_sqlite_vec=self.config.use_sqlite_vec,
        )
        self.history_store = history_store or SqliteHistoryStore(
            data_dir / "history.db", clock=clock
        )
        self.graph_store: GraphStore | None = None
        if self.config.enable_graph:
            self.graph_store = graph_store or SqliteGraphStore(data_dir / "graph.db", clock=clock)
        self.reranker = reranker or NoopReranker(self.config.rerank_top_k)

        self.extractor = MemoryExtractor(self.llm, self.config.custom_instructions)
        self.deduplicator = Deduplicator(
            self.vector_store,
            self.llm,
            semantic_threshold=self.config.dedup_threshold,
            max_candidates=self.config.max_dedup_candidates,
        )
        self.pipeline = SearchPipeline(
            self.vector_store,
            self.embedder,
            self.reranker,
            llm=self.llm,
            enable_query_rewriting=self.config.enable_query_rewriting,
            cache=QueryEmbeddingCache(
                ttl=self.config.query_cache_ttl,
                max_size=self.config.query_cache_size,
                clock=monotonic,
            ),
            clock=clock,
        )
        self.retention = RetentionScanner(
            self.vector_store, self.history_store, self.config.forgetting_rules, clock=clock
        )
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}

    @asynccontextmanager
    async def _user_lock(self, user_id: str) -> AsyncIterator[None]:
        """Hold the write lock of a user.

        The lock is dropped from the table once no caller holds or awaits it.
        """
        lock = self._locks.get(user_id)
        if lock is None:
            lock = self._locks[user_id] = asyncio.Lock()
        self._lock_users[user_id] = self._lock_users.get(user_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[user_id] -= 1
            if not self._lock_users[user_id]:
                del self._lock_users[user_id]
                del self._locks[user_id]

    def _log_event(self, event: str, **kwargs: Any) -> None:
        if self.event_log is not None:
            self.event_log.log(event, **kwargs)

    def _log_change(self, action: str, memory_id: str | None, user_id: str, **extra: Any) -> None:
        if self.event_log is not None:
            self.event_log.log_memory_change(action, memory_id, user_id, **extra)

    def _record_history(
        self,
        memory_id: str,
        action: HistoryAction,
        previous_value: str | None,
        new_value: str | None,
        user_id: str,
    ) -> None:
        """History write following a successful mutation; failures are logged."""
        try:
            self.history_store.add(memory_id, action, previous_value, new_value, user_id)
        except Exception:
            logger.exception("History %s for %s failed", action.value, memory_id)

    # ------------------------------------------------------------------
    # add()
    # ------------------------------------------------------------------

    async def add(
        self,
        messages: list[dict[str, Any]],
        user_id: str,
        custom_instructions: str | None = None,
        enable_graph: bool | None = None,
    ) -> AddResult:
        """Extract memories from a conversation, deduplicate and store them.

        Args:
            messages: Chat messages with "role" and "content".
            user_id: Owner of the memories.
            custom_instructions: Extra extraction instructions for this call.
            enable_graph: Set False to skip entity enrichment for this call.

        Returns:
            What was added, updated and skipped. Empty when the user is at
            config.max_memories.
        """
        if not user_id:
            raise ValueError("user_id is required")
        async with self._user_lock(user_id):
            return await self._add(messages, user_id, custom_instructions, enable_graph)

    async def _add(
        self,
        messages: list[dict[str, Any]],
        user_id: str,
        custom_instructions: str | None,
        enable_graph: bool | None,
    ) -> AddResult:
        result = AddResult()
        started = self._monotonic()

        current = self.vector_store.count({"user_id": user_id, "is_latest": True})
        if current >= self.config.max_memories:
            logger.warning(
                "max_memories reached (%d/%d) for user %s, rejecting add",
                current, self.config.max_memories, user_id,
            )
            self._log_event("add_rejected", user_id=user_id, count=current)
            return result

        extracted = await self.extractor.extract(messages, custom_instructions)
        if not extracted:
            return result
        embeddings = await self.embedder.embed_batch([e.memory for e in extracted])

        graph_queue: list[MemoryRecord] = []
        use_graph = self.graph_store is not None and enable_graph is not False

        # Sequential: each decision must see the previous candidate's writes
        for candidate, embedding in zip(extracted, embeddings):
            record = self._new_record(candidate, user_id)
            outcome = await self.deduplicator.deduplicate(record.memory, embedding, user_id)
            decision = outcome.decision
            target = outcome.candidate

            if decision.action is DedupAction.SKIP:
                result.deduplicated += 1
                self._log_change("skip", decision.target_id, user_id, reason=decision.reason)
                continue

            if decision.action is DedupAction.UPDATE and target is not None:
                self._supersede(record, embedding, target, decision.reason)
                result.updated.append(record)
                continue

            self.vector_store.insert([embedding], [record.id], [record.to_payload()])
            self._record_history(record.id, HistoryAction.ADD, None, record.memory, user_id)
            self._log_change("add", record.id, user_id)
            result.added.append(record)

            if decision.action is DedupAction.EXTEND and target is not None:
                if self.graph_store is not None:
                    try:
                        self.graph_store.create_extend(record.id, target.id, user_id)
                    except Exception as e:
                        logger.warning(
                            "Graph create_extend failed for %s -> %s: %s", record.id, target.id, e
                        )
            elif use_graph:
                graph_queue.append(record)

        if graph_queue:
            relation_lists = await asyncio.gather(
                *(self._add_to_graph(record, user_id) for record in graph_queue)
            )
            for relations in relation_lists:
                result.graph_relations.extend(relations)

        logger.info(
            "add for %s: %d added, %d updated, %d skipped in %.0fms",
            user_id,
            len(result.added),
            len(result.updated),
            result.deduplicated,
            (self._monotonic() - started) * 1000,
        )
        return result

    def _new_record(self, candidate: ExtractedMemory, user_id: str) -> MemoryRecord:
        ts = to_iso(self._clock())
        return MemoryRecord(
            id=uuid.uuid4().hex,
            memory=candidate.memory,
            user_id=user_id,
            category=candidate.category,
            memory_type=candidate.memory_type,
            created_at=ts,
            updated_at=ts,
            event_date=candidate.event_date,
        )

    def _supersede(
        self,
        record: MemoryRecord,
        embedding: list[float],
        target: MemoryRecord,
        reason: str,
    ) -> None:
        """Store record as the new latest version of target."""
        user_id = record.user_id
        old = self.vector_store.get(target.id)
        old_payload = dict(old.payload) if old is not None else None
        if old_payload is not None:
            self.vector_store.update_payload(
                target.id,
                {**old_payload, "isLatest": False, "updatedAt": record.updated_at},
            )

        record.version = target.version + 1
        try:
            self.vector_store.insert([embedding], [record.id], [record.to_payload()])
        except Exception:
            if old_payload is not None:
                self.vector_store.update_payload(target.id, old_payload)
            raise

        if self.graph_store is not None:
            try:
                self.graph_store.create_update(record.id, target.id, reason, user_id)
            except Exception as e:
                logger.warning(
                    "Graph create_update failed for %s -> %s: %s", record.id, target.id, e
                )

        self._record_history(record.id, HistoryAction.ADD, None, record.memory, user_id)
        self._record_history(
            target.id, HistoryAction.UPDATE, target.memory, record.memory, user_id
        )
        self._log_change(
            "update", record.id, user_id, supersedes=target.id, version=record.version
        )

    async def _add_to_graph(self, record: MemoryRecord, user_id: str) -> list[GraphRelation]:
        """Extract entities from one memory into the graph. Never raises."""
        try:
            raw = await self.llm.complete(
                [
                    {"role": "system", "content": ENTITY_PROMPT},
                    {"role": "user", "content": record.memory},
                ],
                json_mode=True,
            )
            data = parse_llm_object(raw) or {}
            entities = [
                Entity(name=str(e["name"]), type=str(e.get("type") or "unknown"), user_id=user_id)
                for e in data.get("entities") or []
                if isinstance(e, dict) and e.get("name")
            ]
            relations = [
                GraphRelation(
                    source_name=str(r["source"]),
                    relationship=str(r["relationship"]),
                    target_name=str(r["target"]),
                    confidence=float(r.get("confidence", 1.0)),
                )
                for r in data.get("relations") or []
                if isinstance(r, dict)
                and r.get("source") and r.get("relationship") and r.get("target")
            ]
            if not entities and not relations:
                return []
            return self.graph_store.add_entities(entities, relations, user_id)
        except Exception as e:
            logger.warning("Graph enrichment failed for memory %s: %s", record.id, e)
            return []

    # ------------------------------------------------------------------
    # search() / get() / get_all()
    # ------------------------------------------------------------------

    async def search(
        self,
        query: str,
        user_id: str,
        limit: int | None = None,
        threshold: float | None = None,
        category: str | None = None,
        memory_type: MemoryType | str | None = None,
        keyword_search: bool = False,
        from_date: str | None = None,
        to_date: str | None = None,
    ) -> list[MemoryRecord]:
        """Search a user's latest memories. Each result carries a score."""
        if not user_id:
            raise ValueError("user_id is required")
        options = SearchOptions(
            user_id=user_id,
            limit=limit if limit is not None else self.config.default_top_k,
            threshold=threshold if threshold is not None else self.config.default_threshold,
            category=category,
            memory_type=self._memory_type(memory_type),
            from_date=self._date_filter(from_date, "from_date"),
            to_date=self._date_filter(to_date, "to_date"),
            keyword_search=keyword_search,
        )
        started = self._monotonic()
        hits_before = self.pipeline.cache.hits
        results = await self.pipeline.search(query, options)
        if self.event_log is not None:
            self.event_log.log_search(
                user_id,
                len(results),
                (self._monotonic() - started) * 1000,
                cache_hit=self.pipeline.cache.hits > hits_before,
                keyword=keyword_search,
            )
        return results

    async def get(self, memory_id: str) -> MemoryRecord | None:
        result = self.vector_store.get(memory_id)
        if result is None:
            return None
        return MemoryRecord.from_payload(result.id, result.payload)

    async def get_all(
        self,
        user_id: str,
        category: str | None = None,
        memory_type: MemoryType | str | None = None,
        limit: int = 1000,
        offset: int = 0,
        only_latest: bool = True,
    ) -> list[MemoryRecord]:
        """List a user's memories, newest first."""
        filters: dict[str, Any] = {"user_id": user_id}
        if only_latest:
            filters["is_latest"] = True
        if category:
            filters["category"] = category
        parsed_type = self._memory_type(memory_type)
        if parsed_type is not None:
            filters["memory_type"] = parsed_type.value
        page, _ = self.vector_store.list(filters, limit=limit, offset=offset)
        return [MemoryRecord.from_payload(r.id, r.payload) for r in page]

    async def _all_latest(self, user_id: str) -> list[MemoryRecord]:
        records: list[MemoryRecord] = []
        offset = 0
        while True:
            page = await self.get_all(user_id, limit=PAGE_SIZE, offset=offset)
            records.extend(page)
            if len(page) < PAGE_SIZE:
                return records
            offset += PAGE_SIZE

    @staticmethod
    def _memory_type(value: MemoryType | str | None) -> MemoryType | None:
        if value is None:
            return None
        parsed = MemoryType.parse(value)
        if parsed is None:
            raise ValueError(f"Unknown memory type: {value!r}")
        return parsed

    @staticmethod
    def _date_filter(value: str | None, name: str) -> str | None:
        if not value:
            return None
        normalized = normalize_date(value)
        if normalized is None:
            raise ValueError(f"{name} is not an ISO 8601 date: {value!r}")
        return normalized

    # ------------------------------------------------------------------
    # update() / delete() / delete_all()
    # ------------------------------------------------------------------

    async def update(self, memory_id: str, text: str) -> MemoryRecord | None:
        """Edit a memory in place: same id, version + 1, re-embedded.

        Returns:
            The updated record, or None if the id does not exist.
        """
        text = text.strip()
        if not text:
            raise ValueError("text must not be empty")
        existing = await self.get(memory_id)
        if existing is None:
            return None

        embedding = await self.embedder.embed(text)
        previous = existing.memory
        existing.memory = text
        existing.hash = hash_content(text)
        existing.updated_at = to_iso(self._clock())
        existing.version += 1
        self.vector_store.update(memory_id, embedding, existing.to_payload())

        self._record_history(memory_id, HistoryAction.UPDATE, previous, text, existing.user_id)
        self._log_change("edit", memory_id, existing.user_id, version=existing.version)
        return existing

    async def delete(self, memory_id: str) -> bool:
        """Delete a memory, recording the deletion in history first.

        Returns:
            False if the id does not exist.
        """
        existing = await self.get(memory_id)
        if existing is None:
            return False
        self.history_store.add(
            memory_id, HistoryAction.DELETE, existing.memory, None, existing.user_id
        )
        deleted = self.vector_store.delete(memory_id)
        self._log_change("delete", memory_id, existing.user_id)
        return deleted

    async def delete_all(self, user_id: str, purge_history: bool = False) -> int:
        """Delete every memory of a user.

        A history "delete" entry is written for each record before removal.
        With purge_history the user's ledger is cleared afterwards.

        Returns:
            Number of records removed.
        """
        if not user_id:
            raise ValueError("user_id is required")
        async with self._user_lock(user_id):
            offset = 0
            while True:
                page = await self.get_all(
                    user_id, limit=PAGE_SIZE, offset=offset, only_latest=False
                )
                for record in page:
                    self.history_store.add(
                        record.id, HistoryAction.DELETE, record.memory, None, user_id
                    )
                if len(page) < PAGE_SIZE:
                    break
                offset += PAGE_SIZE

            removed = self.vector_store.delete_all({"user_id": user_id})
            if self.graph_store is not None:
                try:
                    self.graph_store.delete_all(user_id)
                except Exception:
                    logger.exception("Graph cleanup failed for user %s", user_id)
            if purge_history:
                self.history_store.reset(user_id)

        self.pipeline.cache.clear()
        self._log_event("memory_delete_all", user_id=user_id, count=removed)
        return removed

    # ------------------------------------------------------------------
    # history / retention / graph / profile
    # ------------------------------------------------------------------

    async def history(self, memory_id: str) -> list[HistoryEntry]:
        """Audit trail of a memory, oldest first."""
        return self.history_store.get_history(memory_id)

    async def retention_scan(self, user_id: str, auto_delete: bool = False) -> RetentionResult:
        """Find memories past their retention rule; delete them if asked."""
        if not self.config.forgetting_rules.enabled:
            return RetentionResult()
        result = self.retention.scan(user_id, auto_delete=auto_delete)
        if self.event_log is not None:
            self.event_log.log_retention(
                user_id, len(result.expired), result.deleted, dry_run=not auto_delete
            )
        return result

    async def graph_relations(self, user_id: str) -> list[GraphRelation]:
        if self.graph_store is None:
            return []
        return self.graph_store.get_all(user_id)

    async def graph_search(self, query: str, user_id: str, limit: int = 10) -> list[GraphRelation]:
        if self.graph_store is None:
            return []
        return self.graph_store.search(query, user_id, limit)

    async def graph_entities(self, user_id: str) -> list[Entity]:
        if self.graph_store is None:
            return []
        return self.graph_store.get_entities(user_id)

    async def graph_neighbors(self, entity_name: str, user_id: str) -> list[GraphRelation]:
        if self.graph_store is None:
            return []
        return self.graph_store.get_neighbors(entity_name, user_id)

    async def lineage(self, memory_id: str) -> list[LineageEdge]:
        """UPDATES/EXTENDS edges touching a memory."""
        if self.graph_store is None:
            return []
        return self.graph_store.get_lineage(memory_id)

    async def profile(self, user_id: str) -> UserProfile:
        """Group a user's latest memories into profile sections."""
        profile = UserProfile(user_id=user_id, generated_at=to_iso(self._clock()))
        section_of = {
            category: section
            for section, categories in PROFILE_SECTIONS.items()
            for category in categories
        }
        for record in await self._all_latest(user_id):
            getattr(profile, section_of.get(record.category, "other")).append(record)
        return profile

    # ------------------------------------------------------------------
    # lifecycle
    # ------------------------------------------------------------------

    async def close(self) -> None:
        """Close stores and HTTP clients."""
        self.vector_store.close()
        self.history_store.close()
        if self.graph_store is not None:
            self.graph_store.close()
        for client in (self.llm, self.embedder):
            aclose = getattr(client, "aclose", None)
            if aclose is not None:
                await aclose()

    async def __aenter__(self) -> Memory:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()
