"""Deduplication and contradiction arbitration for new memories.

A candidate goes through three steps:

1. Hash check: an identical normalized text among the user's latest
   memories is skipped without calling the LLM.
2. Semantic gate: latest memories with cosine similarity at or above the
   threshold become arbitration candidates (at most five).
3. Arbitration: the LLM picks add, update, skip or extend. Anything it
   returns that cannot be acted on safely degrades to add.
"""

import logging
from dataclasses import dataclass
from typing import Sequence

from .interfaces import LLM, StoreResult, VectorStore
from .models import DedupAction, DedupDecision, MemoryRecord
from .parsing import parse_llm_object
from .prompts import build_dedup_prompt
from .utils import hash_content

logger = logging.getLogger(__name__)

MAX_ARBITRATION_CANDIDATES = 5


@dataclass
class DedupOutcome:
    """Decision plus the existing record it targets, if any."""

    decision: DedupDecision
    candidate: MemoryRecord | None = None


class Deduplicator:
    """Decides how a candidate memory relates to what is already stored."""

    def __init__(
        self,
        store: VectorStore,
        llm: LLM,
        semantic_threshold: float = 0.85,
        max_candidates: int = 20,
        max_arbitration_candidates: int = MAX_ARBITRATION_CANDIDATES,
    ) -> None:
        self.store = store
        self.llm = llm
        self.semantic_threshold = semantic_threshold
        self.max_candidates = max_candidates
        self.max_arbitration_candidates = max_arbitration_candidates

    async def deduplicate(
        self, text: str, embedding: Sequence[float], user_id: str
    ) -> DedupOutcome:
        """Decide what to do with a candidate memory.

        Raises:
            LLMError: The arbitration call failed.
        """
        content_hash = hash_content(text)
        hit = self._find_hash_match(content_hash, user_id)
        if hit is not None:
            return DedupOutcome(
                DedupDecision(DedupAction.SKIP, hit.id, "exact duplicate (hash match)"),
                MemoryRecord.from_payload(hit.id, hit.payload, hit.score),
            )

        similar = self.store.search(
            embedding, self.max_candidates, {"user_id": user_id, "is_latest": True}
        )
        candidates = [r for r in similar if r.score >= self.semantic_threshold]
        candidates = candidates[: self.max_arbitration_candidates]
        if not candidates:
            return DedupOutcome(DedupDecision(DedupAction.ADD, None, "no similar memories"))

        prompt = build_dedup_prompt(
            text, [(c.id, str(c.payload.get("memory") or "")) for c in candidates]
        )
        raw = await self.llm.complete([{"role": "user", "content": prompt}], json_mode=True)
        return self._resolve(raw, candidates)

    def _find_hash_match(self, content_hash: str, user_id: str) -> StoreResult | None:
        recent, _ = self.store.list(
            {"user_id": user_id, "is_latest": True}, limit=self.max_candidates
        )
        for result in recent:
            if result.payload.get("hash") == content_hash:
                return result

        found = self.store.find_by_hash(content_hash, user_id)
        if found is not None and found.payload.get("isLatest") is not False:
            return found
        return None

    def _resolve(self, raw: str, candidates: list[StoreResult]) -> DedupOutcome:
        """Turn the arbitration response into an actionable outcome."""
        data = parse_llm_object(raw)
        action = None
        if data is not None and isinstance(data.get("action"), str):
            try:
                action = DedupAction(data["action"].strip().lower())
            except ValueError:
                action = None
        if data is None or action is None:
            logger.warning("Could not parse dedup decision: %r", (raw or "")[:200])
            return DedupOutcome(DedupDecision(DedupAction.ADD, None, "failed to parse decision"))

        reason = data.get("reason") if isinstance(data.get("reason"), str) else ""
        if action is DedupAction.ADD:
            return DedupOutcome(DedupDecision(DedupAction.ADD, None, reason))

        target_id = data.get("targetId")
        target = next((c for c in candidates if c.id == target_id), None)
        if target is None:
            logger.warning("Dedup %s named unknown target %r, adding instead", action.value, target_id)
            return DedupOutcome(DedupDecision(DedupAction.ADD, None, "unresolved target"))

        return DedupOutcome(
            DedupDecision(action, target.id, reason),
            MemoryRecord.from_payload(target.id, target.payload, target.score),
        )
