"""Passthrough reranker."""

from ..interfaces import StoreResult


class NoopReranker:
    """Keeps the store's ordering, optionally truncated to top_k."""

    def __init__(self, top_k: int | None = None) -> None:
        self.top_k = top_k

    async def rerank(
        self, query: str, candidates: list[StoreResult], top_k: int | None = None
    ) -> list[StoreResult]:
        limit = top_k if top_k is not None else self.top_k
        if limit is not None and limit < len(candidates):
            return candidates[:limit]
        return list(candidates)
