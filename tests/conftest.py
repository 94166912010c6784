"""Shared fakes and fixtures for the ClawMem test suite."""

import hashlib
import json
import re
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Union

import pytest

from clawmem.backends import SqliteGraphStore, SqliteHistoryStore, SqliteVecStore
from clawmem.config import MemoryConfig
from clawmem.memory import Memory
from clawmem.utils import hash_content

DIM = 8

_ID_RE = re.compile(r"id=(\w+)")

Responder = Union[str, Callable[[str], str]]


def unit(axis: int, dim: int = DIM) -> list[float]:
    """A unit vector along one axis."""
    vector = [0.0] * dim
    vector[axis] = 1.0
    return vector


def mix(weights: dict[int, float], dim: int = DIM) -> list[float]:
    """A vector with the given weight on each axis."""
    vector = [0.0] * dim
    for axis, weight in weights.items():
        vector[axis] = weight
    return vector


class FakeClock:
    """Settable wall clock."""

    def __init__(self, now: datetime | None = None) -> None:
        self.now = now or datetime(2025, 6, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


class FakeLLM:
    """Scripted LLM that answers by prompt kind.

    Each kind has a queue of responses. A response is either a string or a
    callable receiving the prompt text. An empty queue yields the default.
    """

    DEFAULTS = {
        "extraction": '{"memories": []}',
        "dedup": '{"action": "add", "reason": "new"}',
        "entities": '{"entities": [], "relations": []}',
        "rewrite": "",
    }

    def __init__(self) -> None:
        self.queues: dict[str, list[Responder]] = {kind: [] for kind in self.DEFAULTS}
        self.calls: list[tuple[str, list[dict[str, str]]]] = []

    @staticmethod
    def _kind(messages: list[dict[str, str]]) -> str:
        text = "\n".join(m.get("content", "") for m in messages)
        if "memory extraction system" in text:
            return "extraction"
        if "memory deduplication system" in text:
            return "dedup"
        if "entity and relationship extraction system" in text:
            return "entities"
        if "search query expansion system" in text:
            return "rewrite"
        return "other"

    def calls_of(self, kind: str) -> list[list[dict[str, str]]]:
        return [messages for k, messages in self.calls if k == kind]

    def queue_extraction(self, *memories: dict[str, Any]) -> None:
        """Queue one extraction response holding the given memories."""
        self.queues["extraction"].append(json.dumps({"memories": list(memories)}))

    def queue_dedup(self, action: str, reason: str = "") -> None:
        """Queue an arbitration answer targeting the first listed candidate."""

        def answer(prompt: str) -> str:
            match = _ID_RE.search(prompt)
            target = match.group(1) if match else None
            return json.dumps({"action": action, "targetId": target, "reason": reason})

        self.queues["dedup"].append(answer)

    def queue_entities(self, entities: list[dict], relations: list[dict]) -> None:
        self.queues["entities"].append(json.dumps({"entities": entities, "relations": relations}))

    async def complete(self, messages: list[dict[str, str]], json_mode: bool = False) -> str:
        kind = self._kind(messages)
        self.calls.append((kind, messages))
        queue = self.queues.get(kind)
        if not queue:
            return self.DEFAULTS.get(kind, "")
        response = queue.pop(0)
        if callable(response):
            return response(messages[-1]["content"])
        return response


class StaticEmbedder:
    """Embedder with explicit vectors per text and a hash fallback."""

    def __init__(self, vectors: dict[str, list[float]] | None = None, dim: int = DIM) -> None:
        self.vectors = dict(vectors or {})
        self._dimension = dim
        self.embedded: list[str] = []

    @property
    def dimension(self) -> int:
        return self._dimension

    def _fallback(self, text: str) -> list[float]:
        digest = hashlib.sha256(text.encode("utf-8")).digest()
        return [(b / 127.5) - 1.0 for b in digest[: self._dimension]]

    async def embed(self, text: str) -> list[float]:
        self.embedded.append(text)
        return list(self.vectors.get(text) or self._fallback(text))

    async def embed_batch(self, texts) -> list[list[float]]:
        return [await self.embed(text) for text in texts]


def make_payload(
    memory: str,
    user_id: str = "u1",
    *,
    category: str = "other",
    memory_type: str = "fact",
    created_at: str = "2025-06-01T12:00:00.000000Z",
    is_latest: bool = True,
    version: int = 1,
    event_date: str | None = None,
) -> dict[str, Any]:
    return {
        "memory": memory,
        "userId": user_id,
        "category": category,
        "memoryType": memory_type,
        "createdAt": created_at,
        "updatedAt": created_at,
        "isLatest": is_latest,
        "version": version,
        "eventDate": event_date,
        "hash": hash_content(memory),
        "metadata": {},
    }


@pytest.fixture
def payload() -> Callable[..., dict[str, Any]]:
    return make_payload


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def llm() -> FakeLLM:
    return FakeLLM()


@pytest.fixture
def embedder() -> StaticEmbedder:
    return StaticEmbedder()


@pytest.fixture
def vector_store(tmp_path: Path):
    store = SqliteVecStore(tmp_path / "vector.db", dimension=DIM, use_sqlite_vec=False)
    yield store
    store.close()


@pytest.fixture
def history_store(tmp_path: Path, clock: FakeClock):
    store = SqliteHistoryStore(tmp_path / "history.db", clock=clock)
    yield store
    store.close()


@pytest.fixture
def graph_store(tmp_path: Path, clock: FakeClock):
    store = SqliteGraphStore(tmp_path / "graph.db", clock=clock)
    yield store
    store.close()


@pytest.fixture
def make_memory(tmp_path: Path, llm: FakeLLM, embedder: StaticEmbedder, clock: FakeClock):
    """Factory for Memory instances wired to fakes; config fields as kwargs."""
    engines: list[Memory] = []

    def factory(**overrides: Any) -> Memory:
        overrides.setdefault("data_dir", tmp_path / "data")
        overrides.setdefault("use_sqlite_vec", False)
        components = {
            key: overrides.pop(key)
            for key in ("event_log", "history_store", "graph_store", "reranker")
            if key in overrides
        }
        engine = Memory(
            MemoryConfig(**overrides), llm=llm, embedder=embedder, clock=clock, **components
        )
        engines.append(engine)
        return engine

    yield factory
    for engine in engines:
        engine.vector_store.close()
        engine.history_store.close()
        if engine.graph_store is not None:
            engine.graph_store.close()


@pytest.fixture
def memory(make_memory: Callable[..., Memory]) -> Memory:
    """Memory with default config."""
    return make_memory()
