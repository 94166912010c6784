"""Concrete backends for the memory engine."""

from .groq_llm import GroqLLM
from .noop_reranker import NoopReranker
from .openai_compat import OpenAICompatEmbedder, OpenAICompatLLM
from .sqlite_graph import SqliteGraphStore
from .sqlite_history import SqliteHistoryStore
from .sqlite_vec import SqliteVecStore

__all__ = [
    "GroqLLM",
    "NoopReranker",
    "OpenAICompatEmbedder",
    "OpenAICompatLLM",
    "SqliteGraphStore",
    "SqliteHistoryStore",
    "SqliteVecStore",
]
