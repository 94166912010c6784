"""Configuration for the memory engine.

Settings are layered: dataclass defaults, then ~/.clawmem/config.json (or the
file named by CLAWMEM_CONFIG), then environment variables. The entry point
loads a .env file first, so values there behave like real env vars.
"""

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .errors import ConfigError
from .models import RetentionRules

logger = logging.getLogger(__name__)

DEFAULT_DATA_DIR = Path.home() / ".clawmem"
DEFAULT_CONFIG_PATH = DEFAULT_DATA_DIR / "config.json"

MAX_EMBED_CONCURRENCY = 8


@dataclass
class LLMSettings:
    """Chat model endpoint.

    Attributes:
        provider: "groq" for the Groq SDK, "openai" for any
            OpenAI-compatible /chat/completions endpoint.
        base_url: Endpoint root for the openai provider.
        api_key: Credential; Groq reads GROQ_API_KEY when unset.
        model: Model name.
        temperature: Sampling temperature.
        max_tokens: Completion cap.
        timeout: Seconds before a request is aborted.
        max_retries: Retries for 429/5xx responses.
    """

    provider: str = "openai"
    base_url: str = "http://localhost:11434/v1"
    api_key: str | None = None
    model: str = "gpt-4o-mini"
    temperature: float = 0.1
    max_tokens: int = 4096
    timeout: float = 60.0
    max_retries: int = 2

    def __post_init__(self) -> None:
        if self.provider not in ("groq", "openai"):
            raise ConfigError(f"Unknown LLM provider: {self.provider}")
        if self.timeout <= 0:
            raise ConfigError("llm.timeout must be positive")


@dataclass
class EmbedderSettings:
    """Embedding endpoint (OpenAI-compatible /embeddings)."""

    base_url: str = "http://localhost:11434/v1"
    api_key: str | None = None
    model: str = "nomic-embed-text"
    dimension: int = 768
    batch_size: int = 10
    concurrency: int = 2
    timeout: float = 30.0
    max_retries: int = 2

    def __post_init__(self) -> None:
        if self.dimension < 1:
            raise ConfigError("embedder.dimension must be at least 1")
        if self.batch_size < 1:
            raise ConfigError("embedder.batch_size must be at least 1")
        self.concurrency = max(1, min(self.concurrency, MAX_EMBED_CONCURRENCY))


@dataclass
class MemoryConfig:
    """Top-level engine configuration.

    Attributes:
        data_dir: Directory holding vector.db, history.db and graph.db.
        llm: Chat model settings.
        embedder: Embedding settings.
        enable_graph: Maintain the entity/lineage graph.
        dedup_threshold: Cosine similarity at which arbitration kicks in.
        max_dedup_candidates: Records examined by the dedup hash/semantic steps.
        default_top_k: Default search limit.
        default_threshold: Default minimum search score.
        max_memories: Latest-record cap per user; add() is rejected at the cap.
        custom_instructions: Extra extraction instructions.
        forgetting_rules: Retention days per memory type.
        enable_query_rewriting: Expand short queries with the LLM.
        rerank_top_k: Candidates kept by the default reranker (None keeps all).
        query_cache_ttl: Seconds a cached query embedding stays valid.
        query_cache_size: Max cached query embeddings.
        use_sqlite_vec: Try to load the sqlite-vec extension.
    """

    data_dir: Path = field(default_factory=lambda: DEFAULT_DATA_DIR)
    llm: LLMSettings = field(default_factory=LLMSettings)
    embedder: EmbedderSettings = field(default_factory=EmbedderSettings)
    enable_graph: bool = True
    dedup_threshold: float = 0.85
    max_dedup_candidates: int = 20
    default_top_k: int = 10
    default_threshold: float = 0.5
    max_memories: int = 10000
    custom_instructions: str = ""
    forgetting_rules: RetentionRules = field(default_factory=RetentionRules)
    enable_query_rewriting: bool = False
    rerank_top_k: int | None = None
    query_cache_ttl: float = 60.0
    query_cache_size: int = 200
    use_sqlite_vec: bool = True

    def __post_init__(self) -> None:
        self.data_dir = Path(self.data_dir).expanduser()
        if not 0.0 <= self.dedup_threshold <= 1.0:
            raise ConfigError("dedup_threshold must be between 0 and 1")
        if not 0.0 <= self.default_threshold <= 1.0:
            raise ConfigError("default_threshold must be between 0 and 1")
        if self.default_top_k < 1:
            raise ConfigError("default_top_k must be at least 1")
        if self.max_memories < 1:
            raise ConfigError("max_memories must be at least 1")
        if self.query_cache_size < 1:
            raise ConfigError("query_cache_size must be at least 1")
        for name in ("fact", "preference", "episode"):
            if getattr(self.forgetting_rules, name) < 0:
                raise ConfigError(f"forgetting_rules.{name} cannot be negative")


def load_config(config_path: Path | None = None) -> MemoryConfig:
    """Load MemoryConfig from JSON and environment.

    The config file looks like:
    ```json
    {
      "data_dir": "~/.clawmem",
      "llm": {"provider": "groq", "model": "llama-3.1-70b-versatile"},
      "embedder": {"base_url": "http://localhost:11434/v1", "dimension": 768},
      "dedup_threshold": 0.85,
      "forgetting_rules": {"episode": 30}
    }
    ```

    Args:
        config_path: Path to config file. Falls back to CLAWMEM_CONFIG, then
            DEFAULT_CONFIG_PATH.

    Returns:
        MemoryConfig with file values overridden by environment variables.
    """
    env_path = os.getenv("CLAWMEM_CONFIG")
    path = config_path or (Path(env_path).expanduser() if env_path else DEFAULT_CONFIG_PATH)

    data: dict[str, Any] = {}
    if path.exists():
        try:
            with open(path, "r", encoding="utf-8") as f:
                loaded = json.load(f)
            if isinstance(loaded, dict):
                data = loaded
            else:
                logger.warning("Config in %s is not an object. Using defaults.", path)
        except json.JSONDecodeError as e:
            logger.warning("Invalid JSON in %s: %s. Using defaults.", path, e)
        except OSError as e:
            logger.warning("Cannot read %s: %s. Using defaults.", path, e)
    else:
        logger.debug("No config file at %s, using defaults", path)

    _apply_env(data)
    return _parse_config(data)


def _apply_env(data: dict[str, Any]) -> None:
    """Overlay environment variables onto raw config data."""
    llm = data.setdefault("llm", {})
    embedder = data.setdefault("embedder", {})

    if os.getenv("CLAWMEM_DATA_DIR"):
        data["data_dir"] = os.environ["CLAWMEM_DATA_DIR"]
    if os.getenv("CLAWMEM_LLM_PROVIDER"):
        llm["provider"] = os.environ["CLAWMEM_LLM_PROVIDER"]
    if os.getenv("CLAWMEM_LLM_BASE_URL"):
        llm["base_url"] = os.environ["CLAWMEM_LLM_BASE_URL"]
    if os.getenv("CLAWMEM_LLM_MODEL"):
        llm["model"] = os.environ["CLAWMEM_LLM_MODEL"]
    api_key = os.getenv("CLAWMEM_LLM_API_KEY") or os.getenv("GROQ_API_KEY")
    if api_key and not llm.get("api_key"):
        llm["api_key"] = api_key
    if os.getenv("CLAWMEM_EMBEDDER_BASE_URL"):
        embedder["base_url"] = os.environ["CLAWMEM_EMBEDDER_BASE_URL"]
    if os.getenv("CLAWMEM_EMBEDDER_MODEL"):
        embedder["model"] = os.environ["CLAWMEM_EMBEDDER_MODEL"]
    if os.getenv("CLAWMEM_EMBEDDER_API_KEY"):
        embedder["api_key"] = os.environ["CLAWMEM_EMBEDDER_API_KEY"]
    if os.getenv("CLAWMEM_EMBEDDING_DIM"):
        embedder["dimension"] = _env_number("CLAWMEM_EMBEDDING_DIM", int)
    if os.getenv("CLAWMEM_DEDUP_THRESHOLD"):
        data["dedup_threshold"] = _env_number("CLAWMEM_DEDUP_THRESHOLD", float)
    if os.getenv("CLAWMEM_MAX_MEMORIES"):
        data["max_memories"] = _env_number("CLAWMEM_MAX_MEMORIES", int)
    if os.getenv("CLAWMEM_QUERY_REWRITE"):
        data["enable_query_rewriting"] = _env_flag("CLAWMEM_QUERY_REWRITE")
    if os.getenv("CLAWMEM_DISABLE_SQLITE_VEC"):
        data["use_sqlite_vec"] = not _env_flag("CLAWMEM_DISABLE_SQLITE_VEC")


def _env_flag(name: str) -> bool:
    return os.getenv(name, "").strip().lower() in ("1", "true", "yes", "on")


def _env_number(name: str, kind: type) -> Any:
    raw = os.environ[name]
    try:
        return kind(raw)
    except ValueError:
        raise ConfigError(f"{name} must be a number, got {raw!r}") from None


def _parse_config(data: dict[str, Any]) -> MemoryConfig:
    """Parse raw config data into MemoryConfig.

    Unknown keys are ignored; type errors in known keys raise ConfigError.
    """
    llm_data = data.get("llm") or {}
    embedder_data = data.get("embedder") or {}
    rules_data = data.get("forgetting_rules") or {}
    if not isinstance(llm_data, dict) or not isinstance(embedder_data, dict):
        raise ConfigError("'llm' and 'embedder' must be objects")
    if not isinstance(rules_data, dict):
        raise ConfigError("'forgetting_rules' must be an object")

    try:
        llm = LLMSettings(**_known(llm_data, LLMSettings))
        embedder = EmbedderSettings(**_known(embedder_data, EmbedderSettings))
        rules = RetentionRules(
            fact=int(rules_data.get("fact", 0)),
            preference=int(rules_data.get("preference", 0)),
            episode=int(rules_data.get("episode", 0)),
        )
        top = _known(data, MemoryConfig)
        top.pop("llm", None)
        top.pop("embedder", None)
        top.pop("forgetting_rules", None)
        return MemoryConfig(llm=llm, embedder=embedder, forgetting_rules=rules, **top)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid configuration: {e}") from e


def _known(data: dict[str, Any], cls: type) -> dict[str, Any]:
    """Keep only keys that are fields of the dataclass."""
    names = set(cls.__dataclass_fields__)
    return {k: v for k, v in data.items() if k in names}
