"""ClawMem - local long-term memory engine for AI agents."""

from .config import EmbedderSettings, LLMSettings, MemoryConfig, load_config
from .errors import (
    ClawMemError,
    ConfigError,
    DimensionMismatchError,
    EmbedderError,
    EmbedderTimeoutError,
    LLMError,
    LLMTimeoutError,
    StorageError,
)
from .memory import Memory
from .models import (
    AddResult,
    DedupAction,
    HistoryAction,
    MemoryRecord,
    MemoryType,
    RetentionResult,
    RetentionRules,
    UserProfile,
)

__version__ = "0.1.0"

__all__ = [
    "AddResult",
    "ClawMemError",
    "ConfigError",
    "DedupAction",
    "DimensionMismatchError",
    "EmbedderError",
    "EmbedderSettings",
    "EmbedderTimeoutError",
    "HistoryAction",
    "LLMError",
    "LLMSettings",
    "LLMTimeoutError",
    "Memory",
    "MemoryConfig",
    "MemoryRecord",
    "MemoryType",
    "RetentionResult",
    "RetentionRules",
    "StorageError",
    "UserProfile",
    "load_config",
]
