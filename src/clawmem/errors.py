"""Error hierarchy for the memory engine.

Every error raised by ClawMem derives from ClawMemError, so callers can catch
the whole family or a specific backend failure:

    try:
        await memory.add(messages, user_id="u1")
    except LLMError:
        ...
"""


class ClawMemError(Exception):
    """Base class for all ClawMem errors."""


class ConfigError(ClawMemError):
    """Invalid configuration value."""


class LLMError(ClawMemError):
    """LLM request failed (HTTP error, empty response, exhausted retries)."""


class LLMTimeoutError(LLMError):
    """LLM request exceeded its timeout and was aborted."""


class EmbedderError(ClawMemError):
    """Embedding request failed."""


class EmbedderTimeoutError(EmbedderError):
    """Embedding request exceeded its timeout and was aborted."""


class DimensionMismatchError(EmbedderError):
    """A vector does not match the store's configured dimension."""

    def __init__(self, expected: int, actual: int, index: int) -> None:
        self.expected = expected
        self.actual = actual
        self.index = index
        super().__init__(
            f"Embedding dimension mismatch: expected {expected}, "
            f"got {actual} (index {index})"
        )


class StorageError(ClawMemError):
    """Storage layer failure (SQLite I/O, constraint violation)."""
