"""LLM prompt templates."""

from .dedup import build_dedup_prompt
from .entities import ENTITY_PROMPT
from .extraction import CATEGORY_DESCRIPTIONS, build_extraction_prompt
from .rewrite import build_rewrite_prompt

__all__ = [
    "CATEGORY_DESCRIPTIONS",
    "ENTITY_PROMPT",
    "build_dedup_prompt",
    "build_extraction_prompt",
    "build_rewrite_prompt",
]
