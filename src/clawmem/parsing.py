"""Tolerant JSON parsing for model output.

Models wrap JSON in markdown fences, prepend reasoning, or emit <think>
blocks. parse_llm_json() tries, in order:

1. the whole text (after removing <think>...</think>)
2. the text with a surrounding ``` / ```json fence removed
3. the span from the first "{" to the last "}"

and returns None when none of them parse.
"""

import json
import re
from typing import Any

_THINK_RE = re.compile(r"<think>.*?</think>", re.DOTALL | re.IGNORECASE)
_FENCE_RE = re.compile(r"^```[a-zA-Z]*\s*(.*?)\s*```$", re.DOTALL)
_BRACES_RE = re.compile(r"\{.*\}", re.DOTALL)


def _loads(text: str) -> Any | None:
    try:
        return json.loads(text)
    except (json.JSONDecodeError, ValueError):
        return None


def parse_llm_json(raw: str | None) -> Any | None:
    """Parse JSON out of a model response, or return None."""
    if not raw:
        return None

    cleaned = _THINK_RE.sub("", raw).strip()
    if not cleaned:
        return None

    parsed = _loads(cleaned)
    if parsed is not None:
        return parsed

    fence = _FENCE_RE.match(cleaned)
    if fence:
        parsed = _loads(fence.group(1))
        if parsed is not None:
            return parsed

    match = _BRACES_RE.search(cleaned)
    if match:
        return _loads(match.group(0))

    return None


def parse_llm_object(raw: str | None) -> dict[str, Any] | None:
    """Like parse_llm_json() but only accepts a JSON object."""
    parsed = parse_llm_json(raw)
    return parsed if isinstance(parsed, dict) else None
