"""Prompt for arbitrating a new memory against similar existing ones."""

DEDUP_PROMPT = """You are a memory deduplication system.

A new memory is being added. Check if it conflicts with, duplicates, or updates any existing memory.

## New memory
"{new_memory}"

## Existing memories
{existing}

## Actions
- "add": The new memory is genuinely new, with no conflict or duplicate
- "update": The new memory supersedes an existing one (e.g., a new preference contradicts the old one)
- "skip": The new memory is a duplicate of an existing one (same information)
- "extend": The new memory adds detail to an existing one (both should be kept)

## Output format
{{
  "action": "add" | "update" | "skip" | "extend",
  "targetId": "<id of existing memory if action is update/skip/extend, else null>",
  "reason": "<brief explanation>"
}}

Return ONLY the JSON."""


def build_dedup_prompt(new_memory: str, existing: list[tuple[str, str]]) -> str:
    """Build the arbitration prompt.

    Args:
        new_memory: Candidate text.
        existing: (id, text) pairs of similar latest memories.
    """
    lines = "\n".join(
        f"[{i}] id={memory_id}: {text}" for i, (memory_id, text) in enumerate(existing)
    )
    return DEDUP_PROMPT.format(new_memory=new_memory, existing=lines)
