"""Memory extraction from conversations using an LLM."""

import logging
from typing import Any

from .interfaces import LLM
from .models import MEMORY_CATEGORIES, ExtractedMemory, MemoryType
from .parsing import parse_llm_object
from .prompts import build_extraction_prompt
from .utils import normalize_date

logger = logging.getLogger(__name__)


class MemoryExtractor:
    """Extracts candidate memories from a conversation.

    Extraction does not persist anything; deduplication and storage happen
    in Memory.
    """

    def __init__(self, llm: LLM, custom_instructions: str = "") -> None:
        """Initialize the extractor.

        Args:
            llm: Client used for the extraction call.
            custom_instructions: Default extra instructions for every call.
        """
        self.llm = llm
        self.custom_instructions = custom_instructions

    async def extract(
        self,
        messages: list[dict[str, Any]],
        custom_instructions: str | None = None,
    ) -> list[ExtractedMemory]:
        """Extract memories from a conversation.

        Args:
            messages: Chat messages with "role" and "content".
            custom_instructions: Overrides the default extra instructions.

        Returns:
            Valid candidates, empty if none were found or the output was
            malformed. LLM errors propagate.
        """
        conversation_text = self._format_conversation(messages)
        if not conversation_text:
            return []

        instructions = (
            custom_instructions if custom_instructions is not None else self.custom_instructions
        )
        content = await self.llm.complete(
            [
                {"role": "system", "content": build_extraction_prompt(instructions)},
                {
                    "role": "user",
                    "content": f"Extract memories from this conversation:\n\n{conversation_text}",
                },
            ],
            json_mode=True,
        )
        return self._parse_response(content)

    def _format_conversation(self, messages: list[dict[str, Any]]) -> str:
        """Format messages into a readable conversation string."""
        lines = []
        for msg in messages:
            role = msg.get("role", "user")
            content = str(msg.get("content") or "").strip()
            if role == "system" or not content:
                continue
            speaker = "User" if role == "user" else "Assistant"
            lines.append(f"{speaker}: {content}")
        return "\n".join(lines)

    def _parse_response(self, content: str) -> list[ExtractedMemory]:
        """Parse LLM response into candidates, dropping invalid items."""
        data = parse_llm_object(content)
        if data is None or not isinstance(data.get("memories"), list):
            logger.warning("Invalid extraction response: missing 'memories' list")
            return []

        memories = []
        for item in data["memories"]:
            if not isinstance(item, dict):
                logger.debug("Skipping non-object extraction item: %r", item)
                continue
            text = item.get("memory")
            category = item.get("category")
            memory_type = MemoryType.parse(item.get("memoryType"))
            if not isinstance(text, str) or not text.strip():
                continue
            if not isinstance(category, str) or memory_type is None:
                logger.debug("Skipping extraction item with bad category/type: %r", item)
                continue

            category = category.strip().lower()
            if category not in MEMORY_CATEGORIES:
                category = "other"
            memories.append(
                ExtractedMemory(
                    memory=text.strip(),
                    category=category,
                    memory_type=memory_type,
                    event_date=normalize_date(item.get("eventDate")),
                )
            )
        return memories
