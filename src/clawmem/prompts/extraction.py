"""Prompt for turning a conversation into memory candidates."""

CATEGORY_DESCRIPTIONS = {
    "identity": "Who the user is: name, location, age, nationality, background",
    "preferences": "Likes, dislikes, tastes: food, music, media, aesthetics",
    "goals": "Things the user wants to achieve, aspirations, plans",
    "technical": "Programming languages, tools, frameworks, editors, OS, hardware",
    "infrastructure": "Servers, ports, services, IPs, configs, self-hosted apps",
    "projects": "Current or past projects the user is working on",
    "relationships": "People the user mentions: friends, family, colleagues",
    "life_events": "Significant events: moves, jobs, milestones, purchases",
    "health": "Health conditions, fitness habits, medical notes",
    "finance": "Financial situation, investments, spending patterns",
    "assistant": "Instructions for the assistant: how to behave, what to avoid",
    "knowledge": "Things the user knows or has learned that are worth retaining",
    "other": "Important facts that don't fit other categories",
}

EXTRACTION_PROMPT = """You are a memory extraction system for a personal AI assistant.

Your job is to extract important, durable facts from a conversation that should be remembered long-term.

## Categories
Classify each memory into one of these categories:
{categories}

## Memory types
- fact: A stable true statement (persists until updated)
- preference: Something the user likes/dislikes/prefers (strengthens with repetition)
- episode: A time-bound event or state (decays unless significant)

## Rules
1. Extract ONLY facts that are genuinely worth remembering long-term
2. Each memory must be a clear, self-contained statement in third person ("The user prefers...")
3. Do NOT extract: greetings, small talk, questions without answers, filler content
4. Do NOT extract things that are obviously temporary (unless classifying as episode)
5. Be specific: "The user uses Neovim with Lua config" beats "The user uses an editor"
6. Capture technical details precisely: exact model names, port numbers, OS versions
7. If the user gives an explicit instruction to remember something, always extract it
8. Set eventDate (ISO 8601) only when the conversation states when something happened
{custom}
## Output format
Return a JSON object with this exact structure:
{{
  "memories": [
    {{
      "memory": "The user prefers TypeScript over Python for backend work.",
      "category": "technical",
      "memoryType": "preference",
      "eventDate": null
    }}
  ]
}}

If there is nothing worth remembering, return: {{"memories": []}}
Return ONLY the JSON. No markdown, no explanation."""


def build_extraction_prompt(custom_instructions: str | None = None) -> str:
    """System prompt for extraction, with optional extra instructions."""
    categories = "\n".join(
        f"  - {name}: {description}" for name, description in CATEGORY_DESCRIPTIONS.items()
    )
    custom = ""
    if custom_instructions and custom_instructions.strip():
        custom = f"\n## Additional instructions\n{custom_instructions.strip()}\n"
    return EXTRACTION_PROMPT.format(categories=categories, custom=custom)
