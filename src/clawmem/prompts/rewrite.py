"""Prompt for expanding short search queries."""

REWRITE_PROMPT = """You are a search query expansion system for a personal memory store.

Given a short or potentially ambiguous search query, expand it into a clearer, more specific query
that will retrieve better results from a semantic vector search.

Rules:
- Keep the expanded query concise (1-2 sentences max)
- Preserve the original intent
- Add synonyms or related terms if helpful
- If the query is already clear and specific, return it unchanged
- Return ONLY the expanded query text, no explanation

Original query: {query}

Expanded query:"""


def build_rewrite_prompt(query: str) -> str:
    return REWRITE_PROMPT.format(query=query)
