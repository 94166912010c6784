"""Small helpers shared across the engine."""

import hashlib
import math
from datetime import datetime, timezone
from typing import Callable, Sequence

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    """Default wall clock: timezone-aware UTC now."""
    return datetime.now(timezone.utc)


def to_iso(dt: datetime) -> str:
    """Format a datetime as ISO 8601 in UTC with a trailing Z."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def parse_date(value: object) -> datetime | None:
    """Parse an ISO 8601 string into an aware datetime, or None if invalid.

    Naive values are assumed to be UTC. A bare date ("2024-05-01") is
    accepted and read as midnight UTC.
    """
    if not isinstance(value, str) or not value.strip():
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        dt = datetime.fromisoformat(text)
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def normalize_date(value: object) -> str | None:
    """Return the canonical ISO form of a date string, or None if unparseable."""
    dt = parse_date(value)
    return to_iso(dt) if dt is not None else None


def age_in_days(reference: str, now: datetime) -> float | None:
    """Fractional days between an ISO timestamp and now."""
    dt = parse_date(reference)
    if dt is None:
        return None
    return (now - dt).total_seconds() / 86400.0


def hash_content(content: str) -> str:
    """Hash text for exact-duplicate detection.

    The text is trimmed and case-folded first, so "I use Vim" and
    "  i use vim " hash identically. Returns the first 16 hex chars of sha256.
    """
    normalized = content.strip().lower()
    return hashlib.sha256(normalized.encode("utf-8")).hexdigest()[:16]


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity of two vectors; 0.0 for empty or zero vectors."""
    length = min(len(a), len(b))
    if length == 0:
        return 0.0
    dot = 0.0
    norm_a = 0.0
    norm_b = 0.0
    for i in range(length):
        x = a[i]
        y = b[i]
        dot += x * y
        norm_a += x * x
        norm_b += y * y
    if norm_a == 0.0 or norm_b == 0.0:
        return 0.0
    return dot / (math.sqrt(norm_a) * math.sqrt(norm_b))
