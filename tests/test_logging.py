"""Tests for JSONL logging."""

import json
import tempfile
from datetime import datetime, timezone
from pathlib import Path

import pytest

from clawmem.logging import JSONLLogger, LogEntry, configure_logger, get_logger


@pytest.fixture
def temp_log_dir():
    """Create a temporary directory for logs."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def logger(temp_log_dir: Path) -> JSONLLogger:
    return JSONLLogger(log_dir=temp_log_dir)


def read_entries(logger: JSONLLogger) -> list[dict]:
    with open(logger.log_path) as f:
        return [json.loads(line) for line in f]


def test_log_entry_to_dict():
    """Test LogEntry excludes None values."""
    entry = LogEntry(timestamp="2024-01-01T00:00:00Z", event="test")
    data = entry.to_dict()

    assert "timestamp" in data
    assert "event" in data
    assert "user_id" not in data  # None excluded
    assert "extra" not in data  # Empty dict excluded


def test_log_entry_keeps_zero_count():
    entry = LogEntry(timestamp="2024-01-01T00:00:00Z", event="search", count=0)
    assert entry.to_dict()["count"] == 0


def test_log_creates_file(logger: JSONLLogger):
    """Test that logging creates the log file."""
    logger.log("test_event")

    assert logger.log_path.exists()


def test_log_writes_jsonl(logger: JSONLLogger):
    """Test that logs are written in JSONL format."""
    logger.log("event1", user_id="u1")
    logger.log("event2", user_id="u2")

    entries = read_entries(logger)

    assert len(entries) == 2
    assert entries[0]["event"] == "event1"
    assert entries[0]["user_id"] == "u1"
    assert entries[1]["event"] == "event2"


def test_log_memory_change(logger: JSONLLogger):
    """Test logging a single memory mutation."""
    logger.log_memory_change("update", "m1", "u1", version=2)

    entry = read_entries(logger)[0]

    assert entry["event"] == "memory_update"
    assert entry["action"] == "update"
    assert entry["memory_id"] == "m1"
    assert entry["extra"]["version"] == 2


def test_log_search(logger: JSONLLogger):
    """Test logging a search request."""
    logger.log_search("u1", 3, 12.5, cache_hit=True)

    entry = read_entries(logger)[0]

    assert entry["event"] == "search"
    assert entry["count"] == 3
    assert entry["duration_ms"] == 12.5
    assert entry["extra"] == {"cache_hit": True, "keyword": False}


def test_log_retention(logger: JSONLLogger):
    """Test logging a retention sweep."""
    logger.log_retention("u1", 4, 0, dry_run=True)

    entry = read_entries(logger)[0]

    assert entry["event"] == "retention_scan"
    assert entry["count"] == 4
    assert entry["extra"]["dry_run"] is True


def test_rotation(temp_log_dir: Path):
    """Test log rotation when max size is exceeded."""
    logger = JSONLLogger(log_dir=temp_log_dir, max_size_mb=0.001)  # ~1KB

    # Write enough to trigger rotation
    for i in range(100):
        logger.log(f"event_{i}", data="x" * 100)

    # Should have rotated files
    log_files = list(temp_log_dir.glob("events*.jsonl"))
    assert len(log_files) >= 2


def test_rotation_keeps_backup_count(temp_log_dir: Path):
    """Only the newest rotated files survive."""
    logger = JSONLLogger(log_dir=temp_log_dir, max_size_mb=0.0005, backup_count=2)

    for i in range(200):
        logger.log(f"event_{i}", data="x" * 100)

    assert len(logger.rotated_files()) == 2
    assert logger.log_path.exists()


def test_extra_fields(logger: JSONLLogger):
    """Test that extra fields are included."""
    logger.log("custom", custom_field="value", another=123)

    entry = read_entries(logger)[0]

    assert entry["extra"]["custom_field"] == "value"
    assert entry["extra"]["another"] == 123


def test_configure_logger(temp_log_dir: Path):
    """configure_logger replaces the global instance."""
    configured = configure_logger(temp_log_dir / "custom")

    assert get_logger() is configured
    assert configured.log_dir == temp_log_dir / "custom"


def test_edit_logged_as_update(logger: JSONLLogger):
    """In-place edits share the memory_update event."""
    logger.log_memory_change("edit", "m1", "u1")

    entry = read_entries(logger)[0]

    assert entry["event"] == "memory_update"
    assert entry["action"] == "edit"


def test_timestamp_from_clock(temp_log_dir: Path):
    fixed = datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)
    logger = JSONLLogger(log_dir=temp_log_dir, clock=lambda: fixed)

    logger.log("tick")

    assert read_entries(logger)[0]["timestamp"] == "2025-06-01T12:00:00+00:00"


def test_rotated_name_from_clock(temp_log_dir: Path):
    """Rotated files are named after the injected clock, never overwritten."""
    fixed = datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)
    logger = JSONLLogger(log_dir=temp_log_dir, max_size_mb=0.0001, clock=lambda: fixed)

    for i in range(3):
        logger.log(f"event_{i}", data="x" * 200)

    names = [p.name for p in logger.rotated_files()]
    assert names == [
        "events_20250601_120000_000000.jsonl",
        "events_20250601_120000_000000_1.jsonl",
    ]


def test_read_events_filters(logger: JSONLLogger):
    """read_events filters by event and user and skips corrupt lines."""
    logger.log_memory_change("add", "m1", "u1")
    logger.log_memory_change("add", "m2", "u2")
    with open(logger.log_path, "a") as f:
        f.write("{truncated\n")
    logger.log_search("u1", 1, 2.0)

    assert [e["memory_id"] for e in logger.read_events(event="memory_add")] == ["m1", "m2"]
    assert [e["event"] for e in logger.read_events(user_id="u1")] == ["memory_add", "search"]


def test_read_events_missing_file(logger: JSONLLogger):
    assert list(logger.read_events()) == []
