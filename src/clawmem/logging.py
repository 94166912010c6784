"""JSONL event log for memory operations.

One JSON object per line. The active file rotates once it reaches
``max_size_mb``; rotated files carry a UTC timestamp suffix and only the
newest ``backup_count`` of them are kept.
"""

import json
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterator


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class LogEntry:
    """A single event."""

    timestamp: str
    event: str
    user_id: str | None = None
    memory_id: str | None = None
    action: str | None = None
    count: int | None = None
    duration_ms: float | None = None
    error: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dict, excluding None values."""
        data = asdict(self)
        return {k: v for k, v in data.items() if v is not None and v != {} and v != []}


class JSONLLogger:
    """Appends engine events to ``<log_dir>/<filename>``."""

    def __init__(
        self,
        log_dir: str | Path | None = None,
        filename: str = "events.jsonl",
        max_size_mb: float = 10.0,
        backup_count: int = 5,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        if log_dir is None:
            log_dir = Path.home() / ".clawmem" / "logs"
        self.log_dir = Path(log_dir)
        self.log_dir.mkdir(parents=True, exist_ok=True)
        self.filename = filename
        self.max_size_bytes = int(max_size_mb * 1024 * 1024)
        self.backup_count = backup_count
        self._clock = clock

    @property
    def log_path(self) -> Path:
        return self.log_dir / self.filename

    def rotated_files(self) -> list[Path]:
        """Rotated files, oldest first."""
        return sorted(self.log_dir.glob(f"{self.log_path.stem}_*{self.log_path.suffix}"))

    def _rotate_if_needed(self) -> None:
        path = self.log_path
        if not path.exists() or path.stat().st_size < self.max_size_bytes:
            return

        suffix = self._clock().strftime("%Y%m%d_%H%M%S_%f")
        target = self.log_dir / f"{path.stem}_{suffix}{path.suffix}"
        n = 1
        while target.exists():
            target = self.log_dir / f"{path.stem}_{suffix}_{n}{path.suffix}"
            n += 1
        path.rename(target)

        rotated = self.rotated_files()
        for old in rotated[: max(len(rotated) - self.backup_count, 0)]:
            old.unlink(missing_ok=True)

    def log(
        self,
        event: str,
        *,
        user_id: str | None = None,
        memory_id: str | None = None,
        action: str | None = None,
        count: int | None = None,
        duration_ms: float | None = None,
        error: str | None = None,
        **extra: Any,
    ) -> None:
        """Append one event; unknown keyword arguments land in ``extra``."""
        entry = LogEntry(
            timestamp=self._clock().isoformat(),
            event=event,
            user_id=user_id,
            memory_id=memory_id,
            action=action,
            count=count,
            duration_ms=duration_ms,
            error=error,
            extra=extra,
        )
        self._rotate_if_needed()
        with open(self.log_path, "a", encoding="utf-8") as f:
            f.write(json.dumps(entry.to_dict(), ensure_ascii=False) + "\n")

    def log_memory_change(self, action: str, memory_id: str | None, user_id: str, **extra: Any) -> None:
        """Record an add, update, edit, skip or delete of one memory as ``memory_<action>``."""
        event = "memory_update" if action == "edit" else f"memory_{action}"
        self.log(event, user_id=user_id, memory_id=memory_id, action=action, **extra)

    def log_search(
        self,
        user_id: str,
        results: int,
        duration_ms: float,
        *,
        cache_hit: bool = False,
        keyword: bool = False,
    ) -> None:
        self.log(
            "search",
            user_id=user_id,
            count=results,
            duration_ms=round(duration_ms, 3),
            cache_hit=cache_hit,
            keyword=keyword,
        )

    def log_retention(self, user_id: str, expired: int, deleted: int, *, dry_run: bool) -> None:
        self.log("retention_scan", user_id=user_id, count=expired, deleted=deleted, dry_run=dry_run)

    def read_events(
        self, event: str | None = None, user_id: str | None = None
    ) -> Iterator[dict[str, Any]]:
        """Iterate over entries of the active file, optionally filtered.

        Lines that are not valid JSON are skipped.
        """
        if not self.log_path.exists():
            return
        with open(self.log_path, encoding="utf-8") as f:
            for line in f:
                try:
                    entry = json.loads(line)
                except json.JSONDecodeError:
                    continue
                if event is not None and entry.get("event") != event:
                    continue
                if user_id is not None and entry.get("user_id") != user_id:
                    continue
                yield entry


# Process-wide default used by the CLI
_logger: JSONLLogger | None = None


def get_logger() -> JSONLLogger:
    """Return the process-wide logger, creating it under ~/.clawmem/logs."""
    global _logger
    if _logger is None:
        _logger = JSONLLogger()
    return _logger


def configure_logger(log_dir: str | Path | None = None, max_size_mb: float = 10.0) -> JSONLLogger:
    """Replace the process-wide logger."""
    global _logger
    _logger = JSONLLogger(log_dir=log_dir, max_size_mb=max_size_mb)
    return _logger
