"""SQLite audit ledger of memory changes."""

import logging
import sqlite3
import uuid
from pathlib import Path

from ..errors import StorageError
from ..models import HistoryAction, HistoryEntry
from ..utils import Clock, to_iso, utc_now

logger = logging.getLogger(__name__)


class SqliteHistoryStore:
    """Append-only history of add/update/delete events per memory.

    Rows are never modified; reset() is the only way to remove them.
    """

    def __init__(self, db_path: Path | str, clock: Clock = utc_now) -> None:
        """Initialize the store.

        Args:
            db_path: SQLite file path, or ":memory:".
            clock: Source of entry timestamps.
        """
        self.db_path = db_path
        self._clock = clock
        self._conn: sqlite3.Connection | None = None

    def _get_connection(self) -> sqlite3.Connection:
        """Get or create the database connection."""
        if self._conn is None:
            if str(self.db_path) != ":memory:":
                Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
            try:
                self._conn = sqlite3.connect(str(self.db_path))
                self._conn.row_factory = sqlite3.Row
                self.init_db()
            except sqlite3.Error as e:
                raise StorageError(f"Cannot open history database: {e}") from e
        return self._conn

    def init_db(self) -> None:
        """Create the history table if it doesn't exist."""
        conn = self._conn
        assert conn is not None
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS memory_history (
                seq             INTEGER PRIMARY KEY AUTOINCREMENT,
                id              TEXT NOT NULL UNIQUE,
                memory_id       TEXT NOT NULL,
                action          TEXT NOT NULL,
                previous_value  TEXT,
                new_value       TEXT,
                user_id         TEXT NOT NULL,
                created_at      TEXT NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_history_memory ON memory_history(memory_id);
            CREATE INDEX IF NOT EXISTS idx_history_user ON memory_history(user_id);
        """)
        conn.commit()

    def add(
        self,
        memory_id: str,
        action: HistoryAction,
        previous_value: str | None,
        new_value: str | None,
        user_id: str,
    ) -> HistoryEntry:
        """Append one entry.

        Returns:
            The stored entry with its id and timestamp.
        """
        entry = HistoryEntry(
            id=uuid.uuid4().hex,
            memory_id=memory_id,
            action=action,
            previous_value=previous_value,
            new_value=new_value,
            user_id=user_id,
            created_at=to_iso(self._clock()),
        )
        conn = self._get_connection()
        try:
            conn.execute(
                """
                INSERT INTO memory_history
                    (id, memory_id, action, previous_value, new_value, user_id, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    entry.id,
                    entry.memory_id,
                    entry.action.value,
                    entry.previous_value,
                    entry.new_value,
                    entry.user_id,
                    entry.created_at,
                ),
            )
            conn.commit()
        except sqlite3.Error as e:
            raise StorageError(f"History write failed: {e}") from e
        return entry

    def get_history(self, memory_id: str) -> list[HistoryEntry]:
        """All entries for a memory, oldest first."""
        conn = self._get_connection()
        try:
            cursor = conn.execute(
                """
                SELECT id, memory_id, action, previous_value, new_value, user_id, created_at
                FROM memory_history WHERE memory_id = ?
                ORDER BY created_at ASC, seq ASC
                """,
                (memory_id,),
            )
            rows = cursor.fetchall()
        except sqlite3.Error as e:
            raise StorageError(f"History read failed: {e}") from e
        return [self._row_to_entry(row) for row in rows]

    def reset(self, user_id: str | None = None) -> int:
        """Delete entries of one user, or all entries when user_id is None.

        Returns:
            Number of entries deleted.
        """
        conn = self._get_connection()
        try:
            if user_id is None:
                cursor = conn.execute("DELETE FROM memory_history")
            else:
                cursor = conn.execute(
                    "DELETE FROM memory_history WHERE user_id = ?", (user_id,)
                )
            conn.commit()
        except sqlite3.Error as e:
            raise StorageError(f"History reset failed: {e}") from e
        logger.info("Reset %d history entries", cursor.rowcount)
        return cursor.rowcount

    def close(self) -> None:
        """Close the database connection."""
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    @staticmethod
    def _row_to_entry(row: sqlite3.Row) -> HistoryEntry:
        return HistoryEntry(
            id=row["id"],
            memory_id=row["memory_id"],
            action=HistoryAction(row["action"]),
            previous_value=row["previous_value"],
            new_value=row["new_value"],
            user_id=row["user_id"],
            created_at=row["created_at"],
        )
