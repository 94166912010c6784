"""SQLite entity graph and memory lineage."""

import logging
import re
import sqlite3
import uuid
from pathlib import Path
from typing import Sequence

from ..errors import StorageError
from ..models import Entity, GraphRelation, LineageEdge
from ..utils import Clock, to_iso, utc_now

logger = logging.getLogger(__name__)

UPDATES = "UPDATES"
EXTENDS = "EXTENDS"

_TOKEN_RE = re.compile(r"\w{2,}")


def _like_pattern(token: str) -> str:
    """Substring LIKE pattern with the wildcards of `token` escaped."""
    escaped = token.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


_RELATION_SELECT = """
    SELECT s.id AS source_id, s.name AS source_name, r.relationship,
           t.id AS target_id, t.name AS target_name, r.confidence, r.created_at
    FROM relations r
    JOIN entities s ON s.id = r.source_id
    JOIN entities t ON t.id = r.target_id
"""


class SqliteGraphStore:
    """Entities with typed relations, plus UPDATES/EXTENDS edges between memories.

    Entities are unique per (name, user_id), names compared case-insensitively.
    Memory nodes are stubs holding only id, owner and the latest flag; the
    vector store remains the source of truth for content.
    """

    def __init__(self, db_path: Path | str, clock: Clock = utc_now) -> None:
        self.db_path = db_path
        self._clock = clock
        self._conn: sqlite3.Connection | None = None

    def _get_connection(self) -> sqlite3.Connection:
        """Get or create the database connection."""
        if self._conn is None:
            if str(self.db_path) != ":memory:":
                Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
            try:
                conn = sqlite3.connect(str(self.db_path))
                conn.row_factory = sqlite3.Row
                conn.execute("PRAGMA foreign_keys=ON")
                self._init_schema(conn)
            except sqlite3.Error as e:
                raise StorageError(f"Cannot open graph database: {e}") from e
            self._conn = conn
        return self._conn

    @staticmethod
    def _init_schema(conn: sqlite3.Connection) -> None:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS entities (
                id          TEXT PRIMARY KEY,
                name        TEXT NOT NULL COLLATE NOCASE,
                type        TEXT NOT NULL,
                user_id     TEXT NOT NULL,
                created_at  TEXT NOT NULL,
                updated_at  TEXT NOT NULL,
                UNIQUE(name, user_id)
            );
            CREATE TABLE IF NOT EXISTS relations (
                seq           INTEGER PRIMARY KEY AUTOINCREMENT,
                source_id     TEXT NOT NULL REFERENCES entities(id) ON DELETE CASCADE,
                target_id     TEXT NOT NULL REFERENCES entities(id) ON DELETE CASCADE,
                relationship  TEXT NOT NULL,
                confidence    REAL NOT NULL DEFAULT 1.0,
                user_id       TEXT NOT NULL,
                created_at    TEXT NOT NULL,
                UNIQUE(source_id, relationship, target_id)
            );
            CREATE TABLE IF NOT EXISTS memory_nodes (
                id          TEXT PRIMARY KEY,
                user_id     TEXT NOT NULL,
                is_latest   INTEGER NOT NULL DEFAULT 1,
                created_at  TEXT NOT NULL,
                updated_at  TEXT NOT NULL
            );
            CREATE TABLE IF NOT EXISTS lineage (
                seq         INTEGER PRIMARY KEY AUTOINCREMENT,
                source_id   TEXT NOT NULL,
                target_id   TEXT NOT NULL,
                kind        TEXT NOT NULL,
                reason      TEXT,
                user_id     TEXT NOT NULL,
                created_at  TEXT NOT NULL,
                UNIQUE(source_id, target_id, kind)
            );
            CREATE INDEX IF NOT EXISTS idx_entities_user ON entities(user_id);
            CREATE INDEX IF NOT EXISTS idx_relations_user ON relations(user_id);
            CREATE INDEX IF NOT EXISTS idx_lineage_source ON lineage(source_id);
            CREATE INDEX IF NOT EXISTS idx_lineage_target ON lineage(target_id);
        """)
        conn.commit()

    def _upsert_entity(
        self, conn: sqlite3.Connection, name: str, entity_type: str, user_id: str, ts: str
    ) -> str:
        """Insert or touch an entity and return its id."""
        conn.execute(
            """
            INSERT INTO entities (id, name, type, user_id, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(name, user_id) DO UPDATE SET updated_at = excluded.updated_at
            """,
            (uuid.uuid4().hex, name, entity_type, user_id, ts, ts),
        )
        row = conn.execute(
            "SELECT id FROM entities WHERE name = ? AND user_id = ?", (name, user_id)
        ).fetchone()
        return row["id"]

    def add_entities(
        self,
        entities: Sequence[Entity],
        relations: Sequence[GraphRelation],
        user_id: str,
    ) -> list[GraphRelation]:
        """Upsert entities and create relations between them.

        A relation naming an entity that is not in `entities` creates that
        entity with type "unknown". Repeating an existing relation refreshes
        its confidence.

        Returns:
            The stored relations, with entity ids filled in.
        """
        ts = to_iso(self._clock())
        conn = self._get_connection()
        stored: list[GraphRelation] = []
        try:
            with conn:
                ids: dict[str, str] = {}
                for entity in entities:
                    name = entity.name.strip()
                    if name:
                        ids[name.lower()] = self._upsert_entity(
                            conn, name, entity.type or "unknown", user_id, ts
                        )

                for rel in relations:
                    source = rel.source_name.strip()
                    target = rel.target_name.strip()
                    if not source or not target or not rel.relationship.strip():
                        continue
                    for name in (source, target):
                        if name.lower() not in ids:
                            ids[name.lower()] = self._upsert_entity(
                                conn, name, "unknown", user_id, ts
                            )
                    conn.execute(
                        """
                        INSERT INTO relations
                            (source_id, target_id, relationship, confidence, user_id, created_at)
                        VALUES (?, ?, ?, ?, ?, ?)
                        ON CONFLICT(source_id, relationship, target_id)
                            DO UPDATE SET confidence = excluded.confidence
                        """,
                        (
                            ids[source.lower()],
                            ids[target.lower()],
                            rel.relationship.strip(),
                            rel.confidence,
                            user_id,
                            ts,
                        ),
                    )
                    stored.append(
                        GraphRelation(
                            source_name=source,
                            relationship=rel.relationship.strip(),
                            target_name=target,
                            source_id=ids[source.lower()],
                            target_id=ids[target.lower()],
                            confidence=rel.confidence,
                            created_at=ts,
                        )
                    )
        except sqlite3.Error as e:
            raise StorageError(f"Graph write failed: {e}") from e
        return stored

    def search(self, query: str, user_id: str, limit: int = 10) -> list[GraphRelation]:
        """Relations whose endpoint names contain a query token, newest first.

        An empty or token-less query returns the most recent relations.
        """
        tokens = [t.lower() for t in _TOKEN_RE.findall(query)]
        sql = _RELATION_SELECT + " WHERE r.user_id = ?"
        params: list = [user_id]
        if tokens:
            clauses = []
            for token in tokens:
                clauses.append(
                    "(lower(s.name) LIKE ? ESCAPE '\\' OR lower(t.name) LIKE ? ESCAPE '\\')"
                )
                pattern = _like_pattern(token)
                params.extend([pattern, pattern])
            sql += " AND (" + " OR ".join(clauses) + ")"
        sql += " ORDER BY r.created_at DESC, r.seq DESC LIMIT ?"
        params.append(limit)
        return self._relations(sql, params)

    def get_all(self, user_id: str) -> list[GraphRelation]:
        return self._relations(
            _RELATION_SELECT + " WHERE r.user_id = ? ORDER BY r.seq", [user_id]
        )

    def get_neighbors(self, entity_name: str, user_id: str) -> list[GraphRelation]:
        """Relations touching the named entity in either direction."""
        return self._relations(
            _RELATION_SELECT
            + " WHERE r.user_id = ? AND (s.name = ? OR t.name = ?) ORDER BY r.seq",
            [user_id, entity_name.strip(), entity_name.strip()],
        )

    def get_entities(self, user_id: str) -> list[Entity]:
        conn = self._get_connection()
        try:
            rows = conn.execute(
                "SELECT id, name, type, user_id, created_at, updated_at FROM entities "
                "WHERE user_id = ? ORDER BY name",
                (user_id,),
            ).fetchall()
        except sqlite3.Error as e:
            raise StorageError(f"Graph read failed: {e}") from e
        return [
            Entity(
                name=row["name"],
                type=row["type"],
                user_id=row["user_id"],
                id=row["id"],
                created_at=row["created_at"],
                updated_at=row["updated_at"],
            )
            for row in rows
        ]

    def get_lineage(self, memory_id: str) -> list[LineageEdge]:
        """UPDATES/EXTENDS edges starting or ending at a memory, oldest first."""
        conn = self._get_connection()
        try:
            rows = conn.execute(
                "SELECT source_id, target_id, kind, reason, created_at FROM lineage "
                "WHERE source_id = ? OR target_id = ? ORDER BY created_at, seq",
                (memory_id, memory_id),
            ).fetchall()
        except sqlite3.Error as e:
            raise StorageError(f"Graph read failed: {e}") from e
        return [
            LineageEdge(
                source_id=row["source_id"],
                target_id=row["target_id"],
                kind=row["kind"],
                reason=row["reason"],
                created_at=row["created_at"],
            )
            for row in rows
        ]

    def create_update(
        self, new_memory_id: str, old_memory_id: str, reason: str, user_id: str
    ) -> None:
        """Record that new supersedes old; old is marked not latest."""
        self._link(new_memory_id, old_memory_id, UPDATES, reason, user_id)

    def create_extend(self, new_memory_id: str, old_memory_id: str, user_id: str) -> None:
        """Record that new adds detail to old; both stay latest."""
        self._link(new_memory_id, old_memory_id, EXTENDS, None, user_id)

    def _link(
        self,
        new_memory_id: str,
        old_memory_id: str,
        kind: str,
        reason: str | None,
        user_id: str,
    ) -> None:
        ts = to_iso(self._clock())
        conn = self._get_connection()
        try:
            with conn:
                for memory_id in (new_memory_id, old_memory_id):
                    conn.execute(
                        "INSERT OR IGNORE INTO memory_nodes "
                        "(id, user_id, is_latest, created_at, updated_at) VALUES (?, ?, 1, ?, ?)",
                        (memory_id, user_id, ts, ts),
                    )
                if kind == UPDATES:
                    conn.execute(
                        "UPDATE memory_nodes SET is_latest = 0, updated_at = ? WHERE id = ?",
                        (ts, old_memory_id),
                    )
                conn.execute(
                    "INSERT OR IGNORE INTO lineage "
                    "(source_id, target_id, kind, reason, user_id, created_at) "
                    "VALUES (?, ?, ?, ?, ?, ?)",
                    (new_memory_id, old_memory_id, kind, reason, user_id, ts),
                )
        except sqlite3.Error as e:
            raise StorageError(f"Graph write failed: {e}") from e

    def is_latest(self, memory_id: str) -> bool | None:
        """Latest flag of a memory node, or None if the node does not exist."""
        conn = self._get_connection()
        row = conn.execute(
            "SELECT is_latest FROM memory_nodes WHERE id = ?", (memory_id,)
        ).fetchone()
        return None if row is None else bool(row["is_latest"])

    def delete_all(self, user_id: str) -> None:
        """Remove every entity, relation, memory node and lineage edge of a user."""
        conn = self._get_connection()
        try:
            with conn:
                conn.execute("DELETE FROM relations WHERE user_id = ?", (user_id,))
                conn.execute("DELETE FROM entities WHERE user_id = ?", (user_id,))
                conn.execute("DELETE FROM lineage WHERE user_id = ?", (user_id,))
                conn.execute("DELETE FROM memory_nodes WHERE user_id = ?", (user_id,))
        except sqlite3.Error as e:
            raise StorageError(f"Graph delete failed: {e}") from e

    def close(self) -> None:
        """Close the database connection."""
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    def _relations(self, sql: str, params: list) -> list[GraphRelation]:
        conn = self._get_connection()
        try:
            rows = conn.execute(sql, params).fetchall()
        except sqlite3.Error as e:
            raise StorageError(f"Graph read failed: {e}") from e
        return [
            GraphRelation(
                source_name=row["source_name"],
                relationship=row["relationship"],
                target_name=row["target_name"],
                source_id=row["source_id"],
                target_id=row["target_id"],
                confidence=row["confidence"],
                created_at=row["created_at"],
            )
            for row in rows
        ]
