"""SQLite vector store with sqlite-vec ANN search and FTS5 keywords.

Schema:
    memories      one row per record: JSON payload, denormalized content and
                  user_id, and the raw float32 embedding
    memories_fts  FTS5 index over content (porter stemming)
    memories_vec  sqlite-vec vec0 index keyed by memories.seq, only created
                  when the extension loads

When sqlite-vec is unavailable, search() falls back to an exact cosine scan
over at most FALLBACK_SCAN_LIMIT rows.
"""

import heapq
import json
import logging
import sqlite3
import struct
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator, Sequence

import sqlite_vec

from ..errors import DimensionMismatchError, StorageError
from ..interfaces import Filters, StoreResult
from ..utils import cosine_similarity

logger = logging.getLogger(__name__)

FALLBACK_SCAN_LIMIT = 50_000

# vec0 rejects k above this value
MAX_KNN = 4096

_DATE_EXPR = (
    "COALESCE(json_extract(m.payload, '$.eventDate'), "
    "json_extract(m.payload, '$.createdAt'))"
)


def _serialize_f32(vector: Sequence[float]) -> bytes:
    """Serialize a float32 vector to bytes for sqlite-vec."""
    return struct.pack(f"{len(vector)}f", *vector)


def _deserialize_f32(data: bytes) -> list[float]:
    """Deserialize bytes to a float32 vector."""
    return list(struct.unpack(f"{len(data) // 4}f", data))


def _fts_query(text: str) -> str:
    """Quote every token so user text is never parsed as FTS5 syntax."""
    tokens = text.split()
    return " ".join('"' + token.replace('"', '""') + '"' for token in tokens)


@contextmanager
def _storage_errors(operation: str) -> Iterator[None]:
    try:
        yield
    except sqlite3.Error as e:
        raise StorageError(f"{operation} failed: {e}") from e


class SqliteVecStore:
    """Persistent multi-index store for memory records.

    Records are upserted by id. Every write touches the row, the FTS index
    and the vector index inside one transaction.
    """

    def __init__(
        self,
        db_path: Path | str,
        dimension: int = 768,
        use_sqlite_vec: bool = True,
    ) -> None:
        """Initialize the store.

        Args:
            db_path: SQLite file path, or ":memory:".
            dimension: Embedding size every vector must match.
            use_sqlite_vec: Try to load the sqlite-vec extension.
        """
        self.db_path = db_path
        self.dimension = dimension
        self._use_sqlite_vec = use_sqlite_vec
        self._vec_available = False
        self._fallback_warned = False
        self._conn: sqlite3.Connection | None = None

    @property
    def ann_available(self) -> bool:
        """Whether searches go through the vec0 index."""
        self._get_connection()
        return self._vec_available

    def _get_connection(self) -> sqlite3.Connection:
        """Get or create the database connection, creating the schema once."""
        if self._conn is None:
            if str(self.db_path) != ":memory:":
                Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
            with _storage_errors("open"):
                conn = sqlite3.connect(str(self.db_path))
                conn.row_factory = sqlite3.Row
                conn.execute("PRAGMA journal_mode=WAL")
                conn.execute("PRAGMA foreign_keys=ON")
                self._vec_available = self._load_vec(conn)
                self._init_schema(conn)
            self._conn = conn
        return self._conn

    def _load_vec(self, conn: sqlite3.Connection) -> bool:
        if not self._use_sqlite_vec:
            logger.info("sqlite-vec disabled, using linear scan search")
            return False
        try:
            conn.enable_load_extension(True)
            sqlite_vec.load(conn)
            conn.enable_load_extension(False)
        except (AttributeError, sqlite3.Error) as e:
            logger.warning("sqlite-vec not available, falling back to linear scan: %s", e)
            return False
        return True

    def _init_schema(self, conn: sqlite3.Connection) -> None:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS memories (
                seq         INTEGER PRIMARY KEY AUTOINCREMENT,
                id          TEXT NOT NULL UNIQUE,
                payload     TEXT NOT NULL,
                content     TEXT NOT NULL,
                user_id     TEXT NOT NULL,
                created_at  TEXT NOT NULL,
                embedding   BLOB NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_memories_user ON memories(user_id);
            CREATE INDEX IF NOT EXISTS idx_memories_hash
                ON memories(json_extract(payload, '$.hash'));
            CREATE VIRTUAL TABLE IF NOT EXISTS memories_fts
                USING fts5(id UNINDEXED, content, user_id UNINDEXED,
                           tokenize='porter unicode61');
        """)
        if self._vec_available:
            try:
                conn.execute(f"""
                    CREATE VIRTUAL TABLE IF NOT EXISTS memories_vec
                    USING vec0(embedding float[{self.dimension}] distance_metric=cosine)
                """)
            except sqlite3.Error as e:
                logger.warning("Failed to create vec table, using linear scan: %s", e)
                self._vec_available = False
        conn.commit()

    def _check_dimension(self, vector: Sequence[float], index: int = 0) -> None:
        if len(vector) != self.dimension:
            raise DimensionMismatchError(self.dimension, len(vector), index)

    def _conditions(self, filters: Filters | None) -> tuple[list[str], list[Any]]:
        """Translate filters into SQL conditions on the `m` alias."""
        conditions: list[str] = []
        params: list[Any] = []
        if not filters:
            return conditions, params

        if filters.get("user_id"):
            conditions.append("m.user_id = ?")
            params.append(filters["user_id"])
        if filters.get("is_latest") is not None:
            conditions.append("json_extract(m.payload, '$.isLatest') = ?")
            params.append(1 if filters["is_latest"] else 0)
        if filters.get("category"):
            conditions.append("json_extract(m.payload, '$.category') = ?")
            params.append(filters["category"])
        if filters.get("memory_type"):
            memory_type = filters["memory_type"]
            conditions.append("json_extract(m.payload, '$.memoryType') = ?")
            params.append(getattr(memory_type, "value", memory_type))
        if filters.get("from_date"):
            conditions.append(f"{_DATE_EXPR} >= ?")
            params.append(filters["from_date"])
        if filters.get("to_date"):
            conditions.append(f"{_DATE_EXPR} <= ?")
            params.append(filters["to_date"])
        return conditions, params

    @staticmethod
    def _where(conditions: list[str], prefix: str = "WHERE") -> str:
        return f" {prefix} " + " AND ".join(conditions) if conditions else ""

    @staticmethod
    def _row_to_result(row: sqlite3.Row, score: float = 1.0) -> StoreResult:
        return StoreResult(id=row["id"], payload=json.loads(row["payload"]), score=score)

    def _write_indexes(
        self,
        conn: sqlite3.Connection,
        record_id: str,
        content: str,
        user_id: str,
        vector: Sequence[float] | None,
    ) -> None:
        """Refresh the FTS row and, when a vector is given, the vec0 row."""
        conn.execute("DELETE FROM memories_fts WHERE id = ?", (record_id,))
        conn.execute(
            "INSERT INTO memories_fts (id, content, user_id) VALUES (?, ?, ?)",
            (record_id, content, user_id),
        )
        if vector is None or not self._vec_available:
            return
        seq = conn.execute("SELECT seq FROM memories WHERE id = ?", (record_id,)).fetchone()[0]
        conn.execute("DELETE FROM memories_vec WHERE rowid = ?", (seq,))
        conn.execute(
            "INSERT INTO memories_vec (rowid, embedding) VALUES (?, ?)",
            (seq, _serialize_f32(vector)),
        )

    def insert(
        self,
        vectors: Sequence[Sequence[float]],
        ids: Sequence[str],
        payloads: Sequence[dict[str, Any]],
    ) -> None:
        """Upsert records by id.

        Every vector is validated before anything is written, so a dimension
        mismatch anywhere in the batch persists nothing.

        Raises:
            DimensionMismatchError: A vector has the wrong length.
            StorageError: The transaction failed and was rolled back.
        """
        if not len(vectors) == len(ids) == len(payloads):
            raise ValueError("vectors, ids and payloads must have the same length")
        for i, vector in enumerate(vectors):
            self._check_dimension(vector, i)

        conn = self._get_connection()
        with _storage_errors("insert"), conn:
            for record_id, vector, payload in zip(ids, vectors, payloads):
                content = str(payload.get("memory") or "")
                user_id = str(payload.get("userId") or "")
                conn.execute(
                    """
                    INSERT INTO memories (id, payload, content, user_id, created_at, embedding)
                    VALUES (?, ?, ?, ?, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET
                        payload = excluded.payload,
                        content = excluded.content,
                        user_id = excluded.user_id,
                        embedding = excluded.embedding
                    """,
                    (
                        record_id,
                        json.dumps(payload),
                        content,
                        user_id,
                        str(payload.get("createdAt") or ""),
                        _serialize_f32(vector),
                    ),
                )
                self._write_indexes(conn, record_id, content, user_id, vector)

    def search(
        self, vector: Sequence[float], limit: int, filters: Filters | None = None
    ) -> list[StoreResult]:
        """Rank records by cosine similarity to vector, best first."""
        if limit <= 0:
            return []
        self._check_dimension(vector)
        conn = self._get_connection()
        with _storage_errors("search"):
            if self._vec_available:
                return self._search_vec(conn, vector, limit, filters)
            return self._search_fallback(conn, vector, limit, filters)

    def _search_vec(
        self,
        conn: sqlite3.Connection,
        vector: Sequence[float],
        limit: int,
        filters: Filters | None,
    ) -> list[StoreResult]:
        """KNN through vec0, widening k until the filtered page is full.

        vec0 ranks every stored vector before the filters apply, so nearer
        vectors of other users or superseded versions can crowd a user's
        records out of the window. k doubles until the page fills or the
        window covers the whole table; past MAX_KNN the exact scan takes over.
        """
        conditions, params = self._conditions(filters)
        total = conn.execute("SELECT COUNT(*) FROM memories").fetchone()[0]
        sql = (
            "WITH knn AS ("
            "  SELECT rowid, distance FROM memories_vec WHERE embedding MATCH ? AND k = ?"
            ") "
            "SELECT m.id, m.payload, knn.distance FROM knn "
            "JOIN memories m ON m.seq = knn.rowid"
            + self._where(conditions)
            + " ORDER BY knn.distance LIMIT ?"
        )
        query = _serialize_f32(vector)
        k = min(limit * 4 if conditions else limit, MAX_KNN)
        while True:
            rows = conn.execute(sql, [query, k, *params, limit]).fetchall()
            if len(rows) >= limit or k >= total:
                return [self._row_to_result(row, 1.0 - row["distance"]) for row in rows]
            if k >= MAX_KNN:
                break
            k = min(k * 2, MAX_KNN)

        logger.debug("KNN window exhausted at k=%d, scanning filtered rows", k)
        return self._scan(conn, vector, limit, filters)

    def _search_fallback(
        self,
        conn: sqlite3.Connection,
        vector: Sequence[float],
        limit: int,
        filters: Filters | None,
    ) -> list[StoreResult]:
        if not self._fallback_warned:
            logger.warning(
                "Vector search is using a linear scan (at most %d rows); "
                "install sqlite-vec for indexed search",
                FALLBACK_SCAN_LIMIT,
            )
            self._fallback_warned = True
        return self._scan(conn, vector, limit, filters)

    def _scan(
        self,
        conn: sqlite3.Connection,
        vector: Sequence[float],
        limit: int,
        filters: Filters | None,
    ) -> list[StoreResult]:
        """Exact cosine ranking over the filtered rows."""
        conditions, params = self._conditions(filters)
        sql = (
            "SELECT m.id, m.payload, m.embedding FROM memories m"
            + self._where(conditions)
            + " ORDER BY m.seq LIMIT ?"
        )
        rows = conn.execute(sql, [*params, FALLBACK_SCAN_LIMIT]).fetchall()
        if len(rows) >= FALLBACK_SCAN_LIMIT:
            logger.warning("Linear scan truncated at %d rows", FALLBACK_SCAN_LIMIT)

        scored = (
            (cosine_similarity(vector, _deserialize_f32(row["embedding"])), row)
            for row in rows
        )
        top = heapq.nlargest(limit, scored, key=lambda item: item[0])
        return [self._row_to_result(row, score) for score, row in top]

    def keyword_search(
        self, text: str, limit: int, filters: Filters | None = None
    ) -> list[StoreResult]:
        """BM25 keyword search; scores are positive, higher is better."""
        query = _fts_query(text)
        if not query or limit <= 0:
            return []
        conditions, params = self._conditions(filters)
        sql = (
            "SELECT m.id, m.payload, bm25(memories_fts) AS rank FROM memories_fts "
            "JOIN memories m ON m.id = memories_fts.id "
            "WHERE memories_fts MATCH ?"
            + self._where(conditions, prefix="AND")
            + " ORDER BY rank LIMIT ?"
        )
        conn = self._get_connection()
        with _storage_errors("keyword search"):
            rows = conn.execute(sql, [query, *params, limit]).fetchall()
        return [self._row_to_result(row, abs(row["rank"])) for row in rows]

    def get(self, record_id: str) -> StoreResult | None:
        conn = self._get_connection()
        with _storage_errors("get"):
            row = conn.execute(
                "SELECT id, payload FROM memories WHERE id = ?", (record_id,)
            ).fetchone()
        return self._row_to_result(row) if row else None

    def list(
        self, filters: Filters | None = None, limit: int = 100, offset: int = 0
    ) -> tuple[list[StoreResult], int]:
        """Return one page of matching records, newest first, and the total."""
        conditions, params = self._conditions(filters)
        sql = (
            "SELECT m.id, m.payload, COUNT(*) OVER () AS total FROM memories m"
            + self._where(conditions)
            + " ORDER BY m.created_at DESC, m.seq DESC LIMIT ? OFFSET ?"
        )
        conn = self._get_connection()
        with _storage_errors("list"):
            rows = conn.execute(sql, [*params, limit, offset]).fetchall()
            if rows:
                total = rows[0]["total"]
            else:
                total = self.count(filters) if offset else 0
        return [self._row_to_result(row) for row in rows], total

    def count(self, filters: Filters | None = None) -> int:
        conditions, params = self._conditions(filters)
        conn = self._get_connection()
        with _storage_errors("count"):
            row = conn.execute(
                "SELECT COUNT(*) FROM memories m" + self._where(conditions), params
            ).fetchone()
        return row[0]

    def update(
        self, record_id: str, vector: Sequence[float], payload: dict[str, Any]
    ) -> None:
        """Replace a record's payload and vector."""
        self._check_dimension(vector)
        content = str(payload.get("memory") or "")
        user_id = str(payload.get("userId") or "")
        conn = self._get_connection()
        with _storage_errors("update"), conn:
            cursor = conn.execute(
                "UPDATE memories SET payload = ?, content = ?, user_id = ?, embedding = ? "
                "WHERE id = ?",
                (json.dumps(payload), content, user_id, _serialize_f32(vector), record_id),
            )
            if cursor.rowcount:
                self._write_indexes(conn, record_id, content, user_id, vector)

    def update_payload(self, record_id: str, payload: dict[str, Any]) -> None:
        """Replace a record's payload without touching its vector."""
        content = str(payload.get("memory") or "")
        user_id = str(payload.get("userId") or "")
        conn = self._get_connection()
        with _storage_errors("update payload"), conn:
            cursor = conn.execute(
                "UPDATE memories SET payload = ?, content = ?, user_id = ? WHERE id = ?",
                (json.dumps(payload), content, user_id, record_id),
            )
            if cursor.rowcount:
                self._write_indexes(conn, record_id, content, user_id, None)

    def find_by_hash(self, content_hash: str, user_id: str) -> StoreResult | None:
        """Return a latest record of the user with this content hash, if any."""
        conn = self._get_connection()
        with _storage_errors("find by hash"):
            row = conn.execute(
                "SELECT id, payload FROM memories "
                "WHERE json_extract(payload, '$.hash') = ? AND user_id = ? "
                "ORDER BY json_extract(payload, '$.isLatest') DESC, seq DESC LIMIT 1",
                (content_hash, user_id),
            ).fetchone()
        return self._row_to_result(row) if row else None

    def delete(self, record_id: str) -> bool:
        """Remove a record from every index. Returns False if it did not exist."""
        conn = self._get_connection()
        with _storage_errors("delete"), conn:
            row = conn.execute(
                "SELECT seq FROM memories WHERE id = ?", (record_id,)
            ).fetchone()
            if row is None:
                return False
            conn.execute("DELETE FROM memories_fts WHERE id = ?", (record_id,))
            if self._vec_available:
                conn.execute("DELETE FROM memories_vec WHERE rowid = ?", (row["seq"],))
            conn.execute("DELETE FROM memories WHERE seq = ?", (row["seq"],))
        return True

    def delete_all(self, filters: Filters | None = None) -> int:
        """Remove every matching record. Returns the number removed."""
        conditions, params = self._conditions(filters)
        where = self._where(conditions)
        conn = self._get_connection()
        with _storage_errors("delete all"), conn:
            conn.execute(
                "DELETE FROM memories_fts WHERE id IN "
                f"(SELECT m.id FROM memories m{where})",
                params,
            )
            if self._vec_available:
                conn.execute(
                    "DELETE FROM memories_vec WHERE rowid IN "
                    f"(SELECT m.seq FROM memories m{where})",
                    params,
                )
            cursor = conn.execute(
                f"DELETE FROM memories WHERE seq IN (SELECT m.seq FROM memories m{where})",
                params,
            )
        return cursor.rowcount

    def close(self) -> None:
        """Close the database connection."""
        if self._conn is not None:
            self._conn.close()
            self._conn = None
