"""Tests for SqliteVecStore."""

from pathlib import Path
from unittest.mock import patch

import pytest

from clawmem.backends import SqliteVecStore
from clawmem.backends.sqlite_vec import _fts_query
from clawmem.errors import DimensionMismatchError

DIM = 4


def vec(*values: float) -> list[float]:
    return list(values) + [0.0] * (DIM - len(values))


@pytest.fixture(params=[False, True], ids=["linear-scan", "sqlite-vec"])
def store(request, tmp_path: Path):
    """Store in both search modes; the vec0 mode is skipped when unavailable."""
    store = SqliteVecStore(tmp_path / "vector.db", dimension=DIM, use_sqlite_vec=request.param)
    if request.param and not store.ann_available:
        store.close()
        pytest.skip("sqlite-vec extension not loadable")
    yield store
    store.close()


class TestInit:
    """Tests for store initialization."""

    def test_creates_db_directory(self, tmp_path: Path):
        """The parent directory is created on first use."""
        path = tmp_path / "nested" / "dir" / "vector.db"
        store = SqliteVecStore(path, dimension=DIM, use_sqlite_vec=False)
        store.count()
        assert path.exists()
        store.close()

    def test_creates_tables(self, store: SqliteVecStore):
        conn = store._get_connection()
        names = {
            row[0]
            for row in conn.execute("SELECT name FROM sqlite_master WHERE type='table'")
        }
        assert {"memories", "memories_fts"} <= names
        assert ("memories_vec" in names) == store.ann_available

    def test_disabled_extension(self, tmp_path: Path):
        store = SqliteVecStore(tmp_path / "v.db", dimension=DIM, use_sqlite_vec=False)
        assert store.ann_available is False
        store.close()


class TestInsertAndGet:
    """Tests for insert(), get() and update paths."""

    def test_insert_and_get(self, store: SqliteVecStore, payload):
        store.insert([vec(1.0)], ["m1"], [payload("Alex uses Neovim")])

        result = store.get("m1")

        assert result is not None
        assert result.id == "m1"
        assert result.payload["memory"] == "Alex uses Neovim"
        assert store.get("missing") is None

    def test_insert_is_upsert(self, store: SqliteVecStore, payload):
        """Inserting an existing id replaces the record."""
        store.insert([vec(1.0)], ["m1"], [payload("first")])
        store.insert([vec(0.0, 1.0)], ["m1"], [payload("second")])

        assert store.count() == 1
        assert store.get("m1").payload["memory"] == "second"
        assert store.search(vec(0.0, 1.0), 1)[0].id == "m1"

    def test_dimension_mismatch_writes_nothing(self, store: SqliteVecStore, payload):
        """A bad vector anywhere in a batch rejects the whole batch."""
        with pytest.raises(DimensionMismatchError) as exc_info:
            store.insert(
                [vec(1.0), [1.0, 0.0]],
                ["m1", "m2"],
                [payload("ok"), payload("bad")],
            )

        assert exc_info.value.expected == DIM
        assert exc_info.value.actual == 2
        assert exc_info.value.index == 1
        assert store.count() == 0

    def test_search_dimension_mismatch(self, store: SqliteVecStore):
        with pytest.raises(DimensionMismatchError):
            store.search([1.0], 5)

    def test_length_mismatch(self, store: SqliteVecStore, payload):
        with pytest.raises(ValueError):
            store.insert([vec(1.0)], ["m1", "m2"], [payload("a")])

    def test_update_replaces_vector_and_text(self, store: SqliteVecStore, payload):
        store.insert([vec(1.0)], ["m1"], [payload("Alex lives in Porto")])

        store.update("m1", vec(0.0, 0.0, 1.0), payload("Alex lives in Lisbon"))

        assert store.get("m1").payload["memory"] == "Alex lives in Lisbon"
        assert store.search(vec(0.0, 0.0, 1.0), 1)[0].score == pytest.approx(1.0, abs=1e-5)
        assert [r.id for r in store.keyword_search("Lisbon", 5)] == ["m1"]
        assert store.keyword_search("Porto", 5) == []

    def test_update_payload_keeps_vector(self, store: SqliteVecStore, payload):
        store.insert([vec(1.0)], ["m1"], [payload("Alex uses Vim")])

        store.update_payload("m1", payload("Alex uses Vim", is_latest=False))

        assert store.get("m1").payload["isLatest"] is False
        assert store.search(vec(1.0), 1)[0].id == "m1"
        assert store.search(vec(1.0), 1, {"is_latest": True}) == []


class TestSearch:
    """Tests for vector search and filters."""

    def test_ranked_by_similarity(self, store: SqliteVecStore, payload):
        store.insert(
            [vec(1.0), vec(0.6, 0.8), vec(0.0, 1.0)],
            ["a", "b", "c"],
            [payload("a"), payload("b"), payload("c")],
        )

        results = store.search(vec(1.0), 3)

        assert [r.id for r in results] == ["a", "b", "c"]
        assert results[0].score == pytest.approx(1.0, abs=1e-5)
        assert results[1].score == pytest.approx(0.6, abs=1e-5)
        assert results[2].score == pytest.approx(0.0, abs=1e-5)

    def test_limit(self, store: SqliteVecStore, payload):
        store.insert(
            [vec(1.0), vec(0.9, 0.1), vec(0.8, 0.2)],
            ["a", "b", "c"],
            [payload("a"), payload("b"), payload("c")],
        )
        assert len(store.search(vec(1.0), 2)) == 2
        assert store.search(vec(1.0), 0) == []

    def test_user_filter(self, store: SqliteVecStore, payload):
        store.insert(
            [vec(1.0), vec(1.0)],
            ["a", "b"],
            [payload("mine", "u1"), payload("theirs", "u2")],
        )

        results = store.search(vec(1.0), 10, {"user_id": "u2"})

        assert [r.id for r in results] == ["b"]

    @pytest.fixture
    def crowded(self, store: SqliteVecStore, payload):
        """100 records of u2 nearer the query than the single record of u1."""
        ids = [f"b{i}" for i in range(100)]
        store.insert(
            [vec(1.0, 0.001 * i) for i in range(100)],
            ids,
            [payload(f"theirs {i}", "u2") for i in range(100)],
        )
        store.insert([vec(0.6, 0.8)], ["a1"], [payload("mine", "u1")])

    def test_user_records_found_behind_other_users(self, store: SqliteVecStore, crowded):
        results = store.search(vec(1.0), 10, {"user_id": "u1", "is_latest": True})

        assert [r.id for r in results] == ["a1"]
        assert results[0].score == pytest.approx(0.6, abs=1e-5)

    def test_latest_found_behind_superseded(self, store: SqliteVecStore, payload):
        store.insert(
            [vec(1.0, 0.001 * i) for i in range(50)],
            [f"old{i}" for i in range(50)],
            [payload(f"old {i}", is_latest=False) for i in range(50)],
        )
        store.insert([vec(0.0, 1.0)], ["new"], [payload("new")])

        results = store.search(vec(1.0), 1, {"user_id": "u1", "is_latest": True})

        assert [r.id for r in results] == ["new"]

    def test_exact_scan_past_knn_cap(self, store: SqliteVecStore, crowded):
        """When the KNN window cannot grow, the filtered rows are scanned."""
        with patch("clawmem.backends.sqlite_vec.MAX_KNN", 8):
            results = store.search(vec(1.0), 10, {"user_id": "u1"})

        assert [r.id for r in results] == ["a1"]

    def test_category_and_type_filters(self, store: SqliteVecStore, payload):
        store.insert(
            [vec(1.0), vec(1.0), vec(1.0)],
            ["a", "b", "c"],
            [
                payload("a", category="technical"),
                payload("b", category="technical", memory_type="preference"),
                payload("c", category="identity"),
            ],
        )

        technical = store.search(vec(1.0), 10, {"category": "technical"})
        preferences = store.search(
            vec(1.0), 10, {"category": "technical", "memory_type": "preference"}
        )

        assert {r.id for r in technical} == {"a", "b"}
        assert [r.id for r in preferences] == ["b"]

    def test_date_filters_prefer_event_date(self, store: SqliteVecStore, payload):
        store.insert(
            [vec(1.0), vec(1.0), vec(1.0)],
            ["old", "new", "event"],
            [
                payload("old", created_at="2024-01-01T00:00:00.000000Z"),
                payload("new", created_at="2025-06-01T00:00:00.000000Z"),
                payload(
                    "event",
                    created_at="2025-06-01T00:00:00.000000Z",
                    event_date="2023-03-01T00:00:00.000000Z",
                ),
            ],
        )

        recent = store.search(vec(1.0), 10, {"from_date": "2025-01-01T00:00:00.000000Z"})
        early = store.search(vec(1.0), 10, {"to_date": "2024-06-01T00:00:00.000000Z"})

        assert [r.id for r in recent] == ["new"]
        assert {r.id for r in early} == {"old", "event"}


class TestKeywordSearch:
    """Tests for FTS5 keyword search."""

    def test_matches_stemmed_terms(self, store: SqliteVecStore, payload):
        store.insert(
            [vec(1.0), vec(0.0, 1.0)],
            ["a", "b"],
            [payload("Alex deploys services with Kubernetes"), payload("Alex likes tea")],
        )

        results = store.keyword_search("deploying kubernetes", 5)

        assert [r.id for r in results] == ["a"]
        assert results[0].score > 0

    def test_fts_syntax_is_escaped(self, store: SqliteVecStore, payload):
        """Operators and quotes in user text are matched literally."""
        store.insert([vec(1.0)], ["a"], [payload("Alex said NOT now")])

        assert [r.id for r in store.keyword_search('NOT "now', 5)] == ["a"]
        assert store.keyword_search("   ", 5) == []

    def test_filters_apply(self, store: SqliteVecStore, payload):
        store.insert(
            [vec(1.0), vec(1.0)],
            ["a", "b"],
            [payload("tea lover", "u1"), payload("tea lover", "u2")],
        )

        assert [r.id for r in store.keyword_search("tea", 5, {"user_id": "u1"})] == ["a"]

    def test_fts_query_quotes_tokens(self):
        assert _fts_query('say "hi" OR') == '"say" """hi""" "OR"'


class TestListCountDelete:
    """Tests for listing, counting and deletion."""

    def test_list_newest_first_with_total(self, store: SqliteVecStore, payload):
        store.insert(
            [vec(1.0), vec(1.0), vec(1.0)],
            ["a", "b", "c"],
            [
                payload("a", created_at="2025-01-01T00:00:00.000000Z"),
                payload("b", created_at="2025-03-01T00:00:00.000000Z"),
                payload("c", created_at="2025-02-01T00:00:00.000000Z"),
            ],
        )

        page, total = store.list(limit=2)
        rest, total_again = store.list(limit=2, offset=2)

        assert [r.id for r in page] == ["b", "c"]
        assert [r.id for r in rest] == ["a"]
        assert total == total_again == 3

    def test_list_past_end(self, store: SqliteVecStore, payload):
        store.insert([vec(1.0)], ["a"], [payload("a")])
        page, total = store.list(offset=5)
        assert page == []
        assert total == 1

    def test_count_with_filters(self, store: SqliteVecStore, payload):
        store.insert(
            [vec(1.0), vec(1.0)],
            ["a", "b"],
            [payload("a"), payload("b", is_latest=False)],
        )
        assert store.count() == 2
        assert store.count({"is_latest": True}) == 1

    def test_find_by_hash_prefers_latest(self, store: SqliteVecStore, payload):
        store.insert(
            [vec(1.0), vec(1.0)],
            ["old", "new"],
            [payload("Same text", is_latest=False), payload("Same text")],
        )

        found = store.find_by_hash(payload("same TEXT")["hash"], "u1")

        assert found is not None and found.id == "new"
        assert store.find_by_hash(payload("Same text")["hash"], "u2") is None

    def test_delete_removes_from_all_indexes(self, store: SqliteVecStore, payload):
        store.insert([vec(1.0)], ["a"], [payload("Alex uses Neovim")])

        assert store.delete("a") is True

        assert store.get("a") is None
        assert store.search(vec(1.0), 5) == []
        assert store.keyword_search("Neovim", 5) == []
        assert store.delete("a") is False

    def test_delete_all_by_user(self, store: SqliteVecStore, payload):
        store.insert(
            [vec(1.0), vec(1.0), vec(1.0)],
            ["a", "b", "c"],
            [payload("a", "u1"), payload("b", "u1"), payload("c", "u2")],
        )

        assert store.delete_all({"user_id": "u1"}) == 2

        assert [r.id for r in store.search(vec(1.0), 5)] == ["c"]
        assert store.keyword_search("a", 5) == []

    def test_persists_across_connections(self, tmp_path: Path, payload):
        path = tmp_path / "vector.db"
        store = SqliteVecStore(path, dimension=DIM, use_sqlite_vec=False)
        store.insert([vec(1.0)], ["a"], [payload("kept")])
        store.close()

        reopened = SqliteVecStore(path, dimension=DIM, use_sqlite_vec=False)
        assert reopened.get("a").payload["memory"] == "kept"
        reopened.close()
