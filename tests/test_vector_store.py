"""
Tests for execution/document_intel/vector_store.py

Covers: VectorStoreConfig, Candidate/EmbeddingStats, reindex validation,
        the pgvector store with a mocked connection pool (transaction
        shape, rollback, stale-connection retry, SQL filters) and the
        in-memory store (idempotent reindex, case scoping, model-version
        isolation, parent lookup, stats).

All database calls are mocked -- no PostgreSQL required.
"""

from unittest.mock import patch, MagicMock

import psycopg2
import pytest

from tests.conftest import TEST_DIMENSIONS, make_groups, unit_vector


def _pg_store(**config_kwargs):
    """VectorStore wired to a mocked pool; returns (store, conn, cursor)."""
    from execution.document_intel.vector_store import VectorStore, VectorStoreConfig
    store = VectorStore(VectorStoreConfig(
        connection_string="postgresql://test/db",
        embedding_dimensions=TEST_DIMENSIONS,
        **config_kwargs,
    ))
    conn = MagicMock()
    cursor = conn.cursor.return_value.__enter__.return_value
    store._pool = MagicMock()
    store._pool.getconn.return_value = conn
    return store, conn, cursor


# ---------------------------------------------------------------------------
# Config and data classes
# ---------------------------------------------------------------------------

class TestVectorStoreConfig:

    def test_defaults(self):
        from execution.document_intel.vector_store import VectorStoreConfig
        cfg = VectorStoreConfig()
        assert cfg.connection_string is None
        assert cfg.table_name == "document_chunks"
        assert cfg.documents_table == "documents"
        assert cfg.cases_table == "cases"
        assert cfg.embedding_dimensions == 1024

    def test_connection_string_from_env(self, monkeypatch):
        from execution.document_intel.vector_store import VectorStore
        monkeypatch.delenv("POSTGRES_URL", raising=False)
        monkeypatch.setenv("DATABASE_URL", "postgresql://env/db")
        assert VectorStore()._connection_string == "postgresql://env/db"

    def test_explicit_connection_string_wins(self, monkeypatch):
        from execution.document_intel.vector_store import VectorStore, VectorStoreConfig
        monkeypatch.setenv("POSTGRES_URL", "postgresql://env/db")
        store = VectorStore(VectorStoreConfig(connection_string="postgresql://cfg/db"))
        assert store._connection_string == "postgresql://cfg/db"


class TestCandidate:

    def test_to_dict(self):
        from execution.document_intel.vector_store import Candidate
        c = Candidate(chunk_id="c1", document_id="d1", content="Text", score=0.123456,
                      sources=["lexical", "vector"])
        d = c.to_dict()
        assert d["chunk_id"] == "c1"
        assert d["score"] == 0.1235
        assert d["sources"] == ["lexical", "vector"]
        assert d["rerank_score"] is None

    def test_sources_not_shared(self):
        from execution.document_intel.vector_store import Candidate
        a = Candidate(chunk_id="a", document_id="d", content="")
        b = Candidate(chunk_id="b", document_id="d", content="")
        a.sources.append("vector")
        assert b.sources == []


# ---------------------------------------------------------------------------
# Reindex validation (shared base class)
# ---------------------------------------------------------------------------

class TestReindexValidation:

    def test_child_without_embedding_rejected(self, memory_store):
        groups = make_groups("doc-1", [["a"]])
        groups[0].children[0].embedding = None
        with pytest.raises(ValueError, match="no embedding"):
            memory_store.reindex("doc-1", groups, "v1")

    def test_wrong_dimensions_rejected(self, memory_store):
        groups = make_groups("doc-1", [["a"]], vectors={"a": [1.0, 0.0]})
        with pytest.raises(ValueError, match="dimensions"):
            memory_store.reindex("doc-1", groups, "v1")

    def test_foreign_document_rejected(self, memory_store):
        groups = make_groups("doc-2", [["a"]])
        with pytest.raises(ValueError):
            memory_store.reindex("doc-1", groups, "v1")

    def test_broken_parent_reference_rejected(self, memory_store):
        groups = make_groups("doc-1", [["a"], ["b"]])
        groups[1].children[0].parent_chunk_id = groups[0].parent.chunk_id
        with pytest.raises(ValueError, match="does not reference"):
            memory_store.reindex("doc-1", groups, "v1")

    def test_invalid_input_leaves_existing_chunks(self, memory_store):
        memory_store.reindex("doc-1", make_groups("doc-1", [["alt"]]), "v1")
        bad = make_groups("doc-1", [["neu"]])
        bad[0].children[0].embedding = None
        with pytest.raises(ValueError):
            memory_store.reindex("doc-1", bad, "v1")
        assert [c.content for c in memory_store.chunks_for_document("doc-1")][-1] == "alt"

    def test_pg_store_validates_before_touching_db(self):
        store, conn, cursor = _pg_store()
        groups = make_groups("doc-1", [["a"]])
        groups[0].children[0].embedding = None
        with pytest.raises(ValueError):
            store.reindex("doc-1", groups, "v1")
        store._pool.getconn.assert_not_called()


# ---------------------------------------------------------------------------
# pgvector store
# ---------------------------------------------------------------------------

class TestPgReindex:

    def test_delete_then_insert_in_one_transaction(self):
        store, conn, cursor = _pg_store()
        groups = make_groups("doc-1", [["a", "b"], ["c"]])
        calls = []
        cursor.execute.side_effect = lambda sql, params=None: calls.append(("execute", sql))

        def fake_execute_values(cur, sql, rows, template=None, page_size=None):
            calls.append(("insert", rows))

        with patch("execution.document_intel.vector_store.execute_values", side_effect=fake_execute_values):
            stored = store.reindex("doc-1", groups, "e5@1.0")

        assert stored == 3
        assert calls[0][0] == "execute" and "DELETE FROM document_chunks" in calls[0][1]
        parent_rows, child_rows = calls[1][1], calls[2][1]
        assert [r[2] for r in parent_rows] == ["PARENT", "PARENT"]
        assert all(r[6] is None for r in parent_rows)
        assert [r[2] for r in child_rows] == ["CHILD"] * 3
        assert all(r[7] == "e5@1.0" for r in parent_rows + child_rows)
        conn.commit.assert_called_once()
        store._pool.putconn.assert_called_once_with(conn)

    def test_failed_insert_rolls_back(self):
        store, conn, cursor = _pg_store()
        groups = make_groups("doc-1", [["a"]])
        with patch(
            "execution.document_intel.vector_store.execute_values",
            side_effect=psycopg2.DataError("bad vector"),
        ):
            with pytest.raises(psycopg2.DataError):
                store.reindex("doc-1", groups, "v1")
        conn.rollback.assert_called_once()
        conn.commit.assert_not_called()

    def test_empty_groups_only_delete(self):
        store, conn, cursor = _pg_store()
        with patch("execution.document_intel.vector_store.execute_values") as ev:
            assert store.reindex("doc-1", [], "v1") == 0
        ev.assert_not_called()
        assert "DELETE" in cursor.execute.call_args.args[0]
        conn.commit.assert_called_once()


class TestPgExecuteWithRetry:

    def test_retries_once_on_stale_connection(self):
        store, conn, cursor = _pg_store()
        store.connect = MagicMock()
        op = MagicMock(side_effect=[psycopg2.OperationalError("gone"), "ok"])
        assert store.execute_with_retry(op, "test") == "ok"
        assert op.call_count == 2
        store.connect.assert_called_once()

    def test_gives_up_after_second_failure(self):
        store, conn, cursor = _pg_store()
        store.connect = MagicMock()
        op = MagicMock(side_effect=psycopg2.OperationalError("gone"))
        with pytest.raises(psycopg2.OperationalError):
            store.execute_with_retry(op, "test")
        assert op.call_count == 2

    def test_other_errors_not_retried(self):
        store, conn, cursor = _pg_store()
        op = MagicMock(side_effect=psycopg2.ProgrammingError("syntax"))
        with pytest.raises(psycopg2.ProgrammingError):
            store.execute_with_retry(op, "test")
        assert op.call_count == 1
        conn.rollback.assert_called_once()
        store._pool.putconn.assert_called_once_with(conn)


class TestPgSearch:

    def test_case_and_model_filters(self):
        store, conn, cursor = _pg_store()
        cursor.fetchall.return_value = [{
            "chunk_id": "c1", "document_id": "doc-1", "content": "Kaution",
            "kind": "CHILD", "parent_chunk_id": "p1", "case_id": "case-1",
            "document_name": "Klage.pdf", "case_label": "210 C 45/23", "score": 0.91,
        }]
        results = store.search([0.1] * TEST_DIMENSIONS, "case-1", limit=5, model_version="e5@1.0")

        sql, params = cursor.execute.call_args.args
        assert "d.case_id = %s" in sql
        assert "c.kind = 'CHILD'" in sql
        assert "c.embedding IS NOT NULL" in sql
        assert "c.model_version = %s" in sql
        assert "<=>" in sql
        assert params[1:3] == ["case-1", "e5@1.0"]
        assert params[-1] == 5

        assert len(results) == 1
        r = results[0]
        assert r.chunk_id == "c1"
        assert r.score == pytest.approx(0.91)
        assert r.parent_chunk_id == "p1"
        assert r.case_label == "210 C 45/23"

    def test_no_model_filter_when_unset(self):
        store, conn, cursor = _pg_store()
        cursor.fetchall.return_value = []
        store.search([0.1] * TEST_DIMENSIONS, "case-1")
        sql = cursor.execute.call_args.args[0]
        assert "model_version" not in sql

    def test_sets_ef_search(self):
        store, conn, cursor = _pg_store(hnsw_ef_search=64)
        cursor.fetchall.return_value = []
        store.search([0.1] * TEST_DIMENSIONS, "case-1")
        first_sql, first_params = cursor.execute.call_args_list[0].args
        assert "hnsw.ef_search" in first_sql
        assert first_params == (64,)

    def test_ef_search_covers_limit(self):
        store, conn, cursor = _pg_store()
        cursor.fetchall.return_value = []
        store.search([0.1] * TEST_DIMENSIONS, "case-1", limit=50)
        first_sql, first_params = cursor.execute.call_args_list[0].args
        assert "hnsw.ef_search" in first_sql
        assert first_params[0] >= 50

    def test_iterative_scan_enabled(self):
        store, conn, cursor = _pg_store()
        cursor.fetchall.return_value = []
        store.search([0.1] * TEST_DIMENSIONS, "case-1", limit=50)
        settings = [c.args for c in cursor.execute.call_args_list[:-1]]
        assert ("SET LOCAL hnsw.iterative_scan = %s", ("strict_order",)) in settings

    def test_iterative_scan_can_be_disabled(self):
        store, conn, cursor = _pg_store(hnsw_iterative_scan=None)
        cursor.fetchall.return_value = []
        store.search([0.1] * TEST_DIMENSIONS, "case-1")
        assert not any("iterative_scan" in c.args[0] for c in cursor.execute.call_args_list)


class TestPgBestChunks:

    def test_preserves_input_order(self):
        store, conn, cursor = _pg_store()
        cursor.fetchall.return_value = [
            {"chunk_id": "c-a", "document_id": "doc-a", "content": "A", "kind": "CHILD",
             "parent_chunk_id": None, "case_id": "case-1", "score": 0.0},
            {"chunk_id": "c-b", "document_id": "doc-b", "content": "B", "kind": "CHILD",
             "parent_chunk_id": None, "case_id": "case-1", "score": 0.0},
        ]
        results = store.best_chunks_for_documents(["doc-b", "doc-missing", "doc-a"])
        assert [r.chunk_id for r in results] == ["c-b", "c-a"]
        sql = cursor.execute.call_args.args[0]
        assert "DISTINCT ON (c.document_id)" in sql
        assert "c.chunk_index" in sql

    def test_orders_by_distance_with_query_vector(self):
        store, conn, cursor = _pg_store()
        cursor.fetchall.return_value = []
        store.best_chunks_for_documents(["doc-a"], query_embedding=[0.1] * TEST_DIMENSIONS)
        sql = cursor.execute.call_args.args[0]
        assert "ORDER BY c.document_id, c.embedding <=> %s::vector" in sql

    def test_empty_input_skips_db(self):
        store, conn, cursor = _pg_store()
        assert store.best_chunks_for_documents([]) == []
        store._pool.getconn.assert_not_called()


class TestPgStats:

    def test_stats(self):
        store, conn, cursor = _pg_store()
        cursor.fetchone.return_value = {"total_chunks": 42, "documents_with_embeddings": 3}
        cursor.fetchall.return_value = [{"model_version": "e5@1.0"}, {"model_version": "e5@2.0"}]
        stats = store.get_stats()
        assert stats.total_chunks == 42
        assert stats.documents_with_embeddings == 3
        assert stats.model_versions == ["e5@1.0", "e5@2.0"]


class TestPgClose:

    def test_close_pool(self):
        store, conn, cursor = _pg_store()
        pool = store._pool
        store.close()
        pool.closeall.assert_called_once()
        assert store._pool is None


# ---------------------------------------------------------------------------
# In-memory store
# ---------------------------------------------------------------------------

class TestInMemoryReindex:

    def test_idempotent(self, memory_store):
        first = make_groups("doc-1", [["a", "b"], ["c"]])
        memory_store.reindex("doc-1", first, "v1")
        snapshot = [(c.kind, c.index, c.content) for c in memory_store.chunks_for_document("doc-1")]

        again = make_groups("doc-1", [["a", "b"], ["c"]])
        memory_store.reindex("doc-1", again, "v1")
        assert [(c.kind, c.index, c.content) for c in memory_store.chunks_for_document("doc-1")] == snapshot

    def test_reindex_replaces_all_chunks(self, memory_store):
        memory_store.reindex("doc-1", make_groups("doc-1", [["alt1", "alt2"]]), "v1")
        memory_store.reindex("doc-1", make_groups("doc-1", [["neu"]]), "v1")
        contents = [c.content for c in memory_store.chunks_for_document("doc-1")]
        assert "alt1" not in contents and "alt2" not in contents
        assert "neu" in contents

    def test_returns_child_count(self, memory_store):
        assert memory_store.reindex("doc-1", make_groups("doc-1", [["a", "b"], ["c"]]), "v1") == 3

    def test_stored_chunks_detached_from_caller(self, memory_store):
        groups = make_groups("doc-1", [["a", "b"]])
        memory_store.reindex("doc-1", groups, "v1")
        groups[0].children[0].content = "verändert"
        groups[0].children[0].embedding[0] = -5.0

        stored = memory_store.chunks_for_document("doc-1")
        assert [c.content for c in stored] == ["a b", "a", "b"]
        assert stored[1].embedding == unit_vector(0)
        assert all(c.model_version == "v1" for c in stored)

        stored[1].content = "auch verändert"
        assert memory_store.chunks_for_document("doc-1")[1].content == "a"

    def test_delete(self, memory_store):
        memory_store.reindex("doc-1", make_groups("doc-1", [["a", "b"]]), "v1")
        assert memory_store.delete_document_chunks("doc-1") == 3
        assert memory_store.chunks_for_document("doc-1") == []


class TestInMemorySearch:

    def test_orders_by_cosine_similarity(self, memory_store):
        vectors = {"nah": unit_vector(1), "fern": unit_vector(2), "mittel": [0.0, 0.7, 0.7] + [0.0] * 5}
        memory_store.reindex("doc-1", make_groups("doc-1", [["fern", "nah", "mittel"]], vectors), "v1")
        results = memory_store.search(unit_vector(1), "case-1", limit=3)
        assert [r.content for r in results] == ["nah", "mittel", "fern"]
        assert results[0].score == pytest.approx(1.0)
        assert results[0].document_name == "Klageschrift.pdf"

    def test_only_children_returned(self, memory_store):
        memory_store.reindex("doc-1", make_groups("doc-1", [["a"]]), "v1")
        results = memory_store.search(unit_vector(0), "case-1")
        assert all(r.chunk_kind == "CHILD" for r in results)
        assert all(r.parent_chunk_id for r in results)

    def test_case_scoping(self, memory_store):
        memory_store.reindex("doc-1", make_groups("doc-1", [["eigene Akte"]]), "v1")
        memory_store.reindex("doc-9", make_groups("doc-9", [["fremde Akte"]]), "v1")
        results = memory_store.search(unit_vector(0), "case-1", limit=10)
        assert [r.content for r in results] == ["eigene Akte"]
        assert all(r.case_id == "case-1" for r in results)

    def test_limit(self, memory_store):
        memory_store.reindex("doc-1", make_groups("doc-1", [["a", "b", "c", "d"]]), "v1")
        assert len(memory_store.search(unit_vector(0), "case-1", limit=2)) == 2

    def test_model_version_isolation(self, memory_store):
        memory_store.reindex("doc-1", make_groups("doc-1", [["alt"]]), "v1")
        assert len(memory_store.search(unit_vector(0), "case-1", model_version="v1")) == 1

        memory_store.reindex("doc-1", make_groups("doc-1", [["neu"]]), "v2")
        assert memory_store.search(unit_vector(0), "case-1", model_version="v1") == []
        assert [r.content for r in memory_store.search(unit_vector(0), "case-1", model_version="v2")] == ["neu"]

    def test_unknown_case_empty(self, memory_store):
        memory_store.reindex("doc-1", make_groups("doc-1", [["a"]]), "v1")
        assert memory_store.search(unit_vector(0), "case-404") == []


class TestInMemoryBestChunks:

    def test_nearest_child_per_document(self, memory_store):
        vectors = {"a1": unit_vector(1), "a2": unit_vector(2), "b1": unit_vector(2)}
        memory_store.reindex("doc-1", make_groups("doc-1", [["a1", "a2"]], vectors), "v1")
        memory_store.reindex("doc-2", make_groups("doc-2", [["b1"]], vectors), "v1")
        results = memory_store.best_chunks_for_documents(["doc-2", "doc-1"], unit_vector(2))
        assert [r.content for r in results] == ["b1", "a2"]

    def test_first_child_without_query_vector(self, memory_store):
        memory_store.reindex("doc-1", make_groups("doc-1", [["erster", "zweiter"]]), "v1")
        results = memory_store.best_chunks_for_documents(["doc-1"])
        assert [r.content for r in results] == ["erster"]

    def test_unindexed_documents_skipped(self, memory_store):
        assert memory_store.best_chunks_for_documents(["doc-3"]) == []


class TestInMemoryParentsAndStats:

    def test_fetch_parent_content(self, memory_store):
        groups = make_groups("doc-1", [["a", "b"], ["c"]])
        memory_store.reindex("doc-1", groups, "v1")
        child_b = groups[0].children[1]
        child_c = groups[1].children[0]
        parents = memory_store.fetch_parent_content([child_b.chunk_id, child_c.chunk_id, "unknown"])
        assert parents == {child_b.chunk_id: "a b", child_c.chunk_id: "c"}

    def test_stats(self, memory_store):
        memory_store.reindex("doc-1", make_groups("doc-1", [["a", "b"]]), "v2")
        memory_store.reindex("doc-2", make_groups("doc-2", [["c"]]), "v1")
        stats = memory_store.get_stats()
        assert stats.total_chunks == 3
        assert stats.documents_with_embeddings == 2
        assert stats.model_versions == ["v1", "v2"]

    def test_empty_stats(self, memory_store):
        stats = memory_store.get_stats()
        assert stats.to_dict() == {
            "total_chunks": 0, "documents_with_embeddings": 0, "model_versions": [],
        }
