"""
Vector Store with PostgreSQL + pgvector

Persists parent/child chunks of case documents and serves case-scoped cosine
similarity search over the embedded CHILD chunks. Parents are stored without
an embedding and only used to widen the context of a retrieved child.

Two implementations share the BaseVectorStore contract:
    VectorStore          -- PostgreSQL + pgvector via psycopg2
    InMemoryVectorStore  -- numpy cosine search, for development and tests
"""

import os
import logging
from dataclasses import dataclass, field, replace
from typing import Optional

import numpy as np
import psycopg2
import psycopg2.extras
import psycopg2.pool
from psycopg2.extras import RealDictCursor, execute_values

from .chunker import CHILD, PARENT, Chunk, ChunkGroup
from .collaborators import DocumentDirectory

logger = logging.getLogger(__name__)


@dataclass
class VectorStoreConfig:
    """Configuration for vector store."""
    connection_string: Optional[str] = None
    table_name: str = "document_chunks"
    documents_table: str = "documents"  # owned by the record store
    cases_table: str = "cases"          # owned by the record store
    embedding_dimensions: int = 1024
    pool_min_connections: int = 1
    pool_max_connections: int = 10
    hnsw_ef_search: int = 40  # raised to the search limit when smaller
    # Keeps scanning the index until enough rows survive the case filter.
    # Needs pgvector >= 0.8; None skips the setting on older servers.
    hnsw_iterative_scan: Optional[str] = "strict_order"


@dataclass
class Candidate:
    """A retrieved child chunk on its way through fusion and reranking."""
    chunk_id: str
    document_id: str
    content: str
    score: float = 0.0
    document_name: str = ""
    case_id: str = ""
    case_label: str = ""
    chunk_kind: str = CHILD
    parent_chunk_id: Optional[str] = None
    fused_score: float = 0.0
    sources: list[str] = field(default_factory=list)
    rerank_score: Optional[float] = None
    context_content: str = ""

    def to_dict(self) -> dict:
        return {
            "chunk_id": self.chunk_id,
            "document_id": self.document_id,
            "document_name": self.document_name,
            "case_id": self.case_id,
            "case_label": self.case_label,
            "content": self.content,
            "context_content": self.context_content,
            "chunk_kind": self.chunk_kind,
            "parent_chunk_id": self.parent_chunk_id,
            "score": round(self.score, 4),
            "fused_score": round(self.fused_score, 6),
            "rerank_score": self.rerank_score,
            "sources": list(self.sources),
        }


@dataclass
class EmbeddingStats:
    """Aggregate counts over stored embeddings."""
    total_chunks: int = 0
    documents_with_embeddings: int = 0
    model_versions: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "total_chunks": self.total_chunks,
            "documents_with_embeddings": self.documents_with_embeddings,
            "model_versions": list(self.model_versions),
        }


class BaseVectorStore:
    """
    Storage contract shared by the pgvector and in-memory stores.

    Subclasses implement the storage primitives; input validation for
    reindex() lives here so both behave identically.
    """

    embedding_dimensions: int = 1024

    def reindex(self, document_id: str, groups: list[ChunkGroup], model_version: str) -> int:
        """
        Replace every chunk of a document with a new parent/child set.

        Runs as one unit: either the old set or the new set is visible,
        never a mix. Calling it twice with the same input leaves the same
        chunk set.

        Returns:
            Number of child chunks stored
        """
        self._validate_groups(document_id, groups)
        return self._replace_document(document_id, groups, model_version)

    def _validate_groups(self, document_id: str, groups: list[ChunkGroup]) -> None:
        if not document_id:
            raise ValueError("document_id is required")
        for group in groups:
            if group.parent.kind != PARENT:
                raise ValueError(f"Chunk {group.parent.chunk_id} is not a PARENT chunk")
            if group.parent.document_id != document_id:
                raise ValueError(
                    f"Parent {group.parent.chunk_id} belongs to document "
                    f"{group.parent.document_id}, not {document_id}"
                )
            for child in group.children:
                if child.kind != CHILD:
                    raise ValueError(f"Chunk {child.chunk_id} is not a CHILD chunk")
                if child.parent_chunk_id != group.parent.chunk_id:
                    raise ValueError(
                        f"Child {child.chunk_id} does not reference parent {group.parent.chunk_id}"
                    )
                if child.document_id != document_id:
                    raise ValueError(
                        f"Child {child.chunk_id} belongs to document {child.document_id}"
                    )
                if child.embedding is None:
                    raise ValueError(f"Child {child.chunk_id} has no embedding")
                if len(child.embedding) != self.embedding_dimensions:
                    raise ValueError(
                        f"Child {child.chunk_id} embedding has {len(child.embedding)} "
                        f"dimensions, expected {self.embedding_dimensions}"
                    )

    def _replace_document(self, document_id: str, groups: list[ChunkGroup], model_version: str) -> int:
        raise NotImplementedError

    def delete_document_chunks(self, document_id: str) -> int:
        raise NotImplementedError

    def search(
        self,
        query_embedding: list[float],
        case_id: str,
        limit: int = 10,
        model_version: Optional[str] = None,
    ) -> list[Candidate]:
        raise NotImplementedError

    def best_chunks_for_documents(
        self,
        document_ids: list[str],
        query_embedding: Optional[list[float]] = None,
        model_version: Optional[str] = None,
    ) -> list[Candidate]:
        raise NotImplementedError

    def fetch_parent_content(self, chunk_ids: list[str]) -> dict[str, str]:
        raise NotImplementedError

    def get_stats(self) -> EmbeddingStats:
        raise NotImplementedError

    def close(self) -> None:
        pass


class VectorStore(BaseVectorStore):
    """
    PostgreSQL + pgvector chunk store.

    Case scoping joins the record store's documents and cases tables; this
    class only ever writes to its own chunk table.
    """

    def __init__(self, config: Optional[VectorStoreConfig] = None):
        """
        Initialize vector store.

        Args:
            config: Optional configuration. Uses env vars if not provided.
        """
        self.config = config or VectorStoreConfig()
        self.embedding_dimensions = self.config.embedding_dimensions
        self._pool = None
        self._connection_string = (
            self.config.connection_string or
            os.getenv("POSTGRES_URL") or
            os.getenv("DATABASE_URL") or
            "postgresql://localhost:5432/case_documents"
        )

    def connect(self) -> None:
        """Create the connection pool."""
        if self._pool:
            self._pool.closeall()
        try:
            self._pool = psycopg2.pool.ThreadedConnectionPool(
                minconn=self.config.pool_min_connections,
                maxconn=self.config.pool_max_connections,
                dsn=self._connection_string,
                cursor_factory=RealDictCursor,
            )
        except Exception as e:
            logger.error(f"Database connection failed: {e}")
            raise
        logger.info(
            f"Connection pool initialized (min={self.config.pool_min_connections}, "
            f"max={self.config.pool_max_connections})"
        )

    def _get_connection(self):
        if not self._pool:
            self.connect()
        return self._pool.getconn()

    def _release_connection(self, conn) -> None:
        if self._pool and conn:
            self._pool.putconn(conn)

    def _safe_rollback(self, conn) -> None:
        """Rollback a connection, ignoring errors if the connection is dead."""
        try:
            conn.rollback()
        except (psycopg2.InterfaceError, psycopg2.OperationalError):
            pass

    def execute_with_retry(self, operation, label="db_operation"):
        """Execute a DB operation with one retry on stale connection.

        Args:
            operation: Callable(conn) that performs the DB work and returns a result.
            label: Human-readable name for logging.

        Returns:
            Whatever ``operation`` returns.
        """
        for attempt in range(2):
            conn = self._get_connection()
            try:
                result = operation(conn)
                self._release_connection(conn)
                return result
            except (psycopg2.OperationalError, psycopg2.InterfaceError) as e:
                self._safe_rollback(conn)
                self._pool.putconn(conn, close=True)
                if attempt == 0:
                    logger.warning(f"{label}: stale conn, reconnecting: {e}")
                    self.connect()
                    continue
                raise
            except Exception:
                self._safe_rollback(conn)
                self._release_connection(conn)
                raise

    def close(self) -> None:
        """Close the connection pool."""
        if self._pool:
            self._pool.closeall()
            self._pool = None
            logger.info("Connection pool closed")

    def initialize_schema(self) -> None:
        """Create the pgvector extension, chunk table and indexes."""
        t = self.config.table_name
        sql = f"""
        CREATE EXTENSION IF NOT EXISTS vector;

        CREATE TABLE IF NOT EXISTS {t} (
            id UUID PRIMARY KEY,
            document_id TEXT NOT NULL,
            kind TEXT NOT NULL CHECK (kind IN ('PARENT', 'CHILD')),
            chunk_index INTEGER NOT NULL,
            content TEXT NOT NULL,
            parent_chunk_id UUID REFERENCES {t}(id) ON DELETE CASCADE,
            embedding vector({self.config.embedding_dimensions}),
            model_version TEXT,
            created_at TIMESTAMPTZ DEFAULT NOW()
        );

        CREATE INDEX IF NOT EXISTS idx_{t}_document ON {t}(document_id);
        CREATE INDEX IF NOT EXISTS idx_{t}_parent ON {t}(parent_chunk_id);
        CREATE INDEX IF NOT EXISTS idx_{t}_embedding_hnsw
            ON {t} USING hnsw (embedding vector_cosine_ops);
        """

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(sql)
            conn.commit()

        self.execute_with_retry(_op, "initialize_schema")
        logger.info(f"Schema initialized for table {t}")

    def _replace_document(self, document_id: str, groups: list[ChunkGroup], model_version: str) -> int:
        t = self.config.table_name
        parent_rows = [
            (g.parent.chunk_id, document_id, PARENT, g.parent.index,
             g.parent.content, None, None, model_version)
            for g in groups
        ]
        child_rows = [
            (c.chunk_id, document_id, CHILD, c.index, c.content,
             c.parent_chunk_id, c.embedding, model_version)
            for g in groups for c in g.children
        ]
        insert_sql = f"""
        INSERT INTO {t}
            (id, document_id, kind, chunk_index, content, parent_chunk_id, embedding, model_version)
        VALUES %s
        """
        template = "(%s::uuid, %s, %s, %s, %s, %s::uuid, %s::vector, %s)"

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(f"DELETE FROM {t} WHERE document_id = %s", (document_id,))
                # Parents first, children reference them
                if parent_rows:
                    execute_values(cur, insert_sql, parent_rows, template=template, page_size=500)
                if child_rows:
                    execute_values(cur, insert_sql, child_rows, template=template, page_size=500)
            conn.commit()

        self.execute_with_retry(_op, "reindex")
        logger.info(
            f"Reindexed document {document_id}: {len(parent_rows)} parents, "
            f"{len(child_rows)} children ({model_version})"
        )
        return len(child_rows)

    def delete_document_chunks(self, document_id: str) -> int:
        """Delete all chunks of a document. Returns number of rows removed."""
        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(
                    f"DELETE FROM {self.config.table_name} WHERE document_id = %s",
                    (document_id,),
                )
                deleted = cur.rowcount
            conn.commit()
            return deleted

        return self.execute_with_retry(_op, "delete_document_chunks")

    def _candidate_from_row(self, row) -> Candidate:
        row = dict(row)
        return Candidate(
            chunk_id=str(row["chunk_id"]),
            document_id=str(row["document_id"]),
            content=row["content"],
            score=float(row.get("score") or 0.0),
            document_name=row.get("document_name") or "",
            case_id=str(row.get("case_id") or ""),
            case_label=row.get("case_label") or "",
            chunk_kind=row.get("kind") or CHILD,
            parent_chunk_id=str(row["parent_chunk_id"]) if row.get("parent_chunk_id") else None,
        )

    def search(
        self,
        query_embedding: list[float],
        case_id: str,
        limit: int = 10,
        model_version: Optional[str] = None,
    ) -> list[Candidate]:
        """
        Cosine similarity search over CHILD chunks of one case.

        Args:
            query_embedding: Query embedding vector
            case_id: Case to search in; other cases are never returned
            limit: Maximum number of results
            model_version: Only match chunks embedded with this exact version

        Returns:
            Candidates ordered by similarity, score = 1 - cosine distance
        """
        filters = ["d.case_id = %s", "c.kind = 'CHILD'", "c.embedding IS NOT NULL"]
        filter_params = [case_id]
        if model_version:
            filters.append("c.model_version = %s")
            filter_params.append(model_version)

        sql = f"""
        SELECT
            c.id AS chunk_id,
            c.document_id,
            c.content,
            c.kind,
            c.parent_chunk_id,
            d.case_id,
            d.name AS document_name,
            k.reference AS case_label,
            1 - (c.embedding <=> %s::vector) AS score
        FROM {self.config.table_name} c
        JOIN {self.config.documents_table} d ON d.id = c.document_id
        LEFT JOIN {self.config.cases_table} k ON k.id = d.case_id
        WHERE {' AND '.join(filters)}
        ORDER BY c.embedding <=> %s::vector
        LIMIT %s
        """
        params = [query_embedding] + filter_params + [query_embedding, limit]

        def _op(conn):
            with conn.cursor() as cur:
                # An HNSW scan yields at most ef_search rows before filtering
                cur.execute(
                    "SET LOCAL hnsw.ef_search = %s",
                    (max(self.config.hnsw_ef_search, limit),),
                )
                if self.config.hnsw_iterative_scan:
                    cur.execute(
                        "SET LOCAL hnsw.iterative_scan = %s",
                        (self.config.hnsw_iterative_scan,),
                    )
                cur.execute(sql, params)
                rows = cur.fetchall()
            conn.commit()
            return [self._candidate_from_row(row) for row in rows]

        return self.execute_with_retry(_op, "search")

    def best_chunks_for_documents(
        self,
        document_ids: list[str],
        query_embedding: Optional[list[float]] = None,
        model_version: Optional[str] = None,
    ) -> list[Candidate]:
        """
        Resolve documents to one representative CHILD chunk each.

        With a query embedding the nearest child wins, otherwise the first
        child of the document. Output follows the order of document_ids.
        """
        if not document_ids:
            return []

        filters = ["c.document_id = ANY(%s)", "c.kind = 'CHILD'", "c.embedding IS NOT NULL"]
        filter_params = [list(document_ids)]
        if model_version:
            filters.append("c.model_version = %s")
            filter_params.append(model_version)

        if query_embedding is not None:
            score_sql = "1 - (c.embedding <=> %s::vector)"
            order_sql = "c.embedding <=> %s::vector"
            params = [query_embedding] + filter_params + [query_embedding]
        else:
            score_sql = "0.0"
            order_sql = "c.chunk_index"
            params = filter_params

        sql = f"""
        SELECT DISTINCT ON (c.document_id)
            c.id AS chunk_id,
            c.document_id,
            c.content,
            c.kind,
            c.parent_chunk_id,
            d.case_id,
            d.name AS document_name,
            k.reference AS case_label,
            {score_sql} AS score
        FROM {self.config.table_name} c
        JOIN {self.config.documents_table} d ON d.id = c.document_id
        LEFT JOIN {self.config.cases_table} k ON k.id = d.case_id
        WHERE {' AND '.join(filters)}
        ORDER BY c.document_id, {order_sql}
        """

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(sql, params)
                rows = cur.fetchall()
            conn.commit()
            return rows

        by_document = {}
        for row in self.execute_with_retry(_op, "best_chunks_for_documents"):
            candidate = self._candidate_from_row(row)
            by_document[candidate.document_id] = candidate
        return [by_document[d] for d in document_ids if d in by_document]

    def fetch_parent_content(self, chunk_ids: list[str]) -> dict[str, str]:
        """Map child chunk ids to the content of their parent chunk."""
        if not chunk_ids:
            return {}
        t = self.config.table_name
        sql = f"""
        SELECT ch.id AS chunk_id, p.content
        FROM {t} ch
        JOIN {t} p ON p.id = ch.parent_chunk_id
        WHERE ch.id = ANY(%s::uuid[])
        """

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(sql, (list(chunk_ids),))
                rows = cur.fetchall()
            conn.commit()
            return {str(row["chunk_id"]): row["content"] for row in rows}

        return self.execute_with_retry(_op, "fetch_parent_content")

    def get_stats(self) -> EmbeddingStats:
        """Count embedded chunks, embedded documents and model versions."""
        t = self.config.table_name

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(f"""
                    SELECT COUNT(*) AS total_chunks,
                           COUNT(DISTINCT document_id) AS documents_with_embeddings
                    FROM {t}
                    WHERE embedding IS NOT NULL
                """)
                counts = cur.fetchone()
                cur.execute(f"""
                    SELECT DISTINCT model_version FROM {t}
                    WHERE model_version IS NOT NULL
                    ORDER BY model_version
                """)
                versions = [row["model_version"] for row in cur.fetchall()]
            conn.commit()
            return EmbeddingStats(
                total_chunks=int(counts["total_chunks"]),
                documents_with_embeddings=int(counts["documents_with_embeddings"]),
                model_versions=versions,
            )

        return self.execute_with_retry(_op, "get_stats")


def _copy_chunk(chunk: Chunk, model_version: Optional[str] = None) -> Chunk:
    """Detached copy of a chunk, embedding list included."""
    return replace(
        chunk,
        embedding=list(chunk.embedding) if chunk.embedding is not None else None,
        model_version=model_version or chunk.model_version,
    )


class InMemoryVectorStore(BaseVectorStore):
    """
    Process-local chunk store with numpy cosine search.

    Case scoping and display names come from a DocumentDirectory, the same
    way the pgvector store joins the record store's tables.
    """

    def __init__(self, directory: DocumentDirectory, embedding_dimensions: int = 1024):
        self.directory = directory
        self.embedding_dimensions = embedding_dimensions
        # document_id -> list of (Chunk, model_version)
        self._rows: dict[str, list[tuple[Chunk, str]]] = {}

    def _replace_document(self, document_id: str, groups: list[ChunkGroup], model_version: str) -> int:
        rows = []
        for group in groups:
            rows.append((_copy_chunk(group.parent, model_version), model_version))
            rows.extend((_copy_chunk(child, model_version), model_version) for child in group.children)
        # Single assignment swaps the whole set
        self._rows[document_id] = rows
        return sum(1 for chunk, _ in rows if chunk.kind == CHILD)

    def delete_document_chunks(self, document_id: str) -> int:
        return len(self._rows.pop(document_id, []))

    def chunks_for_document(self, document_id: str) -> list[Chunk]:
        return [_copy_chunk(chunk) for chunk, _ in self._rows.get(document_id, [])]

    def _embedded_children(self, document_ids, model_version: Optional[str]):
        for document_id in document_ids:
            for chunk, version in self._rows.get(document_id, []):
                if chunk.kind != CHILD or chunk.embedding is None:
                    continue
                if model_version and version != model_version:
                    continue
                yield chunk

    def _to_candidate(self, chunk: Chunk, score: float) -> Candidate:
        info = self.directory.lookup(chunk.document_id)
        return Candidate(
            chunk_id=chunk.chunk_id,
            document_id=chunk.document_id,
            content=chunk.content,
            score=score,
            document_name=info.document_name if info else "",
            case_id=info.case_id if info else "",
            case_label=info.case_label if info else "",
            chunk_kind=chunk.kind,
            parent_chunk_id=chunk.parent_chunk_id,
        )

    @staticmethod
    def _cosine(matrix: np.ndarray, query: np.ndarray) -> np.ndarray:
        norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(query)
        norms[norms == 0] = 1.0
        return matrix @ query / norms

    def search(
        self,
        query_embedding: list[float],
        case_id: str,
        limit: int = 10,
        model_version: Optional[str] = None,
    ) -> list[Candidate]:
        document_ids = []
        for document_id in self._rows:
            info = self.directory.lookup(document_id)
            if info is not None and info.case_id == case_id:
                document_ids.append(document_id)
        chunks = list(self._embedded_children(document_ids, model_version))
        if not chunks or limit <= 0:
            return []

        matrix = np.array([c.embedding for c in chunks], dtype=np.float32)
        scores = self._cosine(matrix, np.array(query_embedding, dtype=np.float32))
        order = np.argsort(-scores, kind="stable")[:limit]
        return [self._to_candidate(chunks[i], float(scores[i])) for i in order]

    def best_chunks_for_documents(
        self,
        document_ids: list[str],
        query_embedding: Optional[list[float]] = None,
        model_version: Optional[str] = None,
    ) -> list[Candidate]:
        results = []
        for document_id in document_ids:
            chunks = list(self._embedded_children([document_id], model_version))
            if not chunks:
                continue
            if query_embedding is None:
                best = min(chunks, key=lambda c: c.index)
                results.append(self._to_candidate(best, 0.0))
                continue
            matrix = np.array([c.embedding for c in chunks], dtype=np.float32)
            scores = self._cosine(matrix, np.array(query_embedding, dtype=np.float32))
            best_idx = int(np.argmax(scores))
            results.append(self._to_candidate(chunks[best_idx], float(scores[best_idx])))
        return results

    def fetch_parent_content(self, chunk_ids: list[str]) -> dict[str, str]:
        wanted = set(chunk_ids)
        result = {}
        for rows in self._rows.values():
            parents = {c.chunk_id: c.content for c, _ in rows if c.kind == PARENT}
            for chunk, _ in rows:
                if chunk.chunk_id in wanted and chunk.parent_chunk_id in parents:
                    result[chunk.chunk_id] = parents[chunk.parent_chunk_id]
        return result

    def get_stats(self) -> EmbeddingStats:
        total = 0
        documents = set()
        versions = set()
        for document_id, rows in self._rows.items():
            for chunk, version in rows:
                if version:
                    versions.add(version)
                if chunk.embedding is not None:
                    total += 1
                    documents.add(document_id)
        return EmbeddingStats(
            total_chunks=total,
            documents_with_embeddings=len(documents),
            model_versions=sorted(versions),
        )
