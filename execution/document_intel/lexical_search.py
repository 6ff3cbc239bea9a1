"""
PostgreSQL full-text search over whole documents.

The lexical side of hybrid retrieval works at document level: it ranks the
extracted text of each document in a case and returns document ids. The
retriever later resolves each hit to its best matching child chunk.
"""

import logging

from .collaborators import LexicalSearch
from .vector_store import VectorStore

logger = logging.getLogger(__name__)

VALID_FTS_CONFIGS = frozenset({"german", "english", "simple"})


class PostgresLexicalSearch(LexicalSearch):
    """ts_rank / websearch_to_tsquery over the record store's documents table."""

    def __init__(
        self,
        store: VectorStore,
        fts_config: str = "german",
        text_column: str = "extracted_text",
    ):
        # Validate against whitelist, the config name is interpolated into SQL
        if fts_config not in VALID_FTS_CONFIGS:
            raise ValueError(f"Unsupported FTS config: {fts_config}")
        self._store = store
        self._fts_config = fts_config
        self._text_column = text_column

    def search(self, query: str, case_id: str, limit: int = 50) -> list[str]:
        """
        Full-text search within one case.

        Returns:
            Document ids ranked by ts_rank, best first
        """
        if not query or not query.strip():
            return []

        documents = self._store.config.documents_table
        column = self._text_column
        sql = f"""
        SELECT
            d.id AS document_id,
            ts_rank(to_tsvector(%s, d.{column}), websearch_to_tsquery(%s, %s)) AS score
        FROM {documents} d
        WHERE d.case_id = %s
          AND d.{column} IS NOT NULL
          AND to_tsvector(%s, d.{column}) @@ websearch_to_tsquery(%s, %s)
        ORDER BY score DESC, d.id
        LIMIT %s
        """
        cfg = self._fts_config
        params = [cfg, cfg, query, case_id, cfg, cfg, query, limit]

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(sql, params)
                rows = cur.fetchall()
            conn.commit()
            return [str(row["document_id"]) for row in rows]

        document_ids = self._store.execute_with_retry(_op, "lexical_search")
        logger.debug(f"Lexical search in case {case_id} matched {len(document_ids)} documents")
        return document_ids
