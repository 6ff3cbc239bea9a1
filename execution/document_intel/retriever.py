"""
Hybrid Retriever for Case Documents

Multi-stage retrieval within one case:
1. Embed the query (E5 query prefix)
2. Parallel lexical (document-level full-text) and vector (chunk-level) search
3. Lexical document hits resolved to their best matching child chunk
4. Reciprocal Rank Fusion (k=60), capped at 50
5. LLM reranking to the final 10, with a 3s deadline
6. Parent context: top children carry their parent's text, within a
   total character budget

Every stage degrades instead of failing: no embedding means lexical only,
a failed search side contributes nothing, a failed rerank keeps fused order.
"""

import time
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, replace
from typing import Optional

from .collaborators import LexicalSearch
from .embeddings import EmbeddingError, EmbeddingService
from .fusion import reciprocal_rank_fusion
from .metrics import MetricsCollector
from .reranker import LLMReranker
from .vector_store import BaseVectorStore, Candidate

logger = logging.getLogger(__name__)


@dataclass
class RetrievalConfig:
    """Configuration for hybrid retrieval."""
    # Number of results from each search method
    lexical_top_k: int = 50
    vector_top_k: int = 50

    # RRF parameter and cap on the fused list
    rrf_k: int = 60
    fusion_limit: int = 50

    # Final results after reranking
    final_top_k: int = 10

    use_reranking: bool = True
    rerank_timeout_ms: int = 3000

    # Parent context: first N results get the full parent text
    full_context_slots: int = 3
    context_budget_chars: int = 12000


class HybridRetriever:
    """
    Case-scoped hybrid retrieval pipeline.

    Usage:
        retriever = HybridRetriever(store, embeddings, lexical, reranker)
        results = retriever.retrieve("Kündigungsfrist Mietvertrag", case_id)
    """

    def __init__(
        self,
        vector_store: BaseVectorStore,
        embedding_service: EmbeddingService,
        lexical_search: Optional[LexicalSearch] = None,
        reranker: Optional[LLMReranker] = None,
        config: Optional[RetrievalConfig] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.store = vector_store
        self.embeddings = embedding_service
        self.lexical = lexical_search
        self.reranker = reranker
        self.config = config or RetrievalConfig()
        self.metrics = metrics

    def retrieve(self, query: str, case_id: str, top_k: Optional[int] = None) -> list[Candidate]:
        """
        Retrieve the most relevant child chunks of one case.

        Args:
            query: The user's question
            case_id: Case to search in
            top_k: Number of results (defaults to config.final_top_k)

        Returns:
            Candidates with fused_score, sources, optional rerank_score and
            context_content populated. Empty when nothing matches.
        """
        if not query or not query.strip():
            return []

        if self.metrics is None:
            return self._retrieve(query, case_id, top_k, tracker=None)
        with self.metrics.track_retrieval() as tracker:
            return self._retrieve(query, case_id, top_k, tracker)

    def _retrieve(self, query: str, case_id: str, top_k: Optional[int], tracker) -> list[Candidate]:
        start_time = time.time()
        top_k = top_k or self.config.final_top_k

        query_embedding = None
        try:
            query_embedding = self.embeddings.embed_query(query)
        except EmbeddingError as e:
            logger.warning(f"Query embedding failed, falling back to lexical search only: {e}")

        lexical_results, vector_results = self._parallel_search(query, case_id, query_embedding)

        fused = reciprocal_rank_fusion(
            lexical_results,
            vector_results,
            k=self.config.rrf_k,
            limit=self.config.fusion_limit,
        )
        if not fused:
            logger.info(f"No results for query in case {case_id}")
            if tracker is not None:
                tracker.set_results(0, lexical_only=query_embedding is None)
            return []

        ranked = self._rerank(query, fused)[:top_k]
        results = self._attach_context(ranked)

        if tracker is not None:
            tracker.set_results(len(results), lexical_only=query_embedding is None)
        elapsed = (time.time() - start_time) * 1000
        logger.info(
            f"Returning {len(results)} results for case {case_id} "
            f"({len(lexical_results)} lexical, {len(vector_results)} vector) in {elapsed:.0f}ms"
        )
        return results

    def _parallel_search(
        self,
        query: str,
        case_id: str,
        query_embedding: Optional[list[float]],
    ) -> tuple[list[Candidate], list[Candidate]]:
        """Run lexical and vector search concurrently; a failing side yields []."""
        search_tasks = []
        if self.lexical is not None:
            search_tasks.append(("lexical", lambda: self._lexical_search(query, case_id, query_embedding)))
        if query_embedding is not None:
            search_tasks.append(("vector", lambda: self.store.search(
                query_embedding,
                case_id,
                limit=self.config.vector_top_k,
                model_version=self.embeddings.model_version,
            )))

        results = {"lexical": [], "vector": []}
        if not search_tasks:
            return results["lexical"], results["vector"]

        with ThreadPoolExecutor(max_workers=len(search_tasks)) as executor:
            future_map = {rtype: executor.submit(fn) for rtype, fn in search_tasks}
            for rtype, future in future_map.items():
                try:
                    results[rtype] = future.result()
                except Exception as e:
                    logger.warning(f"{rtype} search failed in case {case_id}: {e}")

        return results["lexical"], results["vector"]

    def _lexical_search(
        self,
        query: str,
        case_id: str,
        query_embedding: Optional[list[float]],
    ) -> list[Candidate]:
        document_ids = self.lexical.search(query, case_id, limit=self.config.lexical_top_k)
        if not document_ids:
            return []
        return self.store.best_chunks_for_documents(
            document_ids,
            query_embedding=query_embedding,
            model_version=self.embeddings.model_version,
        )

    def _rerank(self, query: str, fused: list[Candidate]) -> list[Candidate]:
        if not (self.config.use_reranking and self.reranker):
            return fused[:self.config.final_top_k]

        reranked = self.reranker.rerank(query, fused, timeout_ms=self.config.rerank_timeout_ms)
        if self.metrics is not None:
            fell_back = all(c.rerank_score is None for c in reranked)
            self.metrics.record_rerank(fallback=fell_back)
        return reranked

    def _attach_context(self, results: list[Candidate]) -> list[Candidate]:
        """
        Fill context_content: parent text for the first slots, child text
        for the rest, truncated so the total stays within the budget.
        """
        slots = self.config.full_context_slots
        wanted = [c.chunk_id for c in results[:slots] if c.parent_chunk_id]
        parent_content = {}
        if wanted:
            try:
                parent_content = self.store.fetch_parent_content(wanted)
            except Exception as e:
                logger.warning(f"Parent context lookup failed, using child text: {e}")

        remaining = self.config.context_budget_chars
        with_context = []
        for position, candidate in enumerate(results):
            if position < slots:
                context = parent_content.get(candidate.chunk_id, candidate.content)
            else:
                context = candidate.content
            context = context[:remaining]
            remaining = max(0, remaining - len(context))
            with_context.append(replace(candidate, context_content=context))
        return with_context
