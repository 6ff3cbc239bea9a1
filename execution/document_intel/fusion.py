"""
Reciprocal Rank Fusion for hybrid retrieval.

RRF score = sum(1 / (k + rank)) across the lexical and vector lists, with
1-based ranks. Only ranks matter, so the incomparable raw scores of BM25-style
ranking and cosine similarity never have to be normalized.
"""

import logging
from dataclasses import replace
from typing import Optional

from .vector_store import Candidate

logger = logging.getLogger(__name__)

LEXICAL = "lexical"
VECTOR = "vector"
RRF_K = 60


def rrf_score(rank: int, k: int = RRF_K) -> float:
    """Contribution of a 1-based rank."""
    return 1.0 / (k + rank)


def reciprocal_rank_fusion(
    lexical_results: list[Candidate],
    vector_results: list[Candidate],
    k: int = RRF_K,
    limit: Optional[int] = None,
) -> list[Candidate]:
    """
    Fuse a lexical and a vector ranking into one list.

    Args:
        lexical_results: Candidates from keyword search, best first
        vector_results: Candidates from similarity search, best first
        k: RRF damping constant
        limit: Optional cap on the returned list

    Returns:
        Copies of the candidates with fused_score and sources set, sorted by
        fused score. Ties keep first-seen order (lexical list first).
    """
    scores = {}
    sources = {}
    result_map = {}

    for source, results in ((LEXICAL, lexical_results), (VECTOR, vector_results)):
        seen = set()
        for rank, result in enumerate(results, start=1):
            chunk_id = result.chunk_id
            # A repeat inside one list keeps its best (first) rank only
            if chunk_id in seen:
                continue
            seen.add(chunk_id)
            scores[chunk_id] = scores.get(chunk_id, 0.0) + rrf_score(rank, k)
            sources.setdefault(chunk_id, []).append(source)
            if chunk_id not in result_map:
                result_map[chunk_id] = result

    # sorted() is stable, dict order is first-seen order
    ordered_ids = sorted(scores, key=lambda chunk_id: -scores[chunk_id])
    if limit is not None:
        ordered_ids = ordered_ids[:limit]

    fused = [
        replace(result_map[chunk_id], fused_score=scores[chunk_id], sources=list(sources[chunk_id]))
        for chunk_id in ordered_ids
    ]
    logger.debug(
        f"RRF fused {len(lexical_results)} lexical + {len(vector_results)} vector "
        f"into {len(fused)} candidates"
    )
    return fused
