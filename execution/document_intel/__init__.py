"""
Case Document Intelligence - chunking, embedding and hybrid retrieval

This module turns extracted document text of a law firm's case files into
retrievable knowledge and answers case-scoped queries:
- Parent/child chunking of German legal text
- Ollama E5 embeddings with graceful degradation
- PostgreSQL + pgvector storage with idempotent reindexing
- Hybrid lexical + vector retrieval with RRF and LLM reranking
- Celery job pipeline with progress reporting and downstream triggers
"""

from .chunker import ParentChildChunker, chunk_parent_child
from .embeddings import EmbeddingService, EmbeddingError
from .vector_store import VectorStore, InMemoryVectorStore
from .fusion import reciprocal_rank_fusion
from .reranker import LLMReranker
from .retriever import HybridRetriever
from .pipeline import EmbeddingPipeline

__all__ = [
    "ParentChildChunker",
    "chunk_parent_child",
    "EmbeddingService",
    "EmbeddingError",
    "VectorStore",
    "InMemoryVectorStore",
    "reciprocal_rank_fusion",
    "LLMReranker",
    "HybridRetriever",
    "EmbeddingPipeline",
]

__version__ = "0.1.0"
