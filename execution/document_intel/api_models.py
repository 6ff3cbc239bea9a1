"""
Pydantic models for the document intelligence FastAPI backend.
"""

from typing import Optional
from pydantic import BaseModel, Field


class RetrieveRequest(BaseModel):
    """Request body for case-scoped retrieval."""
    query: str = Field(..., min_length=1, max_length=2000)
    case_id: str = Field(..., min_length=1)
    top_k: int = Field(default=10, ge=1, le=10)


class RetrievedChunk(BaseModel):
    """One retrieved child chunk with its context."""
    chunk_id: str
    document_id: str
    document_name: str = ""
    case_id: str = ""
    case_label: str = ""
    content: str
    context_content: str = ""
    parent_chunk_id: Optional[str] = None
    score: float
    fused_score: float
    rerank_score: Optional[float] = None
    sources: list[str]


class RetrieveResponse(BaseModel):
    """Response body for retrieval."""
    results: list[RetrievedChunk]
    latency_ms: float


class EmbeddingStatsResponse(BaseModel):
    """Stored embedding statistics."""
    total_chunks: int
    documents_with_embeddings: int
    model_versions: list[str]


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    database: str
    embedding_service: str
    model_version: str
    version: str = "0.1.0"
