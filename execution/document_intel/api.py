"""
FastAPI Backend for Case Document Retrieval

Exposes case-scoped hybrid retrieval, embedding statistics and pipeline
metrics to the legal assistant. Authentication is handled upstream.

Run with: uvicorn execution.document_intel.api:app --host 0.0.0.0 --port 8000
"""

import os
import time
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from dotenv import load_dotenv

from .api_models import (
    EmbeddingStatsResponse,
    HealthResponse,
    RetrieveRequest,
    RetrieveResponse,
    RetrievedChunk,
)
from .container import ContainerConfig, ServiceContainer

# Load environment variables
load_dotenv()
logger = logging.getLogger(__name__)

_container = ServiceContainer(ContainerConfig.from_env())


@asynccontextmanager
async def lifespan(app: FastAPI):
    logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO"))
    yield
    _container.close()


app = FastAPI(
    title="Case Document Intelligence API",
    description="Hybrid retrieval over chunked and embedded case documents",
    version="0.1.0",
    lifespan=lifespan,
)

# Configure CORS: use CORS_ORIGINS env var (comma-separated) or default to localhost
_cors_origins = os.getenv("CORS_ORIGINS", "http://localhost:3000").split(",")
app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in _cors_origins],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# =============================================================================
# Endpoints
# =============================================================================

@app.get("/api/v1/health", response_model=HealthResponse)
def health_check():
    """Health check endpoint."""
    db_status = "unknown"
    try:
        _container.get_store()
        db_status = "connected"
    except Exception as e:
        logger.warning(f"Health check: database disconnected: {e}")
        db_status = "disconnected"

    embeddings = _container.get_embedding_service()
    embedding_status = "available" if embeddings.is_available() else "unavailable"

    return HealthResponse(
        status="ok" if db_status == "connected" else "degraded",
        database=db_status,
        embedding_service=embedding_status,
        model_version=embeddings.model_version,
    )


@app.post("/api/v1/retrieve", response_model=RetrieveResponse)
def retrieve(request: RetrieveRequest):
    """Hybrid retrieval within one case."""
    start = time.time()
    try:
        retriever = _container.get_retriever()
        results = retriever.retrieve(request.query, request.case_id, top_k=request.top_k)
    except Exception as e:
        logger.error(f"Retrieval failed for case {request.case_id}: {e}")
        raise HTTPException(status_code=503, detail="Retrieval backend unavailable")

    return RetrieveResponse(
        results=[
            RetrievedChunk(
                chunk_id=c.chunk_id,
                document_id=c.document_id,
                document_name=c.document_name,
                case_id=c.case_id,
                case_label=c.case_label,
                content=c.content,
                context_content=c.context_content,
                parent_chunk_id=c.parent_chunk_id,
                score=c.score,
                fused_score=c.fused_score,
                rerank_score=c.rerank_score,
                sources=c.sources,
            )
            for c in results
        ],
        latency_ms=round((time.time() - start) * 1000, 2),
    )


@app.get("/api/v1/embeddings/stats", response_model=EmbeddingStatsResponse)
def embedding_stats():
    """Counts of stored embeddings and the model versions in use."""
    try:
        stats = _container.get_store().get_stats()
    except Exception as e:
        logger.error(f"Embedding stats failed: {e}")
        raise HTTPException(status_code=503, detail="Vector store unavailable")
    return EmbeddingStatsResponse(**stats.to_dict())


@app.get("/api/v1/metrics")
def metrics():
    """Pipeline and retrieval metrics of this process."""
    return _container.metrics.get_metrics_dict()
