"""
Service container.

Owns every backend client (embedding HTTP session, database pool, LLM
client) for the lifetime of a worker process or API server. Clients are
created on first use, keyed by backend identity so two configurations that
point at the same backend share one client, and closed together at shutdown.
"""

import os
import logging
from dataclasses import dataclass, field
from typing import Callable, Optional

from .collaborators import AnalysisQueue, FeatureFlags, InMemoryDocumentDirectory
from .embeddings import EmbeddingConfig, EmbeddingService
from .flags import EnvFeatureFlags, SettingsTableFeatureFlags
from .lexical_search import PostgresLexicalSearch
from .metrics import MetricsCollector
from .pipeline import EmbeddingPipeline, PipelineConfig
from .reranker import LLMReranker, RerankerConfig
from .retriever import HybridRetriever, RetrievalConfig
from .vector_store import BaseVectorStore, InMemoryVectorStore, VectorStore, VectorStoreConfig

logger = logging.getLogger(__name__)

POSTGRES = "postgres"
MEMORY = "memory"


@dataclass
class ContainerConfig:
    """Backend selection plus the per-component configs."""
    store_backend: str = POSTGRES  # "postgres" or "memory"
    flags_backend: str = "env"     # "env" or "settings"
    initialize_schema: bool = True
    embedding: EmbeddingConfig = field(default_factory=EmbeddingConfig)
    store: VectorStoreConfig = field(default_factory=VectorStoreConfig)
    reranker: RerankerConfig = field(default_factory=RerankerConfig)
    retrieval: RetrievalConfig = field(default_factory=RetrievalConfig)
    pipeline: PipelineConfig = field(default_factory=PipelineConfig)

    def __post_init__(self):
        if self.store_backend not in (POSTGRES, MEMORY):
            raise ValueError(f"Unknown store backend: {self.store_backend}")
        if self.flags_backend not in ("env", "settings"):
            raise ValueError(f"Unknown flags backend: {self.flags_backend}")
        if self.flags_backend == "settings" and self.store_backend != POSTGRES:
            raise ValueError("The settings flag backend requires the postgres store")

    @classmethod
    def from_env(cls) -> "ContainerConfig":
        embedding = EmbeddingConfig.from_env()
        store = VectorStoreConfig(
            connection_string=os.getenv("POSTGRES_URL") or os.getenv("DATABASE_URL"),
            embedding_dimensions=embedding.dimensions,
            hnsw_iterative_scan=os.getenv("HNSW_ITERATIVE_SCAN", "strict_order") or None,
        )
        return cls(
            store_backend=os.getenv("VECTOR_STORE_BACKEND", POSTGRES),
            flags_backend=os.getenv("FEATURE_FLAGS_BACKEND", "env"),
            initialize_schema=os.getenv("INITIALIZE_SCHEMA", "true").lower() == "true",
            embedding=embedding,
            store=store,
            reranker=RerankerConfig.from_env(),
            pipeline=PipelineConfig.from_env(),
        )


class ServiceContainer:
    """
    Registry of long-lived clients.

    Usage:
        with ServiceContainer(ContainerConfig.from_env()) as container:
            retriever = container.get_retriever()
    """

    def __init__(self, config: Optional[ContainerConfig] = None):
        self.config = config or ContainerConfig()
        self.metrics = MetricsCollector()
        self._clients = {}  # (kind, identity) -> client, in creation order

    def _get_or_create(self, key: tuple, factory: Callable):
        if key not in self._clients:
            self._clients[key] = factory()
            logger.debug(f"Created client {key[0]} for {key[1:]}")
        return self._clients[key]

    def get_embedding_service(self) -> EmbeddingService:
        cfg = self.config.embedding
        return self._get_or_create(
            ("embedding", cfg.base_url, cfg.model_version),
            lambda: EmbeddingService(cfg),
        )

    def get_store(self) -> BaseVectorStore:
        if self.config.store_backend == MEMORY:
            return self._get_or_create(
                ("store", MEMORY),
                lambda: InMemoryVectorStore(
                    InMemoryDocumentDirectory(), self.config.embedding.dimensions
                ),
            )

        def _create():
            store = VectorStore(self.config.store)
            store.connect()
            if self.config.initialize_schema:
                store.initialize_schema()
            return store

        return self._get_or_create(
            ("store", POSTGRES, self.config.store.connection_string or "env", self.config.store.table_name),
            _create,
        )

    def get_lexical_search(self) -> Optional[PostgresLexicalSearch]:
        store = self.get_store()
        if not isinstance(store, VectorStore):
            return None
        return self._get_or_create(("lexical", id(store)), lambda: PostgresLexicalSearch(store))

    def get_reranker(self) -> Optional[LLMReranker]:
        if not self.config.retrieval.use_reranking:
            return None
        cfg = self.config.reranker
        return self._get_or_create(
            ("reranker", cfg.base_url, cfg.model),
            lambda: LLMReranker(cfg),
        )

    def get_feature_flags(self) -> FeatureFlags:
        if self.config.flags_backend == "settings":
            store = self.get_store()
            return self._get_or_create(("flags", "settings"), lambda: SettingsTableFeatureFlags(store))
        return self._get_or_create(("flags", "env"), EnvFeatureFlags)

    def get_retriever(self) -> HybridRetriever:
        return self._get_or_create(("retriever",), lambda: HybridRetriever(
            self.get_store(),
            self.get_embedding_service(),
            lexical_search=self.get_lexical_search(),
            reranker=self.get_reranker(),
            config=self.config.retrieval,
            metrics=self.metrics,
        ))

    def get_pipeline(self, analysis_queue: Optional[AnalysisQueue] = None) -> EmbeddingPipeline:
        return EmbeddingPipeline(
            self.get_embedding_service(),
            self.get_store(),
            analysis_queue=analysis_queue,
            feature_flags=self.get_feature_flags(),
            config=self.config.pipeline,
            metrics=self.metrics,
        )

    def open(self) -> "ServiceContainer":
        """Eagerly create the embedding client and the store."""
        self.get_embedding_service()
        self.get_store()
        logger.info(f"Service container opened ({self.config.store_backend} store)")
        return self

    def close(self) -> None:
        """Close every client that holds resources, newest first."""
        for key, client in reversed(list(self._clients.items())):
            close = getattr(client, "close", None)
            if close is None:
                continue
            try:
                close()
            except Exception as e:
                logger.warning(f"Failed to close {key[0]} client: {e}")
        self._clients.clear()
        logger.info("Service container closed")

    def __enter__(self):
        return self.open()

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False
