"""
Embedding Service for Case Documents

Talks to an Ollama server running a multilingual E5 instruct model.
E5 models are trained with asymmetric prefixes, so stored passages are
embedded as "passage: <text>" and search queries as "query: <text>".

The service never retries internally: a failed request raises EmbeddingError
and the caller (the job queue) decides whether to try again.
"""

import os
import hashlib
import logging
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, Optional

import requests

logger = logging.getLogger(__name__)

PASSAGE_PREFIX = "passage: "
QUERY_PREFIX = "query: "


class EmbeddingError(RuntimeError):
    """Raised when the embedding backend fails or returns unusable data."""


@dataclass
class EmbeddingConfig:
    """Configuration for the Ollama embedding backend."""
    base_url: str = "http://localhost:11434"
    model: str = "blaifa/multilingual-e5-large-instruct"
    model_revision: str = "1.0"
    dimensions: int = 1024
    batch_size: int = 5
    request_timeout: float = 10.0  # seconds per embed call
    probe_timeout: float = 5.0     # seconds for the availability check
    use_cache: bool = True         # query embeddings only
    query_cache_size: int = 1024

    def __post_init__(self):
        self.base_url = self.base_url.rstrip("/")
        if self.dimensions <= 0:
            raise ValueError(f"dimensions must be positive, got {self.dimensions}")
        if self.batch_size <= 0:
            raise ValueError(f"batch_size must be positive, got {self.batch_size}")
        if self.request_timeout <= 0 or self.probe_timeout <= 0:
            raise ValueError("Timeouts must be positive")

    @property
    def model_version(self) -> str:
        return f"{self.model}@{self.model_revision}"

    @classmethod
    def from_env(cls) -> "EmbeddingConfig":
        """Build config from OLLAMA_URL / EMBEDDING_* environment variables."""
        defaults = cls()
        return cls(
            base_url=os.getenv("OLLAMA_URL", defaults.base_url),
            model=os.getenv("EMBEDDING_MODEL", defaults.model),
            model_revision=os.getenv("EMBEDDING_MODEL_REVISION", defaults.model_revision),
            dimensions=int(os.getenv("EMBEDDING_DIMENSIONS", defaults.dimensions)),
            batch_size=int(os.getenv("EMBEDDING_BATCH_SIZE", defaults.batch_size)),
            request_timeout=float(os.getenv("EMBEDDING_TIMEOUT", defaults.request_timeout)),
        )


class EmbeddingService:
    """
    Ollama-backed embedding service.

    Provides:
    - Availability probe (never raises)
    - Passage and query embedding with E5 prefixes
    - Sequential batch embedding with a per-batch progress callback
    - Bounded in-memory cache for query embeddings
    """

    def __init__(
        self,
        config: Optional[EmbeddingConfig] = None,
        session: Optional[requests.Session] = None,
    ):
        """
        Initialize embedding service.

        Args:
            config: Optional configuration. Uses defaults if not provided.
            session: Optional requests session (shared connection pool).
        """
        self.config = config or EmbeddingConfig()
        self._session = session or requests.Session()
        self._owns_session = session is None
        self._query_cache: OrderedDict[str, list[float]] = OrderedDict()

    @property
    def model_version(self) -> str:
        return self.config.model_version

    @property
    def dimensions(self) -> int:
        """Return embedding dimensions."""
        return self.config.dimensions

    def is_available(self) -> bool:
        """Return True if the embedding server answers its model listing."""
        try:
            response = self._session.get(
                f"{self.config.base_url}/api/tags",
                timeout=self.config.probe_timeout,
            )
        except requests.RequestException as e:
            logger.debug(f"Embedding service probe failed: {e}")
            return False
        return response.ok

    def embed_passage(self, text: str) -> list[float]:
        """Embed one stored passage."""
        return self._embed([PASSAGE_PREFIX + text])[0]

    def embed_query(self, query: str) -> list[float]:
        """
        Embed a search query.

        Results are cached per model and query text; repeated questions
        against the same case are common.
        """
        cache_key = self._get_cache_key(query)
        if self.config.use_cache and cache_key in self._query_cache:
            self._query_cache.move_to_end(cache_key)
            return list(self._query_cache[cache_key])

        embedding = self._embed([QUERY_PREFIX + query])[0]

        if self.config.use_cache:
            self._query_cache[cache_key] = list(embedding)
            while len(self._query_cache) > self.config.query_cache_size:
                self._query_cache.popitem(last=False)
        return embedding

    def embed_batch(
        self,
        texts: list[str],
        batch_size: Optional[int] = None,
        on_batch: Optional[Callable[[int, int], None]] = None,
    ) -> list[list[float]]:
        """
        Embed passages one item at a time, grouped into progress batches.

        Each item is its own request, so the request timeout and any error
        apply to a single passage. Items are embedded sequentially, never in
        parallel.

        Args:
            texts: Passage texts, embedded with the passage prefix
            batch_size: Items per progress batch (defaults to config.batch_size)
            on_batch: Called as on_batch(completed, total) after each batch

        Returns:
            Embeddings in input order. Any failed item raises EmbeddingError;
            items are never silently skipped.
        """
        if not texts:
            return []

        size = batch_size or self.config.batch_size
        total = len(texts)
        embeddings = []
        for start in range(0, total, size):
            for text in texts[start:start + size]:
                embeddings.append(self._embed([PASSAGE_PREFIX + text])[0])
            if on_batch is not None:
                on_batch(len(embeddings), total)
        return embeddings

    def _embed(self, inputs: list[str]) -> list[list[float]]:
        """POST inputs to /api/embed and validate the returned vectors."""
        url = f"{self.config.base_url}/api/embed"
        try:
            response = self._session.post(
                url,
                json={"model": self.config.model, "input": inputs},
                timeout=self.config.request_timeout,
            )
        except requests.Timeout as e:
            raise EmbeddingError(
                f"Embedding request timed out after {self.config.request_timeout}s"
            ) from e
        except requests.RequestException as e:
            raise EmbeddingError(f"Embedding request failed: {e}") from e

        if not response.ok:
            raise EmbeddingError(
                f"Embedding service returned HTTP {response.status_code}: "
                f"{response.text[:200]}"
            )

        try:
            payload = response.json()
        except ValueError as e:
            raise EmbeddingError("Embedding service returned invalid JSON") from e

        embeddings = payload.get("embeddings") if isinstance(payload, dict) else None
        if not embeddings or len(embeddings) != len(inputs):
            raise EmbeddingError(
                f"Expected {len(inputs)} embeddings, got "
                f"{len(embeddings) if embeddings else 0}"
            )

        for embedding in embeddings:
            if not isinstance(embedding, list) or len(embedding) != self.config.dimensions:
                got = len(embedding) if isinstance(embedding, list) else type(embedding).__name__
                raise EmbeddingError(
                    f"Embedding dimension mismatch: expected {self.config.dimensions}, got {got}"
                )
        return embeddings

    def _get_cache_key(self, text: str) -> str:
        """Generate cache key for a query."""
        content = f"{self.config.model_version}:query:{text}"
        return hashlib.sha256(content.encode()).hexdigest()[:32]

    def close(self) -> None:
        """Close the HTTP session if this service created it."""
        if self._owns_session:
            self._session.close()
