"""
Metrics Collection for the Document Pipeline

Tracks embedding throughput, skips and failures on the ingestion side and
latency, degradation and reranker fallbacks on the retrieval side.

One collector is owned by the ServiceContainer; there is no module-level
instance.
"""

import time
import logging
import threading
from dataclasses import dataclass, field
from collections import defaultdict
from datetime import datetime, timedelta

logger = logging.getLogger(__name__)


@dataclass
class PipelineMetrics:
    """Aggregated pipeline and retrieval metrics."""
    # Ingestion
    documents_embedded: int = 0
    documents_failed: int = 0
    chunks_stored: int = 0
    skipped_by_reason: dict = field(default_factory=lambda: defaultdict(int))
    downstream_triggered: int = 0
    downstream_failed: int = 0
    total_ingestion_time_ms: float = 0

    # Retrieval
    total_retrievals: int = 0
    failed_retrievals: int = 0
    lexical_only_retrievals: int = 0
    latencies: list = field(default_factory=list)
    total_latency_ms: float = 0

    # Reranking
    rerank_calls: int = 0
    rerank_fallbacks: int = 0

    @property
    def documents_skipped(self) -> int:
        return sum(self.skipped_by_reason.values())

    @property
    def avg_latency_ms(self) -> float:
        """Calculate average retrieval latency."""
        if self.total_retrievals == 0:
            return 0
        return self.total_latency_ms / self.total_retrievals

    @property
    def p95_latency_ms(self) -> float:
        """Calculate 95th percentile latency."""
        if not self.latencies:
            return 0
        sorted_latencies = sorted(self.latencies)
        index = int(len(sorted_latencies) * 0.95)
        return sorted_latencies[min(index, len(sorted_latencies) - 1)]

    @property
    def rerank_fallback_rate(self) -> float:
        if self.rerank_calls == 0:
            return 0
        return self.rerank_fallbacks / self.rerank_calls

    def to_dict(self) -> dict:
        """Convert to dictionary for display."""
        return {
            "ingestion": {
                "documents_embedded": self.documents_embedded,
                "documents_failed": self.documents_failed,
                "documents_skipped": self.documents_skipped,
                "skipped_by_reason": dict(self.skipped_by_reason),
                "chunks_stored": self.chunks_stored,
                "downstream_triggered": self.downstream_triggered,
                "downstream_failed": self.downstream_failed,
                "avg_time_ms": round(
                    self.total_ingestion_time_ms / max(self.documents_embedded, 1), 2
                ),
            },
            "retrieval": {
                "total": self.total_retrievals,
                "failed": self.failed_retrievals,
                "lexical_only": self.lexical_only_retrievals,
                "latency_ms": {
                    "avg": round(self.avg_latency_ms, 2),
                    "p95": round(self.p95_latency_ms, 2),
                },
            },
            "reranking": {
                "calls": self.rerank_calls,
                "fallbacks": self.rerank_fallbacks,
                "fallback_rate": f"{self.rerank_fallback_rate:.2%}",
            },
        }


class MetricsCollector:
    """
    Collects and aggregates pipeline metrics.

    Usage:
        collector = MetricsCollector()

        with collector.track_retrieval() as tracker:
            results = retriever.retrieve(query, case_id)
            tracker.set_results(len(results))

        collector.get_metrics_dict()
    """

    def __init__(self, max_history: int = 1000):
        self.metrics = PipelineMetrics()
        self._max_history = max_history
        self._lock = threading.Lock()
        self._start_time = datetime.now()

    def reset(self):
        """Reset all metrics (for testing)."""
        with self._lock:
            self.metrics = PipelineMetrics()
            self._start_time = datetime.now()

    class RetrievalTracker:
        """Context manager for tracking one retrieval."""

        def __init__(self, collector: 'MetricsCollector'):
            self.collector = collector
            self.start_time = time.time()
            self.results_count = 0
            self.lexical_only = False

        def __enter__(self):
            return self

        def __exit__(self, exc_type, exc_val, exc_tb):
            latency_ms = (time.time() - self.start_time) * 1000
            self.collector._record_retrieval(
                latency_ms, failed=exc_type is not None, lexical_only=self.lexical_only
            )
            return False  # Don't suppress exceptions

        def set_results(self, count: int, lexical_only: bool = False):
            self.results_count = count
            self.lexical_only = lexical_only

    def track_retrieval(self) -> RetrievalTracker:
        return self.RetrievalTracker(self)

    def _record_retrieval(self, latency_ms: float, failed: bool, lexical_only: bool):
        with self._lock:
            m = self.metrics
            m.total_retrievals += 1
            if failed:
                m.failed_retrievals += 1
            if lexical_only:
                m.lexical_only_retrievals += 1
            m.total_latency_ms += latency_ms
            m.latencies.append(latency_ms)
            # Keep latencies list bounded
            if len(m.latencies) > self._max_history:
                m.latencies = m.latencies[-self._max_history:]

    def record_rerank(self, fallback: bool):
        with self._lock:
            self.metrics.rerank_calls += 1
            if fallback:
                self.metrics.rerank_fallbacks += 1

    def record_embedded(self, document_id: str, chunks_count: int, duration_ms: float):
        """Record a document whose chunks were embedded and stored."""
        with self._lock:
            self.metrics.documents_embedded += 1
            self.metrics.chunks_stored += chunks_count
            self.metrics.total_ingestion_time_ms += duration_ms
        logger.debug(f"Recorded embedding of {document_id}: {chunks_count} chunks")

    def record_skipped(self, reason: str):
        with self._lock:
            self.metrics.skipped_by_reason[reason] += 1

    def record_failed(self):
        with self._lock:
            self.metrics.documents_failed += 1

    def record_downstream(self, success: bool):
        with self._lock:
            if success:
                self.metrics.downstream_triggered += 1
            else:
                self.metrics.downstream_failed += 1

    def get_metrics(self) -> PipelineMetrics:
        """Get current metrics."""
        return self.metrics

    def get_metrics_dict(self) -> dict:
        """Get metrics as a dictionary."""
        with self._lock:
            data = self.metrics.to_dict()
        data["uptime_seconds"] = int(self.get_uptime().total_seconds())
        return data

    def get_uptime(self) -> timedelta:
        """Get collector uptime."""
        return datetime.now() - self._start_time
