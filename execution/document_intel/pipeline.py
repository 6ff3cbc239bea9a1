"""
Embedding Pipeline

Consumes document jobs after text extraction and drives them through:
    RECEIVED -> CHUNKED -> EMBEDDING -> STORED -> DOWNSTREAM_TRIGGERED

An unreachable embedding server or an empty document is a skip, not a
failure. Embedding and storage errors propagate so the job queue can retry;
nothing is written for a document whose embedding did not finish.
"""

import os
import time
import logging
from dataclasses import dataclass
from typing import Callable, Optional

from .chunker import ParentChildChunker, iter_children
from .collaborators import AnalysisQueue, FeatureFlags, PipelineJob
from .embeddings import EmbeddingService
from .metrics import MetricsCollector
from .vector_store import BaseVectorStore

logger = logging.getLogger(__name__)

RECEIVED = "RECEIVED"
CHUNKED = "CHUNKED"
EMBEDDING = "EMBEDDING"
STORED = "STORED"
DOWNSTREAM_TRIGGERED = "DOWNSTREAM_TRIGGERED"

SKIP_UNAVAILABLE = "embedding_unavailable"
SKIP_EMPTY = "empty_text"


@dataclass
class PipelineConfig:
    """Configuration for the embedding pipeline."""
    batch_size: int = 5
    downstream_flag: str = "analysis.scan_enabled"
    downstream_job_type: str = "document_scan"

    def __post_init__(self):
        if self.batch_size <= 0:
            raise ValueError(f"batch_size must be positive, got {self.batch_size}")

    @classmethod
    def from_env(cls) -> "PipelineConfig":
        defaults = cls()
        return cls(
            batch_size=int(os.getenv("EMBEDDING_BATCH_SIZE", defaults.batch_size)),
            downstream_flag=os.getenv("DOWNSTREAM_FLAG", defaults.downstream_flag),
            downstream_job_type=os.getenv("DOWNSTREAM_JOB_TYPE", defaults.downstream_job_type),
        )


@dataclass
class PipelineResult:
    """Outcome of processing one document job."""
    document_id: str
    stage: str = RECEIVED
    skipped_reason: Optional[str] = None
    parent_count: int = 0
    child_count: int = 0
    model_version: Optional[str] = None
    downstream_triggered: bool = False

    @property
    def skipped(self) -> bool:
        return self.skipped_reason is not None

    def to_dict(self) -> dict:
        return {
            "document_id": self.document_id,
            "stage": self.stage,
            "skipped_reason": self.skipped_reason,
            "parent_count": self.parent_count,
            "child_count": self.child_count,
            "model_version": self.model_version,
            "downstream_triggered": self.downstream_triggered,
        }


def best_effort(label: str, fn: Callable, *args, **kwargs) -> bool:
    """
    Run fn and log instead of raising on failure.

    Returns:
        True if fn completed, False if it raised
    """
    try:
        fn(*args, **kwargs)
        return True
    except Exception as e:
        logger.warning(f"{label} failed (ignored): {e}")
        return False


class ProgressReporter:
    """Turns processed/total counts into monotonic integer percentages."""

    def __init__(self, job: PipelineJob, total: int):
        self._job = job
        self._total = total
        self._last = 0

    def report(self, processed: int) -> int:
        percent = round(processed / self._total * 100) if self._total else 100
        percent = max(self._last, min(100, percent))
        self._last = percent
        self._job.update_progress(percent)
        return percent


class EmbeddingPipeline:
    """
    Chunk -> embed -> store, for one document job at a time.

    Usage:
        pipeline = EmbeddingPipeline(embeddings, store, analysis_queue=queue, feature_flags=flags)
        result = pipeline.process(job)
    """

    def __init__(
        self,
        embedding_service: EmbeddingService,
        vector_store: BaseVectorStore,
        chunker: Optional[ParentChildChunker] = None,
        analysis_queue: Optional[AnalysisQueue] = None,
        feature_flags: Optional[FeatureFlags] = None,
        config: Optional[PipelineConfig] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.embeddings = embedding_service
        self.store = vector_store
        self.chunker = chunker or ParentChildChunker()
        self.analysis_queue = analysis_queue
        self.flags = feature_flags
        self.config = config or PipelineConfig()
        self.metrics = metrics

    def process(self, job: PipelineJob) -> PipelineResult:
        """
        Process one document job.

        Raises:
            EmbeddingError: If the embedding server fails mid-document
            psycopg2.Error: If the reindex transaction fails
        """
        document_id = job.document_id
        result = PipelineResult(document_id=document_id)
        start_time = time.time()

        if not self.embeddings.is_available():
            logger.warning(f"Embedding service unavailable, skipping document {document_id}")
            return self._skip(result, SKIP_UNAVAILABLE)

        groups = self.chunker.chunk(job.text, document_id=document_id)
        children = list(iter_children(groups))
        if not children:
            logger.info(f"No chunks produced for document {document_id} (empty text), skipping")
            return self._skip(result, SKIP_EMPTY)

        result.stage = CHUNKED
        result.parent_count = len(groups)
        result.child_count = len(children)
        logger.info(
            f"Chunked document {document_id}: {len(groups)} parents, "
            f"{len(children)} children, generating embeddings..."
        )

        result.stage = EMBEDDING
        try:
            self._embed_children(job, groups, len(children))
            model_version = self.embeddings.model_version
            self.store.reindex(document_id, groups, model_version)
        except Exception:
            logger.error(f"Embedding pipeline failed for document {document_id} at stage {result.stage}")
            if self.metrics is not None:
                self.metrics.record_failed()
            raise

        result.stage = STORED
        result.model_version = model_version
        if self.metrics is not None:
            self.metrics.record_embedded(
                document_id, len(children), (time.time() - start_time) * 1000
            )
        logger.info(
            f"Embedded and stored {len(children)} chunks for document {document_id} ({model_version})"
        )

        if self._downstream_enabled():
            content = "\n\n".join(child.content for child in children)
            triggered = best_effort(
                f"Downstream trigger for document {document_id}",
                self.analysis_queue.enqueue,
                self.config.downstream_job_type,
                document_id,
                job.case_id,
                content,
                {"document_id": document_id, "model_version": model_version},
            )
            if self.metrics is not None:
                self.metrics.record_downstream(triggered)
            if triggered:
                result.stage = DOWNSTREAM_TRIGGERED
                result.downstream_triggered = True

        return result

    def _embed_children(self, job: PipelineJob, groups, total: int) -> None:
        """Embed children per parent group, reporting progress after every batch."""
        progress = ProgressReporter(job, total)
        processed = 0
        for group in groups:
            texts = [child.content for child in group.children]
            done_before = processed

            def on_batch(completed, _group_total, offset=done_before):
                progress.report(offset + completed)

            embeddings = self.embeddings.embed_batch(
                texts, batch_size=self.config.batch_size, on_batch=on_batch
            )
            for child, embedding in zip(group.children, embeddings):
                child.embedding = embedding
                child.model_version = self.embeddings.model_version
            processed += len(texts)

    def _downstream_enabled(self) -> bool:
        if self.analysis_queue is None or self.flags is None:
            return False
        enabled = best_effort_flag(self.flags, self.config.downstream_flag)
        if not enabled:
            logger.debug(f"Downstream flag {self.config.downstream_flag} disabled")
        return enabled

    def _skip(self, result: PipelineResult, reason: str) -> PipelineResult:
        result.skipped_reason = reason
        if self.metrics is not None:
            self.metrics.record_skipped(reason)
        return result


def best_effort_flag(flags: FeatureFlags, name: str) -> bool:
    """Read a flag, treating a failing flag store as disabled."""
    try:
        return flags.is_enabled(name, default=False)
    except Exception as e:
        logger.warning(f"Feature flag lookup for {name} failed, treating as disabled: {e}")
        return False
