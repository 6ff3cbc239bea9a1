"""
Celery worker for the embedding pipeline.

Task: embed_document(document_id, case_id, text)
Flow: probe embedder -> chunk -> embed (progress) -> reindex -> downstream trigger

Each worker process owns one ServiceContainer, opened on process init and
closed on shutdown.

Run with: celery -A execution.document_intel.worker worker --loglevel=info
"""

import os
import logging
from typing import Optional

import psycopg2
from celery import Celery
from celery.signals import worker_process_init, worker_process_shutdown
from dotenv import load_dotenv

from .collaborators import AnalysisQueue, PipelineJob
from .container import ContainerConfig, ServiceContainer
from .embeddings import EmbeddingError

load_dotenv()
logger = logging.getLogger(__name__)

celery_app = Celery(
    "document_intel",
    broker=os.getenv("CELERY_BROKER_URL", "redis://localhost:6379/0"),
    backend=os.getenv("CELERY_RESULT_BACKEND", "redis://localhost:6379/1"),
)

celery_app.conf.update(
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    timezone="Europe/Berlin",
    task_acks_late=True,
    worker_prefetch_multiplier=1,
)

_container: Optional[ServiceContainer] = None


def get_container() -> ServiceContainer:
    """Return this process's container, opening it on first use."""
    global _container
    if _container is None:
        _container = ServiceContainer(ContainerConfig.from_env()).open()
    return _container


@worker_process_init.connect
def _open_container(**kwargs):
    logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO"))
    get_container()


@worker_process_shutdown.connect
def _close_container(**kwargs):
    global _container
    if _container is not None:
        _container.close()
        _container = None


class CeleryPipelineJob(PipelineJob):
    """Adapts a bound Celery task to the pipeline's job interface."""

    def __init__(self, task, document_id: str, case_id: str, text: str):
        self.task = task
        self.document_id = document_id
        self.case_id = case_id
        self.text = text

    def update_progress(self, percent: int) -> None:
        self.task.update_state(
            state="PROGRESS",
            meta={"document_id": self.document_id, "progress": percent},
        )


class CeleryAnalysisQueue(AnalysisQueue):
    """Sends downstream analysis jobs to another Celery queue by task name."""

    def __init__(self, app: Celery, task_name: str, queue: Optional[str] = None):
        self.app = app
        self.task_name = task_name
        self.queue = queue

    def enqueue(
        self,
        job_type: str,
        job_id: str,
        case_id: str,
        content: str,
        metadata: Optional[dict] = None,
    ) -> None:
        self.app.send_task(
            self.task_name,
            kwargs={
                "type": job_type,
                "id": job_id,
                "case_id": case_id,
                "content": content,
                "metadata": metadata or {},
            },
            queue=self.queue,
        )
        logger.info(f"Enqueued {job_type} job for {job_id} on {self.task_name}")


def get_analysis_queue() -> CeleryAnalysisQueue:
    return CeleryAnalysisQueue(
        celery_app,
        os.getenv("DOWNSTREAM_TASK_NAME", "analysis.scan_document"),
        queue=os.getenv("DOWNSTREAM_QUEUE") or None,
    )


@celery_app.task(
    bind=True,
    name="document_intel.embed_document",
    max_retries=3,
    autoretry_for=(EmbeddingError, psycopg2.OperationalError, psycopg2.InterfaceError),
    retry_backoff=60,
    retry_backoff_max=600,
)
def embed_document(self, document_id: str, case_id: str, text: str):
    """
    Chunk, embed and store one document.

    Args:
        document_id: Document id in the record store
        case_id: Owning case
        text: Extracted (OCR) text

    Returns:
        dict: PipelineResult as a dictionary
    """
    pipeline = get_container().get_pipeline(analysis_queue=get_analysis_queue())
    job = CeleryPipelineJob(self, document_id, case_id, text)
    return pipeline.process(job).to_dict()
