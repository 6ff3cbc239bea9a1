"""
Interfaces to systems outside the document pipeline.

The case/document record store, the lexical index, the feature flag store,
the job queue and the downstream analysis queue all live elsewhere. The
pipeline and retriever only depend on the small base classes below; concrete
adapters live in lexical_search.py, flags.py and worker.py.
"""

import logging
from dataclasses import dataclass
from typing import Optional

logger = logging.getLogger(__name__)


@dataclass
class DocumentInfo:
    """Display and scoping data for one document from the record store."""
    document_id: str
    case_id: str
    document_name: str = ""
    case_label: str = ""


class DocumentDirectory:
    """Resolves document ids to their case and display names."""

    def lookup(self, document_id: str) -> Optional[DocumentInfo]:
        raise NotImplementedError


class InMemoryDocumentDirectory(DocumentDirectory):
    """Dict-backed directory for development and tests."""

    def __init__(self, documents: Optional[list[DocumentInfo]] = None):
        self._documents = {d.document_id: d for d in documents or []}

    def add(self, info: DocumentInfo) -> None:
        self._documents[info.document_id] = info

    def lookup(self, document_id: str) -> Optional[DocumentInfo]:
        return self._documents.get(document_id)


class LexicalSearch:
    """Keyword search over whole documents within one case."""

    def search(self, query: str, case_id: str, limit: int = 50) -> list[str]:
        """Return document ids ranked best first."""
        raise NotImplementedError


class FeatureFlags:
    """Read-only access to the platform's feature flag store."""

    def is_enabled(self, name: str, default: bool = False) -> bool:
        raise NotImplementedError


class StaticFeatureFlags(FeatureFlags):
    """Fixed flag values, mostly for tests and local runs."""

    def __init__(self, flags: Optional[dict[str, bool]] = None):
        self._flags = dict(flags or {})

    def is_enabled(self, name: str, default: bool = False) -> bool:
        return self._flags.get(name, default)


class AnalysisQueue:
    """Queue feeding the downstream legal analysis stage."""

    def enqueue(
        self,
        job_type: str,
        job_id: str,
        case_id: str,
        content: str,
        metadata: Optional[dict] = None,
    ) -> None:
        raise NotImplementedError


class PipelineJob:
    """
    A document job pulled from the processing queue.

    Carries the document to process and a handle to report integer progress
    (0-100) back to the queue.
    """

    document_id: str
    case_id: str
    text: str

    def update_progress(self, percent: int) -> None:
        raise NotImplementedError
