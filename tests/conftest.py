"""
Shared fixtures and test utilities for the document intelligence tests.

Provides mock services, sample data, and reusable fixtures so that all tests
can run without an Ollama server, a database, a broker or network access.
"""

import sys
import hashlib
from pathlib import Path

import pytest
from dotenv import load_dotenv

# ---------------------------------------------------------------------------
# Path setup - ensure the execution package is importable
# ---------------------------------------------------------------------------
PROJECT_ROOT = Path(__file__).resolve().parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

load_dotenv(PROJECT_ROOT / ".env")

TEST_DIMENSIONS = 8

# ---------------------------------------------------------------------------
# Sample German judgment text
# ---------------------------------------------------------------------------
SAMPLE_JUDGMENT = """Amtsgericht Köln
Urteil vom 12. März 2024, Az. 210 C 45/23

Tenor
1. Der Beklagte wird verurteilt, an den Kläger 2.450,00 EUR nebst Zinsen zu zahlen.
2. Die Kosten des Rechtsstreits trägt der Beklagte.

Tatbestand
Die Parteien streiten über die Rückzahlung einer Mietkaution. Der Kläger war Mieter
einer Wohnung des Beklagten in Köln. Das Mietverhältnis endete am 31. Mai 2023.
Der Beklagte verweigert die Rückzahlung unter Hinweis auf angebliche Schäden.

Entscheidungsgründe
Die Klage ist zulässig und begründet. Dem Kläger steht ein Anspruch auf Rückzahlung
der Kaution aus § 551 BGB in Verbindung mit der Sicherungsabrede zu.

§ 551 BGB regelt die Begrenzung und Anlage von Mietsicherheiten. Die Abrechnungsfrist
war im Zeitpunkt der Klageerhebung abgelaufen.

Rechtsmittelbelehrung
Gegen dieses Urteil ist die Berufung zulässig.
"""


def long_section(header: str, length: int, word: str = "Satz") -> str:
    """Build a header plus sentences until the body reaches length characters."""
    sentences = []
    size = 0
    i = 0
    while size < length:
        sentence = f"{word} Nummer {i} dieses Abschnitts enthält juristischen Text."
        sentences.append(sentence)
        size += len(sentence) + 1
        i += 1
    return f"{header}\n" + " ".join(sentences)


# ---------------------------------------------------------------------------
# Mock embedding service
# ---------------------------------------------------------------------------

class MockEmbeddingService:
    """Deterministic mock embedding service -- never calls external APIs."""

    def __init__(self, dimensions=TEST_DIMENSIONS, available=True, model_version="mock-e5@1.0"):
        self._dimensions = dimensions
        self.available = available
        self.model_version = model_version
        self.batches = []
        self.queries = []
        self.fail_after_batches = None

    def is_available(self):
        return self.available

    def embed_passage(self, text):
        return self._deterministic_embedding(text)

    def embed_query(self, query):
        self.queries.append(query)
        return self._deterministic_embedding(query)

    def embed_batch(self, texts, batch_size=None, on_batch=None):
        from execution.document_intel.embeddings import EmbeddingError
        size = batch_size or 5
        embeddings = []
        for start in range(0, len(texts), size):
            if self.fail_after_batches is not None and len(self.batches) >= self.fail_after_batches:
                raise EmbeddingError("mock embedding failure")
            batch = texts[start:start + size]
            self.batches.append(batch)
            embeddings.extend(self._deterministic_embedding(t) for t in batch)
            if on_batch is not None:
                on_batch(len(embeddings), len(texts))
        return embeddings

    def _deterministic_embedding(self, text):
        h = hashlib.sha256(text.encode()).hexdigest()
        seed = int(h[:8], 16)
        return [((seed + i * 7919) % 1000) / 1000.0 + 0.001 for i in range(self._dimensions)]

    @property
    def dimensions(self):
        return self._dimensions


@pytest.fixture
def mock_embedding_service():
    return MockEmbeddingService()


# ---------------------------------------------------------------------------
# Record store and vector store fakes
# ---------------------------------------------------------------------------

@pytest.fixture
def document_directory():
    from execution.document_intel.collaborators import DocumentInfo, InMemoryDocumentDirectory
    return InMemoryDocumentDirectory([
        DocumentInfo("doc-1", "case-1", "Klageschrift.pdf", "210 C 45/23"),
        DocumentInfo("doc-2", "case-1", "Mietvertrag.pdf", "210 C 45/23"),
        DocumentInfo("doc-3", "case-1", "Urteil.pdf", "210 C 45/23"),
        DocumentInfo("doc-9", "case-2", "Fremde Akte.pdf", "7 O 12/24"),
    ])


@pytest.fixture
def memory_store(document_directory):
    from execution.document_intel.vector_store import InMemoryVectorStore
    return InMemoryVectorStore(document_directory, embedding_dimensions=TEST_DIMENSIONS)


def unit_vector(position: int, dimensions: int = TEST_DIMENSIONS) -> list[float]:
    vector = [0.0] * dimensions
    vector[position % dimensions] = 1.0
    return vector


def make_groups(document_id: str, parents: list[list[str]], vectors=None):
    """
    Build embedded chunk groups by hand.

    parents is a list of parents, each a list of child texts. vectors maps
    child text to its embedding; unmapped children get unit_vector(0).
    """
    import uuid
    from execution.document_intel.chunker import CHILD, PARENT, Chunk, ChunkGroup

    vectors = vectors or {}
    groups = []
    child_index = 0
    for parent_index, child_texts in enumerate(parents):
        parent = Chunk(
            chunk_id=str(uuid.uuid4()),
            document_id=document_id,
            kind=PARENT,
            index=parent_index,
            content=" ".join(child_texts),
        )
        children = []
        for text in child_texts:
            children.append(Chunk(
                chunk_id=str(uuid.uuid4()),
                document_id=document_id,
                kind=CHILD,
                index=child_index,
                content=text,
                parent_chunk_id=parent.chunk_id,
                embedding=vectors.get(text, unit_vector(0)),
            ))
            child_index += 1
        groups.append(ChunkGroup(parent=parent, children=children))
    return groups


def make_candidate(chunk_id: str, document_id: str = "doc-1", content: str = "", **kwargs):
    from execution.document_intel.vector_store import Candidate
    return Candidate(
        chunk_id=chunk_id,
        document_id=document_id,
        content=content or f"Inhalt {chunk_id}",
        **kwargs,
    )


# ---------------------------------------------------------------------------
# Job queue fakes
# ---------------------------------------------------------------------------

class FakeJob:
    """PipelineJob that records progress updates."""

    def __init__(self, document_id="doc-1", case_id="case-1", text=SAMPLE_JUDGMENT):
        self.document_id = document_id
        self.case_id = case_id
        self.text = text
        self.progress = []

    def update_progress(self, percent):
        self.progress.append(percent)


class RecordingQueue:
    """AnalysisQueue that records enqueued jobs, optionally failing."""

    def __init__(self, fail=False):
        self.jobs = []
        self.fail = fail

    def enqueue(self, job_type, job_id, case_id, content, metadata=None):
        if self.fail:
            raise ConnectionError("queue unreachable")
        self.jobs.append({
            "type": job_type,
            "id": job_id,
            "case_id": case_id,
            "content": content,
            "metadata": metadata,
        })


@pytest.fixture
def fake_job():
    return FakeJob()


@pytest.fixture
def recording_queue():
    return RecordingQueue()
