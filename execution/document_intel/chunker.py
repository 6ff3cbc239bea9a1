"""
Parent/Child Chunker for Legal Text

Splits extracted document text into a two-tier hierarchy:
- PARENT chunks (~8000 chars, 400 overlap): large context windows handed to
  the answering model.
- CHILD chunks (~2000 chars, 200 overlap): small retrieval units that get
  embedded and searched.

Splitting prefers the most meaningful boundary that fits: German judgment
section headers and statute markers first, then paragraphs, lines,
sentences, words and finally raw characters. Every chunk after the first
starts with the tail of its predecessor, so a passage cut at a boundary is
still whole in one of the two chunks.
"""

import re
import uuid
import logging
from dataclasses import dataclass, field
from typing import Optional

from langchain_text_splitters import RecursiveCharacterTextSplitter

logger = logging.getLogger(__name__)

PARENT = "PARENT"
CHILD = "CHILD"

SECTION_HEADERS = (
    "Tenor", "Tatbestand", "Entscheidungsgründe", "Gründe", "Leitsätze",
    "Leitsatz", "Sachverhalt", "Rechtsmittelbelehrung",
)
_HEADER_NAMES = "|".join(SECTION_HEADERS)

# Headers of German court decisions and statute paragraph markers, matched at
# line start. The newline is consumed as the split point.
SECTION_HEADER_SEPARATOR = (
    r"\n(?="
    r"(?:" + _HEADER_NAMES + r")[ \t]*:?[ \t]*\n"
    r"|§[ \t]*\d"
    r")"
)

# A piece holding nothing but a header line; it is attached to the piece
# that follows so the header stays with the section it introduces.
HEADER_ONLY = re.compile(
    r"(?:" + _HEADER_NAMES + r")[ \t]*:?"
    r"|§[ \t]*\d+[a-z]?(?:[ \t]+[A-Za-zÄÖÜäöü]+)?"
)

_WHITESPACE = re.compile(r"\s+")

DEFAULT_SEPARATORS = [
    SECTION_HEADER_SEPARATOR,
    r"\n\s*\n",        # paragraph break
    r"\n",             # line break
    r"(?<=[.!?;:])\s+",  # sentence boundary
    r"\s+",            # word boundary
    "",                # raw characters
]


@dataclass
class Chunk:
    """A parent or child chunk of one document."""
    chunk_id: str
    document_id: str
    kind: str  # PARENT or CHILD
    index: int
    content: str
    parent_chunk_id: Optional[str] = None
    embedding: Optional[list[float]] = None
    model_version: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "chunk_id": self.chunk_id,
            "document_id": self.document_id,
            "kind": self.kind,
            "index": self.index,
            "content": self.content,
            "parent_chunk_id": self.parent_chunk_id,
            "model_version": self.model_version,
            "has_embedding": self.embedding is not None,
        }


@dataclass
class ChunkGroup:
    """One parent chunk with its children, in document order."""
    parent: Chunk
    children: list[Chunk] = field(default_factory=list)


@dataclass
class ChunkConfig:
    """Configuration for parent/child chunk sizes (in characters)."""
    parent_chunk_size: int = 8000
    parent_chunk_overlap: int = 400
    child_chunk_size: int = 2000
    child_chunk_overlap: int = 200
    separators: list[str] = field(default_factory=lambda: list(DEFAULT_SEPARATORS))

    def __post_init__(self):
        for tier, size, overlap in (
            ("parent", self.parent_chunk_size, self.parent_chunk_overlap),
            ("child", self.child_chunk_size, self.child_chunk_overlap),
        ):
            if size <= 0:
                raise ValueError(f"{tier}_chunk_size must be positive, got {size}")
            if overlap < 0 or overlap >= size:
                raise ValueError(
                    f"{tier}_chunk_overlap must be in [0, {size}), got {overlap}"
                )
        if not self.separators:
            raise ValueError("At least one separator is required")


class ParentChildChunker:
    """
    Produces parent/child chunk groups from plain text.

    Pure and deterministic apart from the generated chunk ids; no I/O and
    no embedding happens here.

    The splitter only picks boundaries. Overlap is added afterwards by
    prefixing each piece with up to `overlap` characters of the text before
    it, cut at a word boundary. Pieces are split `overlap` characters short
    of the tier size so the prefixed chunk still fits.
    """

    def __init__(self, config: Optional[ChunkConfig] = None):
        self.config = config or ChunkConfig()
        self._parent_splitter = self._build_splitter(
            self.config.parent_chunk_size - self.config.parent_chunk_overlap
        )
        self._child_splitter = self._build_splitter(
            self.config.child_chunk_size - self.config.child_chunk_overlap
        )

    def _build_splitter(self, size: int) -> RecursiveCharacterTextSplitter:
        return RecursiveCharacterTextSplitter(
            separators=self.config.separators,
            chunk_size=size,
            chunk_overlap=0,
            length_function=len,
            is_separator_regex=True,
            keep_separator=True,
            add_start_index=True,
        )

    def _split(
        self,
        splitter: RecursiveCharacterTextSplitter,
        text: str,
        size: int,
        overlap: int,
    ) -> list[str]:
        spans = [
            (doc.metadata["start_index"], doc.metadata["start_index"] + len(doc.page_content))
            for doc in splitter.create_documents([text])
        ]
        spans = _attach_headers(text, spans)
        return [text[start:end] for start, end in _add_overlap(text, spans, size, overlap)]

    def chunk(self, text: str, document_id: str = "") -> list[ChunkGroup]:
        """
        Split text into parent groups, each holding its child chunks.

        Args:
            text: Extracted document text
            document_id: Owning document, copied onto every chunk

        Returns:
            List of ChunkGroup in document order. Empty or whitespace-only
            text yields an empty list.
        """
        text = (text or "").strip()
        if not text:
            return []

        cfg = self.config
        parent_texts = self._split(
            self._parent_splitter, text, cfg.parent_chunk_size, cfg.parent_chunk_overlap
        )

        groups = []
        child_index = 0
        for parent_index, parent_text in enumerate(parent_texts):
            parent = Chunk(
                chunk_id=str(uuid.uuid4()),
                document_id=document_id,
                kind=PARENT,
                index=parent_index,
                content=parent_text,
            )
            children = []
            child_texts = self._split(
                self._child_splitter, parent_text, cfg.child_chunk_size, cfg.child_chunk_overlap
            )
            for child_text in child_texts:
                children.append(Chunk(
                    chunk_id=str(uuid.uuid4()),
                    document_id=document_id,
                    kind=CHILD,
                    index=child_index,
                    content=child_text,
                    parent_chunk_id=parent.chunk_id,
                ))
                child_index += 1
            groups.append(ChunkGroup(parent=parent, children=children))

        logger.debug(
            f"Chunked document {document_id or '<unnamed>'}: "
            f"{len(groups)} parents, {child_index} children"
        )
        return groups


def _attach_headers(text: str, spans: list[tuple[int, int]]) -> list[tuple[int, int]]:
    """Fold header-only pieces into the next piece (the previous one at the end)."""
    attached = []
    pending = None
    for start, end in spans:
        if pending is not None:
            start, pending = pending[0], None
        if HEADER_ONLY.fullmatch(text[start:end].strip()):
            pending = (start, end)
            continue
        attached.append((start, end))
    if pending is not None:
        if attached:
            attached[-1] = (attached[-1][0], pending[1])
        else:
            attached.append(pending)
    return attached


def _add_overlap(
    text: str, spans: list[tuple[int, int]], size: int, overlap: int
) -> list[tuple[int, int]]:
    """Extend each span backwards by up to `overlap` characters, word-aligned."""
    if overlap <= 0:
        return spans
    extended = spans[:1]
    for (prev_start, _), (start, end) in zip(spans, spans[1:]):
        lead = max(start - overlap, end - size, prev_start + 1)
        if 0 < lead < start and not text[lead - 1].isspace():
            # Mid-word: skip to the next word.
            gap = _WHITESPACE.search(text, lead, start)
            lead = gap.end() if gap else start
        while lead < start and text[lead].isspace():
            lead += 1
        extended.append((min(lead, start), end))
    return extended


def chunk_parent_child(
    text: str,
    document_id: str = "",
    config: Optional[ChunkConfig] = None,
) -> list[ChunkGroup]:
    """Convenience wrapper around ParentChildChunker.chunk()."""
    return ParentChildChunker(config).chunk(text, document_id)


def iter_children(groups: list[ChunkGroup]):
    """Yield every child chunk across groups in index order."""
    for group in groups:
        yield from group.children
