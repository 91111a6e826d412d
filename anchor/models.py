"""Data models for the Anchor engine."""

import hashlib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Optional, Tuple

import numpy as np

UNSUPPORTED_ANSWER = "I don't know — couldn't find supporting documents."


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Document:
    """Immutable source record."""
    text: str
    title: str = ""
    source: str = ""
    doc_id: Optional[str] = None
    ingested_at: datetime = field(default_factory=_utcnow, compare=False)
    metadata: Dict[str, Any] = field(default_factory=dict, compare=False, hash=False)

    def __post_init__(self):
        if self.doc_id is None:
            # Stable doc_id from content hash
            object.__setattr__(
                self, "doc_id", hashlib.sha256(self.text.encode()).hexdigest()[:16]
            )
        if not self.title:
            object.__setattr__(self, "title", self.source or self.doc_id)


@dataclass(frozen=True)
class Chunk:
    """A segment of one document's boilerplate-stripped text.

    ``start``/``end`` are character offsets into that stripped text
    (inclusive start, exclusive end) and ``text`` is the exact slice.
    """
    chunk_id: str
    doc_id: str
    text: str
    start: int
    end: int
    ordinal: int

    @staticmethod
    def make_id(doc_id: str, start: int, end: int, text: str) -> str:
        payload = f"{doc_id}:{start}:{end}:{text}"
        return hashlib.sha256(payload.encode()).hexdigest()[:20]


@dataclass(frozen=True, eq=False)
class IndexEntry:
    """Unit stored by the vector and lexical indexes."""
    chunk: Chunk
    vector: np.ndarray
    terms: Dict[str, int]

    @property
    def chunk_id(self) -> str:
        return self.chunk.chunk_id


@dataclass
class ScoredChunk:
    """A retrieved chunk with its scores.

    ``score`` orders the result list; ``relevance`` is an absolute [0, 1]
    strength used for the minimum-score floor and confidence.
    """
    chunk: Chunk
    document: Document
    score: float
    relevance: float
    rank: int = 0
    semantic_score: Optional[float] = None
    lexical_score: Optional[float] = None
    rerank_score: Optional[float] = None

    @property
    def chunk_id(self) -> str:
        return self.chunk.chunk_id


@dataclass
class RetrievalResult:
    """Ranked chunks for one query. Transient, never persisted."""
    query: str
    mode: str
    index_version: int
    items: List[ScoredChunk] = field(default_factory=list)

    def __iter__(self) -> Iterator[ScoredChunk]:
        return iter(self.items)

    def __len__(self) -> int:
        return len(self.items)

    @property
    def is_empty(self) -> bool:
        return not self.items

    @property
    def chunk_ids(self) -> List[str]:
        return [item.chunk_id for item in self.items]

    @property
    def top_relevance(self) -> float:
        return max((item.relevance for item in self.items), default=0.0)

    def get(self, chunk_id: str) -> Optional[ScoredChunk]:
        for item in self.items:
            if item.chunk_id == chunk_id:
                return item
        return None


@dataclass(frozen=True)
class Citation:
    chunk_id: str
    doc_id: str
    title: str
    source: str
    offset: int
    ordinal: int
    score: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "title": self.title,
            "source": self.source,
            "score": self.score,
            "offset": self.offset,
            "chunk_ordinal": self.ordinal,
        }


@dataclass(frozen=True)
class AnswerRecord:
    """The externally visible unit of work."""
    query: str
    answer: str
    citations: Tuple[Citation, ...]
    prompt: str
    confidence: float
    supported: bool
    index_version: int
    faithfulness: float = 1.0
    timestamp: datetime = field(default_factory=_utcnow)

    @property
    def is_unsupported(self) -> bool:
        return self.answer == UNSUPPORTED_ANSWER

    def to_response(self) -> Dict[str, Any]:
        return {
            "answer": self.answer,
            "sources": [c.to_dict() for c in self.citations],
            "prompt": self.prompt,
            "confidence": self.confidence,
        }


@dataclass
class IngestionReport:
    accepted: List[str] = field(default_factory=list)
    rejected: List[Tuple[str, str]] = field(default_factory=list)
    index_version: int = 0
    chunks: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "accepted": list(self.accepted),
            "rejected": [{"document": d, "reason": r} for d, r in self.rejected],
            "index_version": self.index_version,
            "chunks": self.chunks,
        }
