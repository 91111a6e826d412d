"""Vector index management using USearch HNSW, with versioned snapshots."""

import logging
import math
import threading
from collections import Counter
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

import numpy as np
from usearch.index import Index as USearchIndex

from .errors import ConfigError, IndexConsistencyError, ValidationError
from .lexical import LexicalIndex
from .models import Chunk, Document, IndexEntry
from .text import tokenize

logger = logging.getLogger(__name__)


def make_entry(chunk: Chunk, vector: Sequence[float]) -> IndexEntry:
    """Bind a chunk to its vector and term frequencies."""
    return IndexEntry(
        chunk=chunk,
        vector=np.asarray(vector, dtype=np.float32),
        terms=dict(Counter(tokenize(chunk.text))),
    )


def validate_k(k, max_k: int) -> int:
    if isinstance(k, bool) or not isinstance(k, int):
        raise ValidationError(f"k must be an integer, got {k!r}")
    if k <= 0:
        raise ValidationError(f"k must be positive, got {k}")
    if k > max_k:
        raise ValidationError(f"k must be at most {max_k}, got {k}")
    return k


class VectorIndex:
    """Immutable HNSW index over one snapshot's vectors.

    USearch keys are positions in the snapshot; ``search`` maps them back
    to chunk ids and breaks score ties by chunk ordinal.
    """

    def __init__(
        self,
        entries: Sequence[IndexEntry],
        *,
        metric: str = "cos",
        dtype: str = "f32",
        connectivity: int = 16,
        expansion_add: int = 128,
        expansion_search: int = 64,
        exact_search_threshold: int = 2048,
    ):
        self.metric = metric
        self.exact_search_threshold = exact_search_threshold
        self._chunks: List[Chunk] = [e.chunk for e in entries]
        self.dimension: Optional[int] = None
        self.index: Optional[USearchIndex] = None

        if not entries:
            return

        vectors = np.vstack([e.vector for e in entries]).astype(np.float32)
        self.dimension = int(vectors.shape[1])
        self.index = USearchIndex(
            ndim=self.dimension,
            metric=metric,
            dtype=dtype,
            connectivity=connectivity,
            expansion_add=expansion_add,
            expansion_search=expansion_search,
        )
        self.index.add(np.arange(len(entries), dtype=np.uint64), vectors)

    def __len__(self) -> int:
        return len(self._chunks)

    def search(self, query_vector: Sequence[float], k: int) -> List[Tuple[str, float]]:
        """
        Nearest chunks by similarity.

        Args:
            query_vector: Query embedding, same dimension as the index
            k: Maximum number of results

        Returns:
            (chunk_id, similarity) pairs, similarity non-increasing
        """
        if self.index is None or k <= 0:
            return []
        query = np.asarray(query_vector, dtype=np.float32)
        if query.shape != (self.dimension,):
            raise ConfigError(
                f"Query vector has shape {query.shape}, index expects ({self.dimension},)"
            )
        if not np.any(query):
            return []

        # Fetch a little extra so ties at the cut-off are resolved by ordinal
        count = min(len(self._chunks), k + 8)
        exact = len(self._chunks) <= self.exact_search_threshold
        matches = self.index.search(query, count, exact=exact)

        hits: List[Tuple[Chunk, float]] = []
        for key, distance in zip(matches.keys.tolist(), matches.distances.tolist()):
            if key < 0 or key >= len(self._chunks):
                continue
            similarity = 1.0 - float(distance)
            if not math.isfinite(similarity):
                continue
            hits.append((self._chunks[key], similarity))

        hits.sort(key=lambda h: (-round(h[1], 6), h[0].ordinal, h[0].chunk_id))
        return [(chunk.chunk_id, score) for chunk, score in hits[:k]]


class IndexSnapshot:
    """One complete, immutable index build.

    Readers hold a reference to a snapshot for the duration of a query, so
    they never observe a half-applied write.
    """

    def __init__(
        self,
        version: int,
        entries: Mapping[str, IndexEntry],
        documents: Mapping[str, Document],
        *,
        model_id: Optional[str] = None,
        metric: str = "cos",
        dtype: str = "f32",
        connectivity: int = 16,
        expansion_add: int = 128,
        expansion_search: int = 64,
        exact_search_threshold: int = 2048,
    ):
        self.version = version
        self.model_id = model_id
        self.metric = metric
        self._entries: Dict[str, IndexEntry] = dict(entries)
        self._documents: Dict[str, Document] = dict(documents)

        dims = {int(e.vector.shape[0]) for e in self._entries.values()}
        if len(dims) > 1:
            raise ConfigError(f"Mixed embedding dimensions in one index: {sorted(dims)}")

        ordered = sorted(
            self._entries.values(), key=lambda e: (e.chunk.doc_id, e.chunk.ordinal)
        )
        self.vector_index = VectorIndex(
            ordered,
            metric=metric,
            dtype=dtype,
            connectivity=connectivity,
            expansion_add=expansion_add,
            expansion_search=expansion_search,
            exact_search_threshold=exact_search_threshold,
        )
        self.lexical_index = LexicalIndex({e.chunk_id: e.terms for e in ordered})
        self.check_consistency()

    @classmethod
    def empty(cls, **kwargs) -> "IndexSnapshot":
        return cls(0, {}, {}, **kwargs)

    def check_consistency(self) -> None:
        """Raise IndexConsistencyError if the two indexes or the documents disagree."""
        vector_ids = {chunk.chunk_id for chunk in self.vector_index._chunks}
        lexical_ids = set(self.lexical_index.chunk_ids)
        if vector_ids != lexical_ids:
            missing = sorted(vector_ids ^ lexical_ids)[:5]
            raise IndexConsistencyError(
                f"Index version {self.version}: chunks present in only one index: {missing}",
                stage="index",
            )
        orphans = [
            e.chunk_id for e in self._entries.values() if e.chunk.doc_id not in self._documents
        ]
        if orphans:
            raise IndexConsistencyError(
                f"Index version {self.version}: chunks without a document: {orphans[:5]}",
                stage="index",
            )

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, chunk_id: str) -> bool:
        return chunk_id in self._entries

    @property
    def dimension(self) -> Optional[int]:
        return self.vector_index.dimension

    @property
    def entries(self) -> Dict[str, IndexEntry]:
        return dict(self._entries)

    @property
    def documents(self) -> Dict[str, Document]:
        return dict(self._documents)

    def entry(self, chunk_id: str) -> IndexEntry:
        return self._entries[chunk_id]

    def chunk(self, chunk_id: str) -> Chunk:
        return self._entries[chunk_id].chunk

    def document(self, doc_id: str) -> Document:
        return self._documents[doc_id]

    def document_by_source(self, source: str) -> Optional[Document]:
        if not source:
            return None
        for doc in self._documents.values():
            if doc.source == source:
                return doc
        return None

    def chunks_for(self, doc_id: str) -> List[Chunk]:
        chunks = [e.chunk for e in self._entries.values() if e.chunk.doc_id == doc_id]
        return sorted(chunks, key=lambda c: c.ordinal)

    def search(self, query_vector: Sequence[float], k: int) -> List[Tuple[str, float]]:
        return self.vector_index.search(query_vector, k)


class IndexStore:
    """Holds the current snapshot and swaps it atomically on every write.

    Writers are serialized and build a complete new snapshot before the
    swap; readers take ``store.current`` once and keep using it.
    """

    def __init__(
        self,
        *,
        model_id: Optional[str] = None,
        max_k: int = 100,
        metric: str = "cos",
        dtype: str = "f32",
        connectivity: int = 16,
        expansion_add: int = 128,
        expansion_search: int = 64,
        exact_search_threshold: int = 2048,
    ):
        self.model_id = model_id
        self.max_k = max_k
        self._snapshot_kwargs = dict(
            model_id=model_id,
            metric=metric,
            dtype=dtype,
            connectivity=connectivity,
            expansion_add=expansion_add,
            expansion_search=expansion_search,
            exact_search_threshold=exact_search_threshold,
        )
        self._write_lock = threading.Lock()
        self._current = IndexSnapshot.empty(**self._snapshot_kwargs)

    @property
    def current(self) -> IndexSnapshot:
        return self._current

    @property
    def version(self) -> int:
        return self._current.version

    def _swap(
        self,
        entries: Mapping[str, IndexEntry],
        documents: Mapping[str, Document],
        version: Optional[int] = None,
    ) -> IndexSnapshot:
        new_version = self._current.version + 1 if version is None else version
        snapshot = IndexSnapshot(new_version, entries, documents, **self._snapshot_kwargs)
        self._current = snapshot
        logger.info(
            "Index swapped to version %d (%d chunks, %d documents)",
            snapshot.version,
            len(snapshot),
            len(documents),
        )
        return snapshot

    def apply(
        self,
        upserts: Iterable[IndexEntry] = (),
        documents: Iterable[Document] = (),
        delete_documents: Iterable[str] = (),
    ) -> IndexSnapshot:
        """
        Apply document removals and entry upserts as one new version.

        Args:
            upserts: Entries to add or replace (by chunk id)
            documents: Documents the upserted entries belong to
            delete_documents: Document ids whose chunks are removed first

        Returns:
            The new current snapshot
        """
        with self._write_lock:
            base = self._current
            entries = base.entries
            docs = base.documents
            for doc_id in delete_documents:
                docs.pop(doc_id, None)
                for chunk_id in [cid for cid, e in entries.items() if e.chunk.doc_id == doc_id]:
                    del entries[chunk_id]
            for doc in documents:
                docs[doc.doc_id] = doc
            for entry in upserts:
                entries[entry.chunk_id] = entry
            return self._swap(entries, docs)

    def upsert(self, entries: Iterable[IndexEntry], documents: Iterable[Document] = ()) -> IndexSnapshot:
        return self.apply(upserts=entries, documents=documents)

    def delete(self, chunk_ids: Iterable[str]) -> IndexSnapshot:
        """Remove chunks by id; documents left without chunks are dropped too."""
        with self._write_lock:
            entries = self._current.entries
            for chunk_id in chunk_ids:
                entries.pop(chunk_id, None)
            remaining_docs = {e.chunk.doc_id for e in entries.values()}
            docs = {
                doc_id: doc
                for doc_id, doc in self._current.documents.items()
                if doc_id in remaining_docs
            }
            return self._swap(entries, docs)

    def replace(
        self,
        entries: Iterable[IndexEntry],
        documents: Iterable[Document],
        version: Optional[int] = None,
    ) -> IndexSnapshot:
        """Swap in a wholesale rebuild."""
        with self._write_lock:
            return self._swap(
                {e.chunk_id: e for e in entries},
                {d.doc_id: d for d in documents},
                version=version,
            )

    def search(self, query_vector: Sequence[float], k: int) -> List[Tuple[str, float]]:
        validate_k(k, self.max_k)
        return self._current.search(query_vector, k)
