"""Retrieval over an index snapshot (semantic, lexical, hybrid) with optional reranking."""

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Dict, List, Optional, Tuple

import numpy as np

from .config import SEARCH_MODES
from .embeddings import BaseEmbeddingProvider
from .errors import ConfigError, QueryCancelled, ValidationError
from .index import IndexSnapshot, IndexStore, validate_k
from .models import RetrievalResult, ScoredChunk
from .reranker import BaseReranker, NoOpReranker
from .retry import CancellationToken
from .text import tokenize

logger = logging.getLogger(__name__)


def min_max_normalize(scores: Dict[str, float]) -> Dict[str, float]:
    """Scale scores to [0, 1] within the set; a flat positive set maps to 1.0."""
    if not scores:
        return {}
    lo = min(scores.values())
    hi = max(scores.values())
    if hi == lo:
        value = 1.0 if hi > 0 else 0.0
        return {cid: value for cid in scores}
    return {cid: (s - lo) / (hi - lo) for cid, s in scores.items()}


def _rank_key(item: ScoredChunk) -> Tuple[float, int, str]:
    return (-round(item.score, 9), item.chunk.ordinal, item.chunk_id)


class Retriever:
    """Handles semantic, lexical and hybrid retrieval against the current index."""

    def __init__(
        self,
        embedder: BaseEmbeddingProvider,
        store: IndexStore,
        *,
        reranker: Optional[BaseReranker] = None,
        default_k: int = 5,
        default_mode: str = "hybrid",
        semantic_weight: float = 0.5,
        lexical_weight: float = 0.5,
        min_score: float = 0.2,
        lexical_saturation: float = 1.0,
        rerank_depth: int = 20,
    ):
        self.embedder = embedder
        self.store = store
        self.reranker = reranker or NoOpReranker()
        self.default_k = default_k
        self.default_mode = default_mode
        self.semantic_weight = semantic_weight
        self.lexical_weight = lexical_weight
        self.min_score = min_score
        self.lexical_saturation = lexical_saturation
        self.rerank_depth = rerank_depth

    def _check_model(self, snapshot: IndexSnapshot) -> None:
        if snapshot.model_id is not None and snapshot.model_id != self.embedder.model_id:
            raise ConfigError(
                f"Index version {snapshot.version} holds {snapshot.model_id} vectors, "
                f"but queries are embedded with {self.embedder.model_id}",
                stage="retrieve",
            )

    def _saturate(self, bm25: float) -> float:
        return bm25 / (bm25 + self.lexical_saturation) if bm25 > 0 else 0.0

    def _semantic(
        self,
        snapshot: IndexSnapshot,
        query: str,
        depth: int,
        cancel_token: Optional[CancellationToken],
    ) -> Tuple[Dict[str, float], Optional[np.ndarray]]:
        query_vector = np.asarray(
            self.embedder.embed_query(query, cancel_token=cancel_token), dtype=np.float32
        )
        hits = snapshot.search(query_vector, depth)
        return {cid: score for cid, score in hits}, query_vector

    def _lexical(self, snapshot: IndexSnapshot, query: str, depth: int) -> Dict[str, float]:
        scores = snapshot.lexical_index.score(tokenize(query))
        top = sorted(scores.items(), key=lambda kv: (-kv[1], kv[0]))[:depth]
        return dict(top)

    def _similarity(self, snapshot: IndexSnapshot, query_vector: np.ndarray, chunk_id: str) -> float:
        vector = snapshot.entry(chunk_id).vector
        dot = float(np.dot(query_vector, vector))
        if snapshot.metric == "ip":
            return dot
        norms = float(np.linalg.norm(query_vector) * np.linalg.norm(vector))
        return dot / norms if norms > 0 else 0.0

    def _candidates(
        self,
        snapshot: IndexSnapshot,
        query: str,
        mode: str,
        depth: int,
        cancel_token: Optional[CancellationToken],
    ) -> List[ScoredChunk]:
        if mode == "semantic":
            semantic, _ = self._semantic(snapshot, query, depth, cancel_token)
            return [
                self._scored(snapshot, cid, score, max(0.0, min(1.0, score)), semantic=score)
                for cid, score in semantic.items()
            ]

        if mode == "lexical":
            lexical = self._lexical(snapshot, query, depth)
            out = []
            for cid, bm25 in lexical.items():
                saturated = self._saturate(bm25)
                out.append(self._scored(snapshot, cid, saturated, saturated, lexical=bm25))
            return out

        # Hybrid: both sub-searches are independent, run them side by side
        with ThreadPoolExecutor(max_workers=2) as pool:
            semantic_future = pool.submit(self._semantic, snapshot, query, depth, cancel_token)
            lexical_future = pool.submit(self._lexical, snapshot, query, depth)
            semantic, query_vector = semantic_future.result()
            lexical = lexical_future.result()

        candidate_ids = list(dict.fromkeys([*semantic, *lexical]))
        if not candidate_ids:
            return []

        semantic_raw = {
            cid: semantic[cid] if cid in semantic else self._similarity(snapshot, query_vector, cid)
            for cid in candidate_ids
        }
        all_lexical = snapshot.lexical_index.score(tokenize(query)) if lexical else {}
        lexical_raw = {cid: all_lexical.get(cid, 0.0) for cid in candidate_ids}

        semantic_norm = min_max_normalize(semantic_raw)
        lexical_norm = min_max_normalize(lexical_raw)
        total = self.semantic_weight + self.lexical_weight
        ws, wl = self.semantic_weight / total, self.lexical_weight / total

        out = []
        for cid in candidate_ids:
            score = ws * semantic_norm[cid] + wl * lexical_norm[cid]
            relevance = ws * max(0.0, min(1.0, semantic_raw[cid])) + wl * self._saturate(lexical_raw[cid])
            out.append(
                self._scored(
                    snapshot,
                    cid,
                    score,
                    relevance,
                    semantic=semantic_raw[cid],
                    lexical=lexical_raw[cid],
                )
            )
        return out

    @staticmethod
    def _scored(
        snapshot: IndexSnapshot,
        chunk_id: str,
        score: float,
        relevance: float,
        *,
        semantic: Optional[float] = None,
        lexical: Optional[float] = None,
    ) -> ScoredChunk:
        chunk = snapshot.chunk(chunk_id)
        return ScoredChunk(
            chunk=chunk,
            document=snapshot.document(chunk.doc_id),
            score=score,
            relevance=relevance,
            semantic_score=semantic,
            lexical_score=lexical,
        )

    def _rerank(
        self,
        query: str,
        items: List[ScoredChunk],
        k: int,
        cancel_token: Optional[CancellationToken],
    ) -> List[ScoredChunk]:
        if isinstance(self.reranker, NoOpReranker) or not items:
            return items
        depth = max(self.rerank_depth, k)
        head = items[:depth]
        tail = items[depth:]
        # Keep first-stage scores so a failed rerank can restore them
        originals = {item.chunk_id: item.score for item in head}
        try:
            reranked = self.reranker.rerank(query, list(head), cancel_token=cancel_token)
            if sorted(s.chunk_id for s in reranked) != sorted(originals):
                raise ValueError("reranker changed the candidate set")
        except QueryCancelled:
            raise
        except Exception as exc:
            logger.warning(
                "Reranker %s failed, keeping first-stage order: %s", self.reranker.name, exc
            )
            for item in head:
                item.score = originals[item.chunk_id]
                item.rerank_score = None
            return items
        return reranked + tail

    def retrieve(
        self,
        query: str,
        k: Optional[int] = None,
        mode: Optional[str] = None,
        *,
        snapshot: Optional[IndexSnapshot] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> RetrievalResult:
        """
        Retrieve the top-k chunks for a query.

        Args:
            query: Natural-language query
            k: Number of results (default from config)
            mode: 'semantic', 'lexical' or 'hybrid' (default from config)
            snapshot: Index snapshot to read; the current one when omitted
            cancel_token: Checked before the query embedding call

        Returns:
            RetrievalResult, empty when nothing clears the minimum score

        Raises:
            ValidationError: Empty query, bad k or unknown mode
            ConfigError: Query embedder differs from the index's model
        """
        if not isinstance(query, str) or not query.strip():
            raise ValidationError("query must be a non-empty string", stage="retrieve")
        k = self.default_k if k is None else k
        validate_k(k, self.store.max_k)
        mode = mode or self.default_mode
        if mode not in SEARCH_MODES:
            raise ValidationError(
                f"Unknown mode {mode!r}. Supported: {', '.join(SEARCH_MODES)}",
                stage="retrieve",
                query=query,
            )

        snapshot = snapshot if snapshot is not None else self.store.current
        result = RetrievalResult(query=query, mode=mode, index_version=snapshot.version)
        if len(snapshot) == 0:
            return result
        self._check_model(snapshot)

        depth = min(max(k, self.rerank_depth), len(snapshot))
        candidates = self._candidates(snapshot, query, mode, depth, cancel_token)

        kept = [c for c in candidates if c.relevance >= self.min_score]
        if len(kept) < len(candidates):
            logger.debug(
                "Dropped %d of %d candidates below min_score %.2f",
                len(candidates) - len(kept),
                len(candidates),
                self.min_score,
            )
        kept.sort(key=_rank_key)
        kept = self._rerank(query, kept, k, cancel_token)

        result.items = kept[:k]
        for rank, item in enumerate(result.items, start=1):
            item.rank = rank
        return result
