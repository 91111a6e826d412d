"""Keyword scoring over chunk terms using BM25."""

import math
from typing import Dict, List, Mapping, Sequence

from rank_bm25 import BM25Okapi


class _BM25(BM25Okapi):
    """BM25Okapi with a non-negative idf.

    The stock Okapi idf goes negative for terms in more than half the corpus,
    which buries genuine matches in small collections.
    """

    def _calc_idf(self, nd):
        for word, freq in nd.items():
            self.idf[word] = math.log(1 + (self.corpus_size - freq + 0.5) / (freq + 0.5))
        self.average_idf = sum(self.idf.values()) / len(self.idf) if self.idf else 0.0


class LexicalIndex:
    """Immutable BM25 index over one snapshot's chunks.

    Built from per-chunk term frequencies; the chunk-id universe must match
    the vector index of the same snapshot.
    """

    def __init__(self, term_frequencies: Mapping[str, Mapping[str, int]], k1: float = 1.5, b: float = 0.75):
        self._chunk_ids: List[str] = list(term_frequencies)
        corpus = [_expand(term_frequencies[cid]) for cid in self._chunk_ids]
        # BM25Okapi divides by corpus size and average length
        if corpus and any(corpus):
            self._bm25 = _BM25(corpus, k1=k1, b=b)
        else:
            self._bm25 = None

    def __len__(self) -> int:
        return len(self._chunk_ids)

    @property
    def chunk_ids(self) -> List[str]:
        return list(self._chunk_ids)

    def score(self, query_tokens: Sequence[str]) -> Dict[str, float]:
        """Map chunk id to BM25 score; chunks with no positive score are omitted."""
        if self._bm25 is None or not query_tokens:
            return {}
        scores = self._bm25.get_scores(list(query_tokens))
        return {
            cid: float(score)
            for cid, score in zip(self._chunk_ids, scores)
            if score > 0
        }


def _expand(terms: Mapping[str, int]) -> List[str]:
    # BM25Okapi only needs term counts; order within a document is irrelevant
    return [term for term in sorted(terms) for _ in range(terms[term])]
