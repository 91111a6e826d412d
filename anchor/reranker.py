"""Optional second-stage re-ranking of retrieved chunks."""

import logging
import os
import re
from abc import ABC, abstractmethod
from typing import List, Optional

from openai import OpenAI

from .embeddings import OPENAI_TRANSIENT_ERRORS
from .errors import ConfigError, RerankError
from .models import ScoredChunk
from .retry import BASE_TRANSIENT_ERRORS, CancellationToken, RetryPolicy, call_with_retry
from .text import content_terms

logger = logging.getLogger(__name__)

_SCORE_RE = re.compile(r"\d*\.?\d+")


class BaseReranker(ABC):
    """Reorders candidates; never adds or drops any."""

    name = "base"

    @abstractmethod
    def rerank(
        self,
        query: str,
        items: List[ScoredChunk],
        cancel_token: Optional[CancellationToken] = None,
    ) -> List[ScoredChunk]:
        pass


class NoOpReranker(BaseReranker):
    name = "none"

    def rerank(self, query, items, cancel_token=None):
        return list(items)


def _resort(items: List[ScoredChunk]) -> List[ScoredChunk]:
    return sorted(items, key=lambda s: (-s.score, s.chunk.ordinal, s.chunk_id))


class KeywordReranker(BaseReranker):
    """Local reranker blending first-stage score with term overlap.

    Score = 0.5 * first-stage score + 0.4 * Jaccard(query, chunk)
    + 0.1 when the whole query appears verbatim in the chunk.
    """

    name = "keyword"

    def __init__(self, score_weight: float = 0.5, overlap_weight: float = 0.4, phrase_boost: float = 0.1):
        self.score_weight = score_weight
        self.overlap_weight = overlap_weight
        self.phrase_boost = phrase_boost

    def _score_pair(self, query: str, item: ScoredChunk) -> float:
        query_terms = content_terms(query)
        doc_terms = content_terms(item.chunk.text)
        union = len(query_terms | doc_terms)
        jaccard = len(query_terms & doc_terms) / union if union else 0.0
        phrase = self.phrase_boost if query.strip().lower() in item.chunk.text.lower() else 0.0
        return self.score_weight * item.score + self.overlap_weight * jaccard + phrase

    def rerank(self, query, items, cancel_token=None):
        if cancel_token is not None:
            cancel_token.raise_if_cancelled("rerank")
        for item in items:
            item.rerank_score = self._score_pair(query, item)
            item.score = item.rerank_score
        return _resort(items)


class LLMReranker(BaseReranker):
    """Re-rank search results using an LLM for improved relevance."""

    name = "llm"
    DEFAULT_MODEL = "gpt-4o-mini"

    RERANK_PROMPT = """You are a relevance scoring assistant. Given a query and multiple document chunks, rate each chunk's relevance to answering the query.

Query: {query}

Documents:
{documents}

For each document, provide a relevance score from 0.0 to 1.0.
Respond with ONLY a comma-separated list of {count} decimal numbers, one for each document in order.
Example for 3 documents: 0.8, 0.3, 0.9"""

    def __init__(
        self,
        model: str = DEFAULT_MODEL,
        openai_api_key: Optional[str] = None,
        retry_policy: Optional[RetryPolicy] = None,
        original_weight: float = 0.3,
    ):
        self.model = model
        self.retry_policy = retry_policy or RetryPolicy()
        self.original_weight = original_weight
        api_key = openai_api_key or os.environ.get("OPENAI_API_KEY")
        if not api_key:
            raise ConfigError("OpenAI API key required for the LLM reranker.")
        self.client = OpenAI(api_key=api_key, timeout=self.retry_policy.timeout, max_retries=0)

    def _score_batch(self, query: str, items: List[ScoredChunk]) -> List[float]:
        documents = "\n\n".join(
            f"[Doc {i + 1}]: {item.chunk.text[:500]}" for i, item in enumerate(items)
        )
        response = self.client.chat.completions.create(
            model=self.model,
            messages=[
                {
                    "role": "user",
                    "content": self.RERANK_PROMPT.format(
                        query=query, documents=documents, count=len(items)
                    ),
                }
            ],
            temperature=0.0,
            max_tokens=10 * len(items) + 20,
        )
        text = (response.choices[0].message.content or "").strip()
        scores = [float(s) for s in _SCORE_RE.findall(text)]
        if len(scores) != len(items):
            raise RerankError(
                f"Expected {len(items)} scores from {self.model}, got {len(scores)}",
                stage="rerank",
            )
        return [max(0.0, min(1.0, s)) for s in scores]

    def rerank(self, query, items, cancel_token=None):
        """
        Re-rank using a single batched LLM call.

        Args:
            query: The search query
            items: First-stage candidates
            cancel_token: Checked before every attempt

        Returns:
            The same candidates, reordered

        Raises:
            RerankError: When scoring fails after retries
        """
        if not items:
            return []
        scores = call_with_retry(
            lambda: self._score_batch(query, items),
            self.retry_policy,
            transient=BASE_TRANSIENT_ERRORS + OPENAI_TRANSIENT_ERRORS,
            error_cls=RerankError,
            stage="rerank",
            cancel_token=cancel_token,
        )
        for item, llm_score in zip(items, scores):
            item.rerank_score = llm_score
            item.score = self.original_weight * item.score + (1 - self.original_weight) * llm_score
        return _resort(items)


def create_reranker(name: str = "none", **kwargs) -> BaseReranker:
    """Build a reranker by name ('none', 'keyword', 'llm')."""
    name = name.lower()
    if name == "none":
        return NoOpReranker()
    if name == "keyword":
        return KeywordReranker(**kwargs)
    if name == "llm":
        return LLMReranker(**kwargs)
    raise ConfigError(f"Unknown reranker: {name}. Supported: 'none', 'keyword', 'llm'")
