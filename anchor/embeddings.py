"""Embedding backends behind one batched, cached and retried ``embed`` call."""

import hashlib
import logging
import os
import threading
from abc import ABC, abstractmethod
from collections import OrderedDict
from concurrent.futures import ThreadPoolExecutor
from typing import Dict, List, Optional, Sequence, Tuple, Type, Union

import numpy as np
import openai
import requests
from openai import OpenAI

from .errors import ConfigError, EmbeddingServiceError, TransientServiceError
from .retry import BASE_TRANSIENT_ERRORS, CancellationToken, RetryPolicy, call_with_retry
from .text import tokenize

logger = logging.getLogger(__name__)

OPENAI_TRANSIENT_ERRORS: Tuple[Type[BaseException], ...] = (
    openai.APITimeoutError,
    openai.APIConnectionError,
    openai.RateLimitError,
    openai.InternalServerError,
)


class EmbeddingCache:
    """Thread-safe LRU of vectors keyed by model id and text digest.

    Only deterministic providers make this safe: a model id must always map
    the same text to the same vector.
    """

    def __init__(self, maxsize: int = 1000):
        self.maxsize = maxsize
        self._vectors: "OrderedDict[Tuple[str, str], Tuple[float, ...]]" = OrderedDict()
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0

    @staticmethod
    def _key(text: str, model: str) -> Tuple[str, str]:
        return model, hashlib.blake2b(text.encode(), digest_size=16).hexdigest()

    def get(self, text: str, model: str) -> Optional[List[float]]:
        key = self._key(text, model)
        with self._lock:
            vector = self._vectors.get(key)
            if vector is None:
                self._misses += 1
                return None
            self._vectors.move_to_end(key)
            self._hits += 1
        return list(vector)

    def set(self, text: str, model: str, embedding: Sequence[float]) -> None:
        key = self._key(text, model)
        with self._lock:
            self._vectors[key] = tuple(embedding)
            self._vectors.move_to_end(key)
            while len(self._vectors) > self.maxsize:
                self._vectors.popitem(last=False)

    def stats(self) -> Dict[str, float]:
        with self._lock:
            lookups = self._hits + self._misses
            return {
                "hits": self._hits,
                "misses": self._misses,
                "hit_rate": self._hits / lookups if lookups else 0,
                "size": len(self._vectors),
                "maxsize": self.maxsize,
            }

    def clear(self) -> None:
        with self._lock:
            self._vectors.clear()
            self._hits = self._misses = 0


_embedding_cache = EmbeddingCache(maxsize=1000)


def get_cache() -> EmbeddingCache:
    """Process-wide embedding cache shared by every provider."""
    return _embedding_cache


class BaseEmbeddingProvider(ABC):
    """Common machinery for embedding backends.

    Subclasses only turn a list of texts into a list of vectors in
    ``_embed_batch``. This class splits input into batches, serves repeats
    from the cache, retries transient failures under ``retry_policy`` and
    checks that the backend returned one vector per text.

    Attributes:
        provider_name: Prefix of ``model_id``
        transient_errors: Exception types worth another attempt
        MODEL_DIMENSIONS: Known output sizes per model name
        DEFAULT_DIMENSION: Output size assumed for unknown models
    """

    provider_name = "base"
    transient_errors: Tuple[Type[BaseException], ...] = BASE_TRANSIENT_ERRORS
    MODEL_DIMENSIONS: Dict[str, int] = {}
    DEFAULT_DIMENSION = 0

    def __init__(
        self,
        model: str,
        use_cache: bool = True,
        *,
        retry_policy: Optional[RetryPolicy] = None,
        batch_size: int = 64,
    ):
        self.model = model
        self.use_cache = use_cache
        self.retry_policy = retry_policy or RetryPolicy()
        self.batch_size = batch_size

    @abstractmethod
    def _embed_batch(self, texts: List[str]) -> List[List[float]]:
        """Embed one batch; raise on transport failure."""

    @property
    def dimension(self) -> int:
        return self.MODEL_DIMENSIONS.get(self.model, self.DEFAULT_DIMENSION)

    @property
    def model_id(self) -> str:
        """Vectors are comparable only between texts embedded under the same id."""
        return f"{self.provider_name}:{self.model}"

    def _call(self, texts: List[str], cancel_token: Optional[CancellationToken]) -> List[List[float]]:
        vectors = call_with_retry(
            lambda: self._embed_batch(texts),
            self.retry_policy,
            transient=self.transient_errors,
            error_cls=EmbeddingServiceError,
            stage="embed",
            cancel_token=cancel_token,
        )
        if len(vectors) != len(texts):
            raise EmbeddingServiceError(
                f"{self.model_id} returned {len(vectors)} vectors for {len(texts)} texts",
                stage="embed",
            )
        return [[float(x) for x in v] for v in vectors]

    def embed(
        self,
        texts: Union[str, Sequence[str]],
        *,
        max_workers: int = 1,
        cancel_token: Optional[CancellationToken] = None,
    ) -> List[List[float]]:
        """
        Embed texts, reusing cached vectors.

        Args:
            texts: Single text or list of texts
            max_workers: Embed batches concurrently with this many workers
            cancel_token: Checked before every provider call

        Returns:
            One vector per text, in input order

        Raises:
            EmbeddingServiceError: When the provider keeps failing
        """
        texts = [texts] if isinstance(texts, str) else list(texts)
        cache = get_cache() if self.use_cache else None

        vectors: Dict[int, List[float]] = {}
        pending: List[int] = []
        for i, text in enumerate(texts):
            hit = cache.get(text, self.model_id) if cache else None
            if hit is None:
                pending.append(i)
            else:
                vectors[i] = hit

        batches = [pending[s:s + self.batch_size] for s in range(0, len(pending), self.batch_size)]

        def run(batch: List[int]) -> List[List[float]]:
            return self._call([texts[i] for i in batch], cancel_token)

        if max_workers > 1 and len(batches) > 1:
            with ThreadPoolExecutor(max_workers=max_workers) as pool:
                embedded = list(pool.map(run, batches))
        else:
            embedded = [run(batch) for batch in batches]

        for batch, batch_vectors in zip(batches, embedded):
            for i, vector in zip(batch, batch_vectors):
                if cache:
                    cache.set(texts[i], self.model_id, vector)
                vectors[i] = vector

        if pending:
            logger.debug(
                "Embedded %d of %d text(s) with %s (%d from cache)",
                len(pending), len(texts), self.model_id, len(texts) - len(pending),
            )
        return [vectors[i] for i in range(len(texts))]

    def embed_query(self, text: str, cancel_token: Optional[CancellationToken] = None) -> List[float]:
        return self.embed([text], cancel_token=cancel_token)[0]


def _require_key(value: Optional[str], env_var: str, param: str, service: str) -> str:
    key = value or os.environ.get(env_var)
    if not key:
        raise ConfigError(f"{service} API key required. Set {env_var} or pass {param}.")
    return key


class EmbeddingProvider(BaseEmbeddingProvider):
    """OpenAI embeddings API."""

    provider_name = "openai"
    transient_errors = BASE_TRANSIENT_ERRORS + OPENAI_TRANSIENT_ERRORS
    MODEL_DIMENSIONS = {
        "text-embedding-3-large": 3072,
        "text-embedding-3-small": 1536,
        "text-embedding-ada-002": 1536,
    }
    DEFAULT_DIMENSION = 1536

    def __init__(
        self,
        model: str = "text-embedding-3-small",
        openai_api_key: Optional[str] = None,
        use_cache: bool = True,
        **kwargs,
    ):
        super().__init__(model, use_cache, **kwargs)
        self.api_key = _require_key(openai_api_key, "OPENAI_API_KEY", "openai_api_key", "OpenAI")
        # The client must not retry on its own; RetryPolicy counts attempts
        self.client = OpenAI(api_key=self.api_key, timeout=self.retry_policy.timeout, max_retries=0)

    def _embed_batch(self, texts: List[str]) -> List[List[float]]:
        response = self.client.embeddings.create(model=self.model, input=texts)
        return [item.embedding for item in sorted(response.data, key=lambda item: item.index)]


OpenAIEmbedding = EmbeddingProvider


class HuggingFaceEmbedding(BaseEmbeddingProvider):
    """
    Local sentence-transformers models.

    The model is loaded on first use. ``HF_TOKEN`` is passed through for
    private or gated models.

    Example:
        >>> embedder = HuggingFaceEmbedding("all-MiniLM-L6-v2")
        >>> vectors = embedder.embed(["Hello world"])
    """

    provider_name = "huggingface"
    MODEL_DIMENSIONS = {
        "all-MiniLM-L6-v2": 384,
        "all-MiniLM-L12-v2": 384,
        "all-mpnet-base-v2": 768,
        "BAAI/bge-small-en-v1.5": 384,
        "BAAI/bge-base-en-v1.5": 768,
        "BAAI/bge-large-en-v1.5": 1024,
    }

    def __init__(
        self,
        model: str = "all-MiniLM-L6-v2",
        hf_token: Optional[str] = None,
        use_cache: bool = True,
        **kwargs,
    ):
        super().__init__(model, use_cache, **kwargs)
        self.hf_token = hf_token or os.environ.get("HF_TOKEN")
        self._encoder = None
        self._loaded_dimension: Optional[int] = None
        self._load_lock = threading.Lock()

    def _load(self):
        with self._load_lock:
            if self._encoder is None:
                try:
                    from sentence_transformers import SentenceTransformer
                except ImportError as exc:
                    raise ConfigError(
                        'sentence-transformers is not installed: pip install "anchor-rag[huggingface]"'
                    ) from exc
                logger.info("Loading sentence-transformers model %s", self.model)
                self._encoder = SentenceTransformer(self.model, token=self.hf_token)
                self._loaded_dimension = self._encoder.get_sentence_embedding_dimension()
        return self._encoder

    @property
    def dimension(self) -> int:
        if self._loaded_dimension is None and self.model not in self.MODEL_DIMENSIONS:
            self._load()
        return self._loaded_dimension or self.MODEL_DIMENSIONS.get(self.model, 384)

    def _embed_batch(self, texts: List[str]) -> List[List[float]]:
        encoded = self._load().encode(texts, convert_to_numpy=True, show_progress_bar=False)
        return encoded.tolist()


class JinaEmbedding(BaseEmbeddingProvider):
    """
    Jina AI embeddings over HTTP.

    Args:
        model: Jina model name
        jina_api_key: API key (or set JINA_API_KEY)
        use_cache: Enable caching
        task: Optional task hint: 'retrieval.query', 'retrieval.passage', 'text-matching'
    """

    provider_name = "jina"
    transient_errors = BASE_TRANSIENT_ERRORS + (requests.Timeout, requests.ConnectionError)
    API_URL = "https://api.jina.ai/v1/embeddings"
    MODEL_DIMENSIONS = {
        "jina-embeddings-v3": 1024,
        "jina-embeddings-v2-base-en": 768,
        "jina-embeddings-v2-small-en": 512,
    }
    DEFAULT_DIMENSION = 1024

    def __init__(
        self,
        model: str = "jina-embeddings-v3",
        jina_api_key: Optional[str] = None,
        use_cache: bool = True,
        task: Optional[str] = None,
        **kwargs,
    ):
        super().__init__(model, use_cache, **kwargs)
        self.api_key = _require_key(jina_api_key, "JINA_API_KEY", "jina_api_key", "Jina")
        self.task = task

    def _embed_batch(self, texts: List[str]) -> List[List[float]]:
        payload = {"model": self.model, "input": texts}
        if self.task:
            payload["task"] = self.task
        response = requests.post(
            self.API_URL,
            json=payload,
            headers={"Authorization": f"Bearer {self.api_key}", "Accept": "application/json"},
            timeout=self.retry_policy.timeout,
        )
        if response.status_code == 429 or response.status_code >= 500:
            raise TransientServiceError(f"Jina AI returned HTTP {response.status_code}")
        response.raise_for_status()
        return [item["embedding"] for item in response.json()["data"]]


class HashingEmbedding(BaseEmbeddingProvider):
    """
    Deterministic feature-hashing embeddings (local, no model download).

    Unigrams and bigrams of the content tokens are hashed into a signed,
    L2-normalized vector. Useful offline and wherever reproducibility
    matters more than semantic quality.
    """

    provider_name = "hashing"

    def __init__(self, dimension: int = 384, use_cache: bool = True, **kwargs):
        if dimension <= 0:
            raise ConfigError(f"dimension must be positive, got {dimension}")
        super().__init__(f"feature-hash-{dimension}", use_cache, **kwargs)
        self._size = dimension

    @property
    def dimension(self) -> int:
        return self._size

    def _features(self, text: str) -> List[str]:
        tokens = tokenize(text)
        return tokens + [f"{a} {b}" for a, b in zip(tokens, tokens[1:])]

    def _embed_batch(self, texts: List[str]) -> List[List[float]]:
        out = []
        for text in texts:
            vector = np.zeros(self.dimension, dtype=np.float32)
            for feature in self._features(text):
                h = int.from_bytes(
                    hashlib.blake2b(feature.encode(), digest_size=8).digest(), "little"
                )
                vector[h % self.dimension] += 1.0 if (h >> 63) == 0 else -1.0
            norm = float(np.linalg.norm(vector))
            if norm > 0:
                vector /= norm
            out.append(vector.tolist())
        return out


_PROVIDERS = {
    "openai": (EmbeddingProvider, "text-embedding-3-small"),
    "huggingface": (HuggingFaceEmbedding, "all-MiniLM-L6-v2"),
    "jina": (JinaEmbedding, "jina-embeddings-v3"),
}
_ALIASES = {"hf": "huggingface", "sentence-transformers": "huggingface", "jina-ai": "jina"}


def create_embedding_provider(
    provider: str = "openai",
    model: Optional[str] = None,
    **kwargs
) -> BaseEmbeddingProvider:
    """
    Build an embedding provider by name.

    Args:
        provider: 'openai', 'huggingface', 'jina' or 'hashing'
        model: Model name (provider default when omitted; ignored by 'hashing')
        **kwargs: Provider-specific arguments

    Returns:
        Configured embedding provider

    Example:
        >>> embedder = create_embedding_provider("huggingface", "BAAI/bge-small-en-v1.5")
        >>> embedder = create_embedding_provider("hashing", dimension=256)
    """
    name = _ALIASES.get(provider.lower(), provider.lower())
    if name == "hashing":
        return HashingEmbedding(**kwargs)
    if name not in _PROVIDERS:
        raise ConfigError(
            f"Unknown embedding provider: {provider}. Supported: 'openai', 'huggingface', 'jina', 'hashing'"
        )
    cls, default_model = _PROVIDERS[name]
    return cls(model or default_model, **kwargs)
