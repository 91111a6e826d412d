"""Configuration for the Anchor engine."""

import os
from dataclasses import dataclass, fields
from typing import Optional

from .errors import ConfigError
from .retry import RetryPolicy

EMBEDDING_PROVIDERS = ("openai", "huggingface", "jina", "hashing")
GENERATOR_PROVIDERS = ("openai", "extractive")
RERANKERS = ("none", "keyword", "llm")
SEARCH_MODES = ("semantic", "lexical", "hybrid")
METRICS = ("cos", "ip")


@dataclass
class AnchorConfig:
    """Configuration for the Anchor engine."""

    # Embedding settings
    embedding_provider: str = "openai"
    embedding_model: Optional[str] = None  # provider default when None
    embedding_dim: Optional[int] = None    # provider-known dimension when None
    embedding_batch_size: int = 64
    embedding_workers: int = 4

    # USearch HNSW parameters
    metric: str = "cos"   # 'cos' or 'ip', fixed for the life of the index
    dtype: str = "f32"
    connectivity: int = 16
    expansion_add: int = 128
    expansion_search: int = 64
    exact_search_threshold: int = 2048  # brute force below this many vectors
    max_k: int = 100

    # Chunking settings (characters)
    chunk_size: int = 1200
    chunk_overlap: int = 150

    # Retrieval settings
    default_k: int = 5
    default_mode: str = "hybrid"
    semantic_weight: float = 0.5
    lexical_weight: float = 0.5
    min_score: float = 0.2
    lexical_saturation: float = 1.0
    reranker: str = "none"
    rerank_depth: int = 20

    # Prompt settings
    max_prompt_chars: int = 12000

    # Generation settings
    generator_provider: str = "openai"
    generator_model: str = "gpt-4o-mini"
    temperature: float = 0.0

    # Grounding verifier
    support_threshold: float = 0.6
    min_supported_fraction: float = 0.5
    confidence_floor: float = 0.0
    suppress_unsupported: bool = True
    conflict_threshold: float = 0.5

    # Timeouts and retries for external calls
    timeout: float = 30.0
    max_attempts: int = 3
    backoff_initial: float = 1.0
    backoff_max: float = 10.0

    # Answer cache
    cache_size: int = 1024

    # Storage (in-memory only when None)
    db_path: Optional[str] = None

    @property
    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.max_attempts,
            backoff_initial=self.backoff_initial,
            backoff_max=self.backoff_max,
            timeout=self.timeout,
        )

    def validate(self) -> "AnchorConfig":
        """Check parameters, raising ConfigError on the first problem."""
        if self.chunk_size <= 0:
            raise ConfigError(f"chunk_size must be positive, got {self.chunk_size}")
        if self.chunk_overlap < 0 or self.chunk_overlap >= self.chunk_size:
            raise ConfigError(
                f"chunk_overlap must be in [0, chunk_size), got {self.chunk_overlap} "
                f"with chunk_size={self.chunk_size}"
            )
        _check_choice("embedding_provider", self.embedding_provider, EMBEDDING_PROVIDERS)
        _check_choice("generator_provider", self.generator_provider, GENERATOR_PROVIDERS)
        _check_choice("reranker", self.reranker, RERANKERS)
        _check_choice("default_mode", self.default_mode, SEARCH_MODES)
        _check_choice("metric", self.metric, METRICS)
        if self.embedding_dim is not None and self.embedding_dim <= 0:
            raise ConfigError(f"embedding_dim must be positive, got {self.embedding_dim}")
        if self.embedding_batch_size <= 0 or self.embedding_workers <= 0:
            raise ConfigError("embedding_batch_size and embedding_workers must be positive")
        if self.semantic_weight < 0 or self.lexical_weight < 0:
            raise ConfigError("hybrid weights must be non-negative")
        if self.semantic_weight + self.lexical_weight <= 0:
            raise ConfigError("hybrid weights must not both be zero")
        for name in (
            "min_score",
            "support_threshold",
            "min_supported_fraction",
            "confidence_floor",
            "conflict_threshold",
        ):
            value = getattr(self, name)
            if not 0.0 <= value <= 1.0:
                raise ConfigError(f"{name} must be within [0, 1], got {value}")
        if self.lexical_saturation <= 0:
            raise ConfigError("lexical_saturation must be positive")
        if not 1 <= self.default_k <= self.max_k:
            raise ConfigError(f"default_k must be in [1, {self.max_k}], got {self.default_k}")
        if self.rerank_depth < self.default_k:
            raise ConfigError("rerank_depth must be at least default_k")
        if self.max_prompt_chars <= 0:
            raise ConfigError("max_prompt_chars must be positive")
        if self.max_attempts < 1:
            raise ConfigError("max_attempts must be at least 1")
        if self.timeout <= 0:
            raise ConfigError("timeout must be positive")
        if self.cache_size < 0:
            raise ConfigError("cache_size must be non-negative")
        return self

    @classmethod
    def from_env(cls, prefix: str = "ANCHOR_") -> "AnchorConfig":
        """Create a config from ``ANCHOR_*`` environment variables.

        Every field can be overridden by its upper-cased name, e.g.
        ``ANCHOR_CHUNK_SIZE=800`` or ``ANCHOR_RERANKER=keyword``.
        """
        values = {}
        for f in fields(cls):
            raw = os.getenv(prefix + f.name.upper())
            if raw is None:
                continue
            default = f.default
            if isinstance(default, bool):
                values[f.name] = _get_bool(raw)
            elif isinstance(default, int):
                values[f.name] = int(raw)
            elif isinstance(default, float):
                values[f.name] = float(raw)
            elif f.name == "embedding_dim":
                values[f.name] = int(raw)
            else:
                values[f.name] = raw
        return cls(**values)


def _get_bool(value: str) -> bool:
    return value.lower() in {"1", "true", "t", "yes", "y"}


def _check_choice(name: str, value: str, choices) -> None:
    if value not in choices:
        raise ConfigError(f"Unknown {name}: {value!r}. Supported: {', '.join(choices)}")
