"""
Anchor — grounded question answering over your documents

Retrieval-augmented generation that refuses to guess:
- Offset-tracked, overlapping chunking with pluggable boilerplate stripping
- USearch HNSW vector index and BM25 lexical index, swapped atomically per version
- Semantic, lexical and hybrid retrieval with optional reranking
- Deterministic grounded prompts with [Title#chunk] citation labels
- Verifier that checks every answer sentence against its cited chunks and
  answers "I don't know" instead of returning an ungrounded answer
- Conflict detection when sources state different facts
- Answer cache keyed by index version
- Multiple embedding providers (OpenAI, HuggingFace, Jina AI, local hashing)
- Retries with exponential backoff, timeouts and cancellation
- SQLite persistence, REST API (FastAPI), CLI and evaluation harness

References:
- USearch: https://github.com/unum-cloud/usearch
- BM25: https://github.com/dorianbrown/rank_bm25
"""

__version__ = "0.1.0"

from .config import AnchorConfig
from .errors import (
    AnchorError,
    ConfigError,
    EmbeddingServiceError,
    GenerationError,
    IndexConsistencyError,
    QueryCancelled,
    ServiceUnavailable,
    ValidationError,
)
from .models import (
    UNSUPPORTED_ANSWER,
    AnswerRecord,
    Chunk,
    Citation,
    Document,
    IngestionReport,
    RetrievalResult,
    ScoredChunk,
)
from .loaders import load_sources
from .chunking import BoilerplateFilter, chunk_document, chunk_text
from .embeddings import (
    BaseEmbeddingProvider,
    EmbeddingProvider,
    HashingEmbedding,
    HuggingFaceEmbedding,
    JinaEmbedding,
    create_embedding_provider,
    get_cache,
)
from .index import IndexSnapshot, IndexStore, VectorIndex
from .lexical import LexicalIndex
from .storage import MetadataStore
from .search import Retriever
from .reranker import KeywordReranker, LLMReranker, NoOpReranker, create_reranker
from .prompt import Prompt, PromptAssembler
from .generator import BaseGenerator, ExtractiveGenerator, OpenAIGenerator, create_generator
from .verifier import GroundingVerifier, VerificationResult
from .cache import AnswerCache, CacheKey
from .retry import CancellationToken, RetryPolicy
from .anchor import Anchor, create_anchor
from .evaluation import EvalCase, evaluate, load_cases

__all__ = [
    # Core
    "AnchorConfig",
    "Anchor",
    "create_anchor",
    "Document",
    "Chunk",
    "ScoredChunk",
    "RetrievalResult",
    "Citation",
    "AnswerRecord",
    "IngestionReport",
    "UNSUPPORTED_ANSWER",
    # Errors
    "AnchorError",
    "ConfigError",
    "ValidationError",
    "EmbeddingServiceError",
    "GenerationError",
    "ServiceUnavailable",
    "IndexConsistencyError",
    "QueryCancelled",
    # Loaders & Chunking
    "load_sources",
    "BoilerplateFilter",
    "chunk_document",
    "chunk_text",
    # Embeddings
    "EmbeddingProvider",
    "BaseEmbeddingProvider",
    "HuggingFaceEmbedding",
    "JinaEmbedding",
    "HashingEmbedding",
    "create_embedding_provider",
    "get_cache",
    # Components
    "VectorIndex",
    "IndexSnapshot",
    "IndexStore",
    "LexicalIndex",
    "MetadataStore",
    "Retriever",
    "Prompt",
    "PromptAssembler",
    "BaseGenerator",
    "OpenAIGenerator",
    "ExtractiveGenerator",
    "create_generator",
    "GroundingVerifier",
    "VerificationResult",
    "AnswerCache",
    "CacheKey",
    "RetryPolicy",
    "CancellationToken",
    # Re-ranking
    "NoOpReranker",
    "KeywordReranker",
    "LLMReranker",
    "create_reranker",
    # Evaluation
    "EvalCase",
    "evaluate",
    "load_cases",
]
