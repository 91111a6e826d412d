"""Error taxonomy for the Anchor engine."""

from typing import Optional


class AnchorError(Exception):
    """Base class for Anchor errors.

    Carries optional context so callers can log the failing stage and
    decide what to show to the end user.
    """

    def __init__(
        self,
        message: str,
        *,
        stage: Optional[str] = None,
        query: Optional[str] = None,
        attempts: Optional[int] = None,
    ):
        super().__init__(message)
        self.message = message
        self.stage = stage
        self.query = query
        self.attempts = attempts

    def context(self) -> dict:
        return {
            "error": self.message,
            "stage": self.stage,
            "query": self.query,
            "attempts": self.attempts,
        }


class ConfigError(AnchorError):
    """Invalid chunking, index or model configuration. Fatal at startup."""


class ValidationError(AnchorError):
    """Bad request (empty query, k out of range, unknown mode)."""


class TransientServiceError(AnchorError):
    """Retryable failure raised by an embedding or generation backend."""


class EmbeddingServiceError(AnchorError):
    """Embedding backend failed after the retry budget was spent."""


class GenerationError(AnchorError):
    """Generation backend failed after the retry budget was spent."""


class RerankError(AnchorError):
    pass


class ServiceUnavailable(AnchorError):
    """An external dependency is down; distinct from a normal answer."""


class IndexConsistencyError(AnchorError):
    """Vector and lexical indexes disagree on the chunk-id universe."""


class QueryCancelled(AnchorError):
    pass
