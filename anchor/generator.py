"""Answer generation backends behind a single ``generate(prompt)`` interface."""

import logging
import os
from abc import ABC, abstractmethod
from typing import List, Optional, Tuple, Type

from openai import OpenAI

from .embeddings import OPENAI_TRANSIENT_ERRORS
from .errors import ConfigError, GenerationError
from .models import UNSUPPORTED_ANSWER
from .prompt import Prompt, parse_question, parse_sources
from .retry import BASE_TRANSIENT_ERRORS, CancellationToken, RetryPolicy, call_with_retry
from .text import content_terms, split_sentences

logger = logging.getLogger(__name__)


class BaseGenerator(ABC):
    """Abstract base class for generators.

    Only transport and retry live here; whether the answer is grounded is
    decided afterwards by the verifier.
    """

    provider_name = "base"
    transient_errors: Tuple[Type[BaseException], ...] = BASE_TRANSIENT_ERRORS

    def __init__(self, model: str, *, retry_policy: Optional[RetryPolicy] = None):
        self.model = model
        self.retry_policy = retry_policy or RetryPolicy()

    @abstractmethod
    def _complete(self, prompt: str) -> str:
        """Run one completion (provider-specific)."""
        pass

    def generate(self, prompt, cancel_token: Optional[CancellationToken] = None) -> str:
        """
        Produce raw answer text for a prompt.

        Args:
            prompt: ``Prompt`` or prompt string
            cancel_token: Checked before every attempt

        Returns:
            Raw answer text

        Raises:
            GenerationError: When the backend keeps failing
            QueryCancelled: If cancelled before an attempt
        """
        text = prompt.text if isinstance(prompt, Prompt) else str(prompt)
        answer = call_with_retry(
            lambda: self._complete(text),
            self.retry_policy,
            transient=self.transient_errors,
            error_cls=GenerationError,
            stage="generate",
            cancel_token=cancel_token,
        )
        return (answer or "").strip()


class OpenAIGenerator(BaseGenerator):
    """OpenAI chat-completions generator."""

    provider_name = "openai"
    transient_errors = BASE_TRANSIENT_ERRORS + OPENAI_TRANSIENT_ERRORS

    def __init__(
        self,
        model: str = "gpt-4o-mini",
        openai_api_key: Optional[str] = None,
        temperature: float = 0.0,
        max_tokens: int = 512,
        **kwargs,
    ):
        super().__init__(model, **kwargs)
        api_key = openai_api_key or os.environ.get("OPENAI_API_KEY")
        if not api_key:
            raise ConfigError(
                "OpenAI API key required. Set OPENAI_API_KEY environment variable "
                "or pass openai_api_key parameter."
            )
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.client = OpenAI(api_key=api_key, timeout=self.retry_policy.timeout, max_retries=0)

    def _complete(self, prompt: str) -> str:
        response = self.client.chat.completions.create(
            model=self.model,
            messages=[{"role": "user", "content": prompt}],
            temperature=self.temperature,
            max_tokens=self.max_tokens,
        )
        return response.choices[0].message.content or ""


class ExtractiveGenerator(BaseGenerator):
    """
    Deterministic offline generator that quotes source sentences.

    For every source in the prompt the sentence sharing most terms with the
    question is kept when it covers enough of the question; the answer is
    those sentences followed by their source labels. With nothing relevant
    the unsupported sentinel is returned.
    """

    provider_name = "extractive"

    def __init__(self, min_overlap: float = 0.5, relative_cutoff: float = 0.8, max_sentences: int = 3, **kwargs):
        super().__init__("extractive", **kwargs)
        self.min_overlap = min_overlap
        self.relative_cutoff = relative_cutoff
        self.max_sentences = max_sentences

    def _complete(self, prompt: str) -> str:
        question_terms = content_terms(parse_question(prompt))
        sources = parse_sources(prompt)
        if not question_terms or not sources:
            return UNSUPPORTED_ANSWER

        picks: List[Tuple[float, int, str, str]] = []
        for position, source in enumerate(sources):
            best: Optional[Tuple[float, str]] = None
            for sentence in split_sentences(source["text"]):
                overlap = len(question_terms & content_terms(sentence)) / len(question_terms)
                if best is None or overlap > best[0]:
                    best = (overlap, sentence)
            if best is not None and best[0] >= self.min_overlap:
                picks.append((best[0], position, best[1], source["label"]))

        if not picks:
            return UNSUPPORTED_ANSWER

        top = max(p[0] for p in picks)
        kept = [p for p in picks if p[0] >= self.relative_cutoff * top]
        kept.sort(key=lambda p: (-p[0], p[1]))
        kept = sorted(kept[: self.max_sentences], key=lambda p: p[1])
        return " ".join(
            f"{sentence.rstrip('.!?')} [{label}]." for _, _, sentence, label in kept
        )


def create_generator(provider: str = "openai", model: Optional[str] = None, **kwargs) -> BaseGenerator:
    """
    Factory function to create generators.

    Args:
        provider: 'openai' or 'extractive'
        model: Model name (OpenAI only)
        **kwargs: Backend-specific arguments

    Returns:
        Configured generator
    """
    provider = provider.lower()
    if provider == "openai":
        return OpenAIGenerator(model or "gpt-4o-mini", **kwargs)
    if provider == "extractive":
        kwargs.pop("temperature", None)
        return ExtractiveGenerator(**kwargs)
    raise ConfigError(f"Unknown generator: {provider}. Supported: 'openai', 'extractive'")
