"""Tests for answer generators."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from anchor.errors import ConfigError, GenerationError, QueryCancelled
from anchor.generator import BaseGenerator, ExtractiveGenerator, OpenAIGenerator, create_generator
from anchor.models import UNSUPPORTED_ANSWER
from anchor.retry import CancellationToken, RetryPolicy

PROMPT = (
    "Answer the question using only the following sources.\n\n"
    "Sources:\n"
    "Source 1 [Acme History#0]:\n"
    "Acme Corporation was founded in 1990 in Springfield. It sold anvils.\n---\n"
    "Source 2 [Springfield Weather#0]:\n"
    "Springfield summers are hot and humid.\n---\n\n"
    "Question: When was Acme founded?\nAnswer:"
)


class TimeoutGenerator(BaseGenerator):
    """Always times out."""

    def __init__(self, **kwargs):
        super().__init__("timeout", **kwargs)
        self.calls = 0

    def _complete(self, prompt: str) -> str:
        self.calls += 1
        raise TimeoutError("generation timed out")


class TestExtractiveGenerator:
    """Tests for the offline extractive generator."""

    def test_quotes_best_sentence_with_label(self) -> None:
        """The matching sentence is returned with its citation label."""
        answer = ExtractiveGenerator().generate(PROMPT)
        assert answer == "Acme Corporation was founded in 1990 in Springfield [Acme History#0]."

    def test_nothing_relevant(self) -> None:
        """With no overlapping sentence the sentinel is returned."""
        prompt = PROMPT.replace("When was Acme founded?", "What is the capital of Mongolia?")
        assert ExtractiveGenerator().generate(prompt) == UNSUPPORTED_ANSWER

    def test_no_sources(self) -> None:
        """A prompt without sources gets the sentinel."""
        assert ExtractiveGenerator().generate("Question: Anything?\nAnswer:") == UNSUPPORTED_ANSWER

    def test_keeps_source_order(self) -> None:
        """Several matching sources are quoted in prompt order."""
        prompt = (
            "Source 1 [A#0]:\nAcme was founded in 1990.\n---\n"
            "Source 2 [B#0]:\nAcme was founded in 1995.\n---\n\n"
            "Question: When was Acme founded?\nAnswer:"
        )
        answer = ExtractiveGenerator().generate(prompt)
        assert answer == "Acme was founded in 1990 [A#0]. Acme was founded in 1995 [B#0]."


class TestRetries:
    """Tests for generation retries."""

    def test_timeouts_exhaust_budget(self, fast_policy: RetryPolicy) -> None:
        """Repeated timeouts raise GenerationError after max_attempts."""
        generator = TimeoutGenerator(retry_policy=fast_policy)
        with pytest.raises(GenerationError) as info:
            generator.generate("prompt")
        assert generator.calls == 3
        assert info.value.attempts == 3
        assert info.value.stage == "generate"

    def test_cancelled(self, fast_policy: RetryPolicy) -> None:
        """A cancelled token prevents the call."""
        generator = TimeoutGenerator(retry_policy=fast_policy)
        token = CancellationToken()
        token.cancel()
        with pytest.raises(QueryCancelled):
            generator.generate("prompt", cancel_token=token)
        assert generator.calls == 0


class TestOpenAIGenerator:
    """Tests for the OpenAI generator with a mocked client."""

    def test_generate(self) -> None:
        """The completion text is returned stripped."""
        generator = OpenAIGenerator(openai_api_key="sk-test")
        generator.client = MagicMock()
        response = MagicMock()
        response.choices = [MagicMock()]
        response.choices[0].message.content = "  Founded in 1990 [Acme History#0].  "
        generator.client.chat.completions.create.return_value = response
        assert generator.generate("prompt") == "Founded in 1990 [Acme History#0]."
        kwargs = generator.client.chat.completions.create.call_args.kwargs
        assert kwargs["temperature"] == 0.0
        assert kwargs["messages"] == [{"role": "user", "content": "prompt"}]

    def test_requires_api_key(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Missing key is a configuration error."""
        monkeypatch.delenv("OPENAI_API_KEY", raising=False)
        with pytest.raises(ConfigError):
            OpenAIGenerator()


class TestFactory:
    """Tests for create_generator."""

    def test_extractive_ignores_temperature(self) -> None:
        """Temperature is accepted and ignored by the extractive backend."""
        assert isinstance(create_generator("extractive", temperature=0.2), ExtractiveGenerator)

    def test_unknown(self) -> None:
        """Unknown generators are rejected."""
        with pytest.raises(ConfigError):
            create_generator("llama")
