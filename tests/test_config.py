"""Tests for configuration."""

from __future__ import annotations

import pytest

from anchor.config import AnchorConfig
from anchor.errors import ConfigError


class TestAnchorConfig:
    """Test AnchorConfig defaults and validation."""

    def test_defaults_are_valid(self) -> None:
        """The default configuration validates."""
        config = AnchorConfig().validate()
        assert config.default_mode == "hybrid"
        assert config.metric == "cos"
        assert config.chunk_overlap < config.chunk_size

    @pytest.mark.parametrize(
        "overrides",
        [
            {"chunk_size": 0},
            {"chunk_size": 100, "chunk_overlap": 100},
            {"chunk_overlap": -1},
            {"embedding_provider": "word2vec"},
            {"generator_provider": "gpt2"},
            {"default_mode": "fuzzy"},
            {"metric": "l2sq"},
            {"min_score": 1.5},
            {"semantic_weight": 0.0, "lexical_weight": 0.0},
            {"default_k": 0},
            {"default_k": 30, "rerank_depth": 20},
            {"max_attempts": 0},
            {"cache_size": -1},
            {"reranker": "magic"},
        ],
    )
    def test_invalid(self, overrides) -> None:
        """Out-of-range settings raise ConfigError."""
        with pytest.raises(ConfigError):
            AnchorConfig(**overrides).validate()

    def test_retry_policy(self) -> None:
        """Retry settings are bundled into a RetryPolicy."""
        policy = AnchorConfig(max_attempts=5, backoff_initial=0.5, timeout=12.0).retry_policy
        assert policy.max_attempts == 5
        assert policy.backoff_initial == 0.5
        assert policy.timeout == 12.0


class TestFromEnv:
    """Test AnchorConfig.from_env."""

    def test_reads_typed_values(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Environment variables are parsed to the field types."""
        monkeypatch.setenv("ANCHOR_CHUNK_SIZE", "800")
        monkeypatch.setenv("ANCHOR_MIN_SCORE", "0.3")
        monkeypatch.setenv("ANCHOR_SUPPRESS_UNSUPPORTED", "false")
        monkeypatch.setenv("ANCHOR_RERANKER", "keyword")
        monkeypatch.setenv("ANCHOR_EMBEDDING_DIM", "256")
        monkeypatch.setenv("ANCHOR_DB_PATH", "/tmp/anchor.db")
        config = AnchorConfig.from_env()
        assert config.chunk_size == 800
        assert config.min_score == 0.3
        assert config.suppress_unsupported is False
        assert config.reranker == "keyword"
        assert config.embedding_dim == 256
        assert config.db_path == "/tmp/anchor.db"

    def test_defaults_without_env(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Unset variables keep the defaults."""
        monkeypatch.delenv("ANCHOR_CHUNK_SIZE", raising=False)
        assert AnchorConfig.from_env().chunk_size == AnchorConfig().chunk_size
