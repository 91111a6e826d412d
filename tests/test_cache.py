"""Tests for the answer cache."""

from __future__ import annotations

from anchor.cache import AnswerCache, CacheKey, normalize_query
from anchor.models import AnswerRecord


def _record(query: str, version: int = 1) -> AnswerRecord:
    return AnswerRecord(
        query=query,
        answer="answer",
        citations=(),
        prompt="prompt",
        confidence=0.5,
        supported=True,
        index_version=version,
    )


class TestCacheKey:
    """Tests for cache keys."""

    def test_query_normalized(self) -> None:
        """Case and whitespace differences map to one key."""
        assert normalize_query("  When  was\tAcme founded? ") == "when was acme founded?"
        assert CacheKey.build("When was Acme", 5, "hybrid", 1) == CacheKey.build("when  was acme", 5, "hybrid", 1)

    def test_parameters_distinguish_keys(self) -> None:
        """k, mode and index version are part of the key."""
        base = CacheKey.build("q", 5, "hybrid", 1)
        assert base != CacheKey.build("q", 3, "hybrid", 1)
        assert base != CacheKey.build("q", 5, "lexical", 1)
        assert base != CacheKey.build("q", 5, "hybrid", 2)


class TestAnswerCache:
    """Tests for AnswerCache."""

    def test_get_put(self) -> None:
        """Stored records come back and misses return None."""
        cache = AnswerCache()
        key = CacheKey.build("q", 5, "hybrid", 1)
        assert cache.get(key) is None
        cache.put(key, _record("q"))
        assert cache.get(key).query == "q"
        assert cache.stats()["hits"] == 1
        assert cache.stats()["misses"] == 1

    def test_lru_eviction(self) -> None:
        """The least recently used entry is evicted at capacity."""
        cache = AnswerCache(maxsize=2)
        a, b, c = (CacheKey.build(q, 5, "hybrid", 1) for q in "abc")
        cache.put(a, _record("a"))
        cache.put(b, _record("b"))
        cache.get(a)
        cache.put(c, _record("c"))
        assert cache.get(b) is None
        assert cache.get(a) is not None
        assert len(cache) == 2

    def test_evict_stale(self) -> None:
        """Entries from other index versions are dropped."""
        cache = AnswerCache()
        cache.put(CacheKey.build("q", 5, "hybrid", 1), _record("q", 1))
        cache.put(CacheKey.build("q", 5, "hybrid", 2), _record("q", 2))
        assert cache.evict_stale(2) == 1
        assert len(cache) == 1

    def test_disabled(self) -> None:
        """maxsize 0 stores nothing."""
        cache = AnswerCache(maxsize=0)
        key = CacheKey.build("q", 5, "hybrid", 1)
        cache.put(key, _record("q"))
        assert cache.get(key) is None

    def test_clear(self) -> None:
        """clear returns the number of removed entries."""
        cache = AnswerCache()
        cache.put(CacheKey.build("q", 5, "hybrid", 1), _record("q"))
        assert cache.clear() == 1
        assert len(cache) == 0
