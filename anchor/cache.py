"""LRU answer cache keyed by normalized query, k, mode and index version."""

import logging
import threading
from collections import OrderedDict
from typing import Dict, NamedTuple, Optional

from .models import AnswerRecord

logger = logging.getLogger(__name__)


def normalize_query(query: str) -> str:
    return " ".join(query.casefold().split())


class CacheKey(NamedTuple):
    query: str
    k: int
    mode: str
    index_version: int

    @classmethod
    def build(cls, query: str, k: int, mode: str, index_version: int) -> "CacheKey":
        return cls(normalize_query(query), k, mode, index_version)


class AnswerCache:
    """Thread-safe LRU cache of answer records.

    Entries from older index versions can never match a lookup made with
    the current version; ``evict_stale`` only reclaims their memory.
    """

    def __init__(self, maxsize: int = 1024):
        self._maxsize = maxsize
        self._entries: "OrderedDict[CacheKey, AnswerRecord]" = OrderedDict()
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def get(self, key: CacheKey) -> Optional[AnswerRecord]:
        with self._lock:
            record = self._entries.get(key)
            if record is None:
                self._misses += 1
                return None
            self._entries.move_to_end(key)
            self._hits += 1
        logger.debug("Answer cache hit for %r (index version %d)", key.query, key.index_version)
        return record

    def put(self, key: CacheKey, record: AnswerRecord) -> None:
        if self._maxsize == 0:
            return
        with self._lock:
            self._entries[key] = record
            self._entries.move_to_end(key)
            while len(self._entries) > self._maxsize:
                self._entries.popitem(last=False)

    def evict_stale(self, current_version: int) -> int:
        """Drop entries built against any other index version."""
        with self._lock:
            stale = [k for k in self._entries if k.index_version != current_version]
            for key in stale:
                del self._entries[key]
        if stale:
            logger.debug("Evicted %d stale cached answer(s)", len(stale))
        return len(stale)

    def clear(self) -> int:
        with self._lock:
            count = len(self._entries)
            self._entries.clear()
        return count

    def stats(self) -> Dict[str, float]:
        """Return cache statistics."""
        with self._lock:
            total = self._hits + self._misses
            return {
                "hits": self._hits,
                "misses": self._misses,
                "hit_rate": self._hits / total if total > 0 else 0,
                "size": len(self._entries),
                "maxsize": self._maxsize,
            }
